"""SQLAlchemy models."""

from arena.models.ban import BannedGameId
from arena.models.base import Base, TimestampMixin, UUIDMixin
from arena.models.hold import (
    HOLD_REFERENCE_REGISTRATION,
    BalanceHold,
    HoldStatus,
    HoldType,
)
from arena.models.registration import (
    ACTIVE_STATUSES,
    Registration,
    RegistrationState,
    RegistrationStatus,
)
from arena.models.team import Team, TeamMember
from arena.models.tournament import (
    DEFAULT_CHECKIN_WINDOW_MINUTES,
    OPEN_FOR_REGISTRATION,
    Tournament,
    TournamentCheckinSettings,
    TournamentStatus,
    TournamentType,
)
from arena.models.user import User
from arena.models.wallet import TransactionStatus, TransactionType, WalletTransaction

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    # Entities owned elsewhere
    "BannedGameId",
    "Team",
    "TeamMember",
    "User",
    # Tournament
    "DEFAULT_CHECKIN_WINDOW_MINUTES",
    "OPEN_FOR_REGISTRATION",
    "Tournament",
    "TournamentCheckinSettings",
    "TournamentStatus",
    "TournamentType",
    # Registration
    "ACTIVE_STATUSES",
    "Registration",
    "RegistrationState",
    "RegistrationStatus",
    # Ledger
    "HOLD_REFERENCE_REGISTRATION",
    "BalanceHold",
    "HoldStatus",
    "HoldType",
    "TransactionStatus",
    "TransactionType",
    "WalletTransaction",
]
