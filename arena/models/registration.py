"""Tournament registration model.

A registration is in exactly one of three states:

- CONFIRMED: holds a numbered slot (``slot_number`` set, not waitlisted)
- WAITLISTED: queued behind a full tournament (``waitlist_position`` set)
- CANCELLED: terminal, slot/position kept for history

The flag columns are the storage form of that state; they are only written
through the factory classmethods and transition methods below, and the
check constraint rejects a waitlisted row carrying a slot number.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from arena.models.base import Base, TimestampMixin, UUIDMixin
from arena.models.tournament import TournamentType
from arena.utils.clock import utcnow
from arena.utils.errors import IllegalTransitionError


class RegistrationStatus(str, Enum):
    """Stored status column."""

    REGISTERED = "registered"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


# Statuses that count as an active registration
ACTIVE_STATUSES = (RegistrationStatus.REGISTERED.value, RegistrationStatus.CONFIRMED.value)


class RegistrationState(str, Enum):
    """Derived lifecycle state."""

    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"
    CANCELLED = "cancelled"


_NOT_CANCELLED = "status != 'cancelled'"
_ACTIVE_SLOT = "status != 'cancelled' AND NOT is_waitlisted"


class Registration(Base, UUIDMixin, TimestampMixin):
    """One entrant's claim on a tournament slot or waitlist position."""

    __tablename__ = "tournament_registrations"

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    team_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
    )
    registration_type: Mapped[str] = mapped_column(
        String(10),
        default=TournamentType.SOLO.value,
        nullable=False,
    )
    team_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    selected_players: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    backup_players: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=RegistrationStatus.REGISTERED.value,
        nullable=False,
    )

    # Slot or waitlist, never both
    slot_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_waitlisted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    waitlist_position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Check-in
    checked_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checked_in_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    check_in_reminder_sent: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Promotion metadata, set only by finalization
    promoted_via_checkin: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    original_slot_holder_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        comment="Registration whose vacated slot this entrant received",
    )
    promoted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(is_waitlisted AND slot_number IS NULL AND waitlist_position IS NOT NULL) "
            "OR (NOT is_waitlisted AND slot_number IS NOT NULL AND waitlist_position IS NULL)",
            name="ck_registrations_slot_xor_waitlist",
        ),
        Index(
            "uq_registrations_tournament_user_active",
            "tournament_id",
            "user_id",
            unique=True,
            postgresql_where=text(_NOT_CANCELLED),
            sqlite_where=text(_NOT_CANCELLED),
        ),
        Index(
            "uq_registrations_tournament_team_active",
            "tournament_id",
            "team_id",
            unique=True,
            postgresql_where=text(_NOT_CANCELLED),
            sqlite_where=text(_NOT_CANCELLED),
        ),
        Index(
            "uq_registrations_tournament_slot_active",
            "tournament_id",
            "slot_number",
            unique=True,
            postgresql_where=text(_ACTIVE_SLOT),
            sqlite_where=text(_ACTIVE_SLOT),
        ),
        Index("ix_registrations_tournament_waitlist", "tournament_id", "is_waitlisted"),
    )

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def confirmed(
        cls,
        *,
        tournament_id: str,
        user_id: str,
        slot_number: int,
        registered_at: datetime | None = None,
        **entrant,
    ) -> Registration:
        """New registration occupying ``slot_number``."""
        return cls(
            tournament_id=tournament_id,
            user_id=user_id,
            status=RegistrationStatus.REGISTERED.value,
            slot_number=slot_number,
            is_waitlisted=False,
            waitlist_position=None,
            checked_in=False,
            registered_at=registered_at or utcnow(),
            **entrant,
        )

    @classmethod
    def waitlisted(
        cls,
        *,
        tournament_id: str,
        user_id: str,
        waitlist_position: int,
        registered_at: datetime | None = None,
        **entrant,
    ) -> Registration:
        """New registration queued at ``waitlist_position``."""
        return cls(
            tournament_id=tournament_id,
            user_id=user_id,
            status=RegistrationStatus.REGISTERED.value,
            slot_number=None,
            is_waitlisted=True,
            waitlist_position=waitlist_position,
            checked_in=False,
            registered_at=registered_at or utcnow(),
            **entrant,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> RegistrationState:
        if self.status == RegistrationStatus.CANCELLED.value:
            return RegistrationState.CANCELLED
        if self.is_waitlisted:
            return RegistrationState.WAITLISTED
        return RegistrationState.CONFIRMED

    @property
    def is_active(self) -> bool:
        return self.state != RegistrationState.CANCELLED

    def _require(self, action: str, *allowed: RegistrationState) -> None:
        if self.state not in allowed:
            raise IllegalTransitionError(self.id, self.state.value, action)

    def check_in(self, at: datetime) -> None:
        """Mark attendance. Confirmed and waitlisted entrants may check in once."""
        self._require("check in", RegistrationState.CONFIRMED, RegistrationState.WAITLISTED)
        if self.checked_in:
            raise IllegalTransitionError(self.id, "checked_in", "check in")
        self.checked_in = True
        self.checked_in_at = at

    def promote(self, slot_number: int, original_holder_id: str, at: datetime) -> None:
        """Move a waitlisted entrant into a vacated slot."""
        self._require("promote", RegistrationState.WAITLISTED)
        self.is_waitlisted = False
        self.waitlist_position = None
        self.slot_number = slot_number
        self.promoted_via_checkin = True
        self.original_slot_holder_id = original_holder_id
        self.promoted_at = at

    def cancel(self, reason: str, at: datetime) -> None:
        self._require("cancel", RegistrationState.CONFIRMED, RegistrationState.WAITLISTED)
        self.status = RegistrationStatus.CANCELLED.value
        self.cancelled_at = at
        self.cancel_reason = reason

    def __repr__(self) -> str:
        where = (
            f"waitlist#{self.waitlist_position}"
            if self.is_waitlisted
            else f"slot#{self.slot_number}"
        )
        return f"<Registration {self.user_id} {where} {self.status}>"
