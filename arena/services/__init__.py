"""Business logic services."""

from arena.services.admission import (
    AdmissionDecision,
    CapacitySnapshot,
    calculate_waitlist_slots,
    decide_admission,
)
from arena.services.checkin import (
    CheckinBlockReason,
    CheckinService,
    calculate_checkin_window,
)
from arena.services.finalization import FinalizationResult, FinalizationService
from arena.services.hold_sweeper import HoldExpirySweeper
from arena.services.holds import HoldLedger
from arena.services.notifications import NotificationDispatcher
from arena.services.registration import (
    OutcomeKind,
    RegistrationOutcome,
    RegistrationService,
)
from arena.services.wallet import WalletService

__all__ = [
    # Admission
    "AdmissionDecision",
    "CapacitySnapshot",
    "calculate_waitlist_slots",
    "decide_admission",
    # Registration
    "OutcomeKind",
    "RegistrationOutcome",
    "RegistrationService",
    # Ledger
    "HoldExpirySweeper",
    "HoldLedger",
    "WalletService",
    # Check-in
    "CheckinBlockReason",
    "CheckinService",
    "FinalizationResult",
    "FinalizationService",
    "calculate_checkin_window",
    # Notifications
    "NotificationDispatcher",
]
