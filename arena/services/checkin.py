"""Tournament check-in gate.

Check-in opens ``checkin_window_minutes`` before the tournament starts and
closes at the start time. Both confirmed and waitlisted entrants check in;
checked-in waitlisters are the promotion candidates at finalization.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import get_settings
from arena.logging_config import get_logger
from arena.models.registration import ACTIVE_STATUSES, Registration
from arena.models.tournament import (
    Tournament,
    TournamentCheckinSettings,
    TournamentStatus,
)
from arena.models.user import User
from arena.services.notifications import NotificationDispatcher
from arena.utils.clock import ensure_utc, utcnow
from arena.utils.db import atomic
from arena.utils.errors import RequestValidationError, TournamentNotFoundError

logger = get_logger(__name__)


# =============================================================================
# Window calculation
# =============================================================================


@dataclass(frozen=True)
class CheckinWindow:
    opens_at: datetime
    closes_at: datetime
    is_open: bool
    has_closed: bool
    minutes_until_open: int
    minutes_until_close: int

    @property
    def tournament_starts_at(self) -> datetime:
        return self.closes_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_open": self.is_open,
            "opens_at": self.opens_at.isoformat(),
            "closes_at": self.closes_at.isoformat(),
            "minutes_until_open": self.minutes_until_open,
            "minutes_until_close": self.minutes_until_close,
            "tournament_starts_at": self.tournament_starts_at.isoformat(),
        }


def _whole_minutes(delta: timedelta) -> int:
    return max(0, int(delta.total_seconds() // 60))


def calculate_checkin_window(
    tournament_start: datetime,
    window_minutes: int,
    now: datetime | None = None,
) -> CheckinWindow:
    """Window is ``[start - window_minutes, start)``."""
    now = now or utcnow()
    closes_at = ensure_utc(tournament_start)
    opens_at = closes_at - timedelta(minutes=window_minutes)
    return CheckinWindow(
        opens_at=opens_at,
        closes_at=closes_at,
        is_open=opens_at <= now < closes_at,
        has_closed=now >= closes_at,
        minutes_until_open=_whole_minutes(opens_at - now),
        minutes_until_close=_whole_minutes(closes_at - now),
    )


# =============================================================================
# Eligibility
# =============================================================================


class CheckinBlockReason(str, Enum):
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    FINALIZED = "FINALIZED"
    NOT_YET_OPEN = "NOT_YET_OPEN"
    CLOSED = "CLOSED"
    NOT_REGISTERED = "NOT_REGISTERED"
    ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"


def block_message(reason: CheckinBlockReason, window: CheckinWindow | None = None) -> str:
    if reason == CheckinBlockReason.NOT_YET_OPEN and window is not None:
        return f"Check-in opens in {window.minutes_until_open} minutes"
    return {
        CheckinBlockReason.TOURNAMENT_NOT_FOUND: "Tournament not found",
        CheckinBlockReason.FINALIZED: "Check-in has been finalized",
        CheckinBlockReason.NOT_YET_OPEN: "Check-in is not open yet",
        CheckinBlockReason.CLOSED: "Check-in window has closed",
        CheckinBlockReason.NOT_REGISTERED: "You are not registered for this tournament",
        CheckinBlockReason.ALREADY_CHECKED_IN: "You have already checked in",
    }[reason]


@dataclass
class EntrantCheckinStatus:
    registration_id: str
    user_id: str
    team_id: str | None
    team_name: str | None
    username: str | None
    is_waitlisted: bool
    waitlist_position: int | None
    slot_number: int | None
    checked_in: bool
    checked_in_at: datetime | None

    @classmethod
    def from_registration(
        cls, registration: Registration, username: str | None = None
    ) -> "EntrantCheckinStatus":
        return cls(
            registration_id=registration.id,
            user_id=registration.user_id,
            team_id=registration.team_id,
            team_name=registration.team_name,
            username=username,
            is_waitlisted=registration.is_waitlisted,
            waitlist_position=registration.waitlist_position,
            slot_number=registration.slot_number,
            checked_in=bool(registration.checked_in),
            checked_in_at=ensure_utc(registration.checked_in_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "user_id": self.user_id,
            "team_id": self.team_id,
            "team_name": self.team_name,
            "username": self.username,
            "is_waitlisted": self.is_waitlisted,
            "waitlist_position": self.waitlist_position,
            "slot_number": self.slot_number,
            "checked_in": self.checked_in,
            "checked_in_at": self.checked_in_at.isoformat() if self.checked_in_at else None,
        }


@dataclass
class CheckinEligibility:
    can_check_in: bool
    reason: CheckinBlockReason | None = None
    window: CheckinWindow | None = None
    registration: EntrantCheckinStatus | None = None

    @property
    def message(self) -> str | None:
        if self.reason is None:
            return None
        return block_message(self.reason, self.window)

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_check_in": self.can_check_in,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "window": self.window.to_dict() if self.window else None,
            "registration": self.registration.to_dict() if self.registration else None,
        }


def evaluate_checkin(
    window: CheckinWindow,
    finalized: bool,
    registration: Registration | None,
) -> CheckinEligibility:
    """Decide whether ``registration`` may check in right now."""
    if finalized:
        return CheckinEligibility(False, CheckinBlockReason.FINALIZED, window)
    if not window.is_open:
        reason = (
            CheckinBlockReason.CLOSED
            if window.has_closed
            else CheckinBlockReason.NOT_YET_OPEN
        )
        return CheckinEligibility(False, reason, window)
    if registration is None or not registration.is_active:
        return CheckinEligibility(False, CheckinBlockReason.NOT_REGISTERED, window)

    status = EntrantCheckinStatus.from_registration(registration)
    if registration.checked_in:
        return CheckinEligibility(False, CheckinBlockReason.ALREADY_CHECKED_IN, window, status)
    return CheckinEligibility(True, None, window, status)


@dataclass
class CheckinResult:
    success: bool
    message: str
    reason: CheckinBlockReason | None = None
    registration: EntrantCheckinStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "reason": self.reason.value if self.reason else None,
            "registration": self.registration.to_dict() if self.registration else None,
        }


@dataclass
class CheckinSummary:
    total_registered: int
    total_waitlisted: int
    registered_checked_in: int
    waitlisted_checked_in: int
    max_teams: int
    finalized_at: datetime | None

    @property
    def available_slots(self) -> int:
        """Confirmed entrants not yet checked in; their slots may go to the waitlist."""
        return self.total_registered - self.registered_checked_in

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_registered": self.total_registered,
            "total_waitlisted": self.total_waitlisted,
            "registered_checked_in": self.registered_checked_in,
            "waitlisted_checked_in": self.waitlisted_checked_in,
            "available_slots": self.available_slots,
            "max_teams": self.max_teams,
            "is_finalized": self.is_finalized,
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }


@dataclass(frozen=True)
class CheckinConfig:
    window_minutes: int
    auto_finalize: bool
    finalized_at: datetime | None


# =============================================================================
# Service
# =============================================================================


class CheckinService:
    """Check-in reads, the check-in mutation and organizer settings."""

    def __init__(self, db: AsyncSession, notifier: NotificationDispatcher | None = None):
        self.db = db
        self._notifier = notifier
        self.settings = get_settings()

    @property
    def notifier(self) -> NotificationDispatcher:
        if self._notifier is None:
            self._notifier = NotificationDispatcher()
        return self._notifier

    async def get_settings_row(self, tournament_id: str) -> TournamentCheckinSettings | None:
        result = await self.db.execute(
            select(TournamentCheckinSettings).where(
                TournamentCheckinSettings.tournament_id == tournament_id
            )
        )
        return result.scalar_one_or_none()

    async def get_checkin_config(self, tournament_id: str) -> CheckinConfig:
        row = await self.get_settings_row(tournament_id)
        if row is None:
            return CheckinConfig(
                window_minutes=self.settings.default_checkin_window_minutes,
                auto_finalize=True,
                finalized_at=None,
            )
        return CheckinConfig(
            window_minutes=row.checkin_window_minutes
            or self.settings.default_checkin_window_minutes,
            auto_finalize=row.auto_finalize,
            finalized_at=ensure_utc(row.finalized_at),
        )

    async def get_window(
        self, tournament: Tournament, now: datetime | None = None
    ) -> CheckinWindow:
        config = await self.get_checkin_config(tournament.id)
        return calculate_checkin_window(
            tournament.tournament_start_date, config.window_minutes, now
        )

    async def _find_registration(
        self,
        tournament_id: str,
        user_id: str,
        *,
        for_update: bool = False,
    ) -> Registration | None:
        query = select(Registration).where(
            Registration.tournament_id == tournament_id,
            Registration.user_id == user_id,
            Registration.status.in_(ACTIVE_STATUSES),
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def get_checkin_status(
        self,
        tournament_id: str,
        user_id: str,
        now: datetime | None = None,
    ) -> CheckinEligibility:
        tournament = await self.db.get(Tournament, tournament_id)
        if tournament is None:
            return CheckinEligibility(False, CheckinBlockReason.TOURNAMENT_NOT_FOUND)

        config = await self.get_checkin_config(tournament_id)
        window = calculate_checkin_window(
            tournament.tournament_start_date, config.window_minutes, now
        )
        registration = await self._find_registration(tournament_id, user_id)
        eligibility = evaluate_checkin(window, config.finalized_at is not None, registration)
        if eligibility.registration is not None:
            user = await self.db.get(User, user_id)
            eligibility.registration.username = user.username if user else None
        return eligibility

    async def checkin(
        self,
        tournament_id: str,
        user_id: str,
        now: datetime | None = None,
    ) -> CheckinResult:
        """Check the entrant in. Re-evaluated under the registration row lock."""
        now = now or utcnow()
        async with atomic(self.db):
            tournament = await self.db.get(Tournament, tournament_id)
            if tournament is None:
                reason = CheckinBlockReason.TOURNAMENT_NOT_FOUND
                return CheckinResult(False, block_message(reason), reason)

            config = await self.get_checkin_config(tournament_id)
            window = calculate_checkin_window(
                tournament.tournament_start_date, config.window_minutes, now
            )
            registration = await self._find_registration(
                tournament_id, user_id, for_update=True
            )
            eligibility = evaluate_checkin(
                window, config.finalized_at is not None, registration
            )
            if not eligibility.can_check_in:
                return CheckinResult(
                    success=False,
                    message=eligibility.message,
                    reason=eligibility.reason,
                    registration=eligibility.registration,
                )

            registration.check_in(now)
            await self.db.flush()

        logger.info(
            "entrant_checked_in",
            tournament_id=tournament_id,
            registration_id=registration.id,
            user_id=user_id,
            is_waitlisted=registration.is_waitlisted,
        )

        message = (
            "Checked in successfully! You are on the waitlist and may be promoted "
            "if registered teams don't check in."
            if registration.is_waitlisted
            else "Checked in successfully!"
        )
        return CheckinResult(
            success=True,
            message=message,
            registration=EntrantCheckinStatus.from_registration(registration),
        )

    async def get_all_checkin_statuses(self, tournament_id: str) -> list[EntrantCheckinStatus]:
        """Every active entrant: confirmed by slot, then the waitlist by position."""
        result = await self.db.execute(
            select(Registration, User.username)
            .join(User, User.id == Registration.user_id)
            .where(
                Registration.tournament_id == tournament_id,
                Registration.status.in_(ACTIVE_STATUSES),
            )
            .order_by(
                Registration.is_waitlisted,
                Registration.slot_number,
                Registration.waitlist_position,
            )
        )
        return [
            EntrantCheckinStatus.from_registration(registration, username)
            for registration, username in result.all()
        ]

    async def get_checkin_summary(self, tournament_id: str) -> CheckinSummary:
        tournament = await self.db.get(Tournament, tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)

        result = await self.db.execute(
            select(Registration.is_waitlisted, Registration.checked_in, func.count())
            .where(
                Registration.tournament_id == tournament_id,
                Registration.status.in_(ACTIVE_STATUSES),
            )
            .group_by(Registration.is_waitlisted, Registration.checked_in)
        )
        counts = {(bool(w), bool(c)): n for w, c, n in result.all()}
        config = await self.get_checkin_config(tournament_id)

        return CheckinSummary(
            total_registered=counts.get((False, True), 0) + counts.get((False, False), 0),
            total_waitlisted=counts.get((True, True), 0) + counts.get((True, False), 0),
            registered_checked_in=counts.get((False, True), 0),
            waitlisted_checked_in=counts.get((True, True), 0),
            max_teams=tournament.max_teams,
            finalized_at=config.finalized_at,
        )

    async def configure_checkin(
        self,
        tournament_id: str,
        *,
        window_minutes: int | None = None,
        auto_finalize: bool | None = None,
    ) -> TournamentCheckinSettings:
        """Create or update the tournament's check-in settings."""
        if window_minutes is not None and window_minutes <= 0:
            raise RequestValidationError(
                "Check-in window must be positive",
                details={"windowMinutes": window_minutes},
            )

        async with atomic(self.db):
            tournament = await self.db.get(Tournament, tournament_id)
            if tournament is None:
                raise TournamentNotFoundError(tournament_id)

            row = await self.get_settings_row(tournament_id)
            if row is None:
                row = TournamentCheckinSettings(
                    tournament_id=tournament_id,
                    checkin_window_minutes=self.settings.default_checkin_window_minutes,
                    auto_finalize=True,
                )
                self.db.add(row)
            if window_minutes is not None:
                row.checkin_window_minutes = window_minutes
            if auto_finalize is not None:
                row.auto_finalize = auto_finalize
            await self.db.flush()

        logger.info(
            "checkin_configured",
            tournament_id=tournament_id,
            window_minutes=row.checkin_window_minutes,
            auto_finalize=row.auto_finalize,
        )
        return row

    # =========================================================================
    # Reminders
    # =========================================================================

    async def find_tournaments_with_new_windows(self, now: datetime) -> list[tuple[Tournament, int]]:
        """Tournaments whose check-in opened within the reminder lookback."""
        lookback = timedelta(minutes=self.settings.checkin_reminder_lookback_minutes)
        longest_window = await self.db.scalar(
            select(func.max(TournamentCheckinSettings.checkin_window_minutes))
        )
        horizon = max(int(longest_window or 0), self.settings.default_checkin_window_minutes)

        result = await self.db.execute(
            select(Tournament, TournamentCheckinSettings)
            .outerjoin(
                TournamentCheckinSettings,
                TournamentCheckinSettings.tournament_id == Tournament.id,
            )
            .where(
                Tournament.status.not_in(
                    [TournamentStatus.COMPLETED.value, TournamentStatus.CANCELLED.value]
                ),
                Tournament.tournament_start_date > now,
                Tournament.tournament_start_date <= now + timedelta(minutes=horizon),
            )
        )

        due = []
        for tournament, settings_row in result.all():
            if settings_row is not None and settings_row.finalized_at is not None:
                continue
            window_minutes = (
                settings_row.checkin_window_minutes
                if settings_row is not None
                else self.settings.default_checkin_window_minutes
            )
            window = calculate_checkin_window(
                tournament.tournament_start_date, window_minutes, now
            )
            if now - lookback <= window.opens_at <= now:
                due.append((tournament, window_minutes))
        return due

    async def _set_reminder_flag(self, registration_id: str, *, sent: bool) -> bool:
        result = await self.db.execute(
            update(Registration)
            .where(
                Registration.id == registration_id,
                Registration.check_in_reminder_sent.is_(not sent),
            )
            .values(check_in_reminder_sent=sent)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def send_checkin_reminders(self, now: datetime | None = None) -> dict[str, int]:
        """Notify each active entrant once when their tournament's window opens.

        Each entrant's ``check_in_reminder_sent`` flag is claimed and committed
        before the notification goes out, and cleared again when publishing
        fails so the next run retries it.
        """
        now = now or utcnow()
        summary = {"tournaments": 0, "sent": 0, "failed": 0}

        for tournament, window_minutes in await self.find_tournaments_with_new_windows(now):
            summary["tournaments"] += 1
            result = await self.db.execute(
                select(Registration.id, Registration.user_id, Registration.is_waitlisted)
                .where(
                    Registration.tournament_id == tournament.id,
                    Registration.status.in_(ACTIVE_STATUSES),
                    Registration.check_in_reminder_sent.is_(False),
                )
            )
            for registration_id, user_id, is_waitlisted in result.all():
                if not await self._set_reminder_flag(registration_id, sent=True):
                    # Claimed by a concurrent run
                    continue

                sent = await self.notifier.checkin_open(
                    user_id,
                    tournament.id,
                    tournament.tournament_name,
                    window_minutes,
                    is_waitlisted,
                )
                if sent:
                    summary["sent"] += 1
                else:
                    await self._set_reminder_flag(registration_id, sent=False)
                    summary["failed"] += 1

            logger.info(
                "checkin_reminders_sent",
                tournament_id=tournament.id,
                sent=summary["sent"],
            )

        return summary
