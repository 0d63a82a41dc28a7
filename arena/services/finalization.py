"""Check-in finalization.

Run once per tournament at (or after) its start time:

1. No-shows: confirmed entrants not checked in, by slot number
2. Candidates: waitlisted entrants checked in, by check-in time. On a
   paid tournament a candidate whose fee hold is no longer active
   (expired or released) is passed over and stays on the waitlist
3. Pair them up in order; each paired no-show is cancelled and the
   candidate takes over its slot
4. Reconcile the ledger: promoted entrants' fee holds become real debits,
   holds tied to cancelled no-shows are released
5. Recount ``current_teams`` and stamp ``finalized_at``

All of it is one transaction. A tournament that already carries
``finalized_at`` is a no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arena.config import get_settings
from arena.logging_config import get_logger
from arena.models.hold import HOLD_REFERENCE_REGISTRATION, BalanceHold
from arena.models.registration import ACTIVE_STATUSES, Registration
from arena.models.tournament import (
    Tournament,
    TournamentCheckinSettings,
    TournamentStatus,
)
from arena.models.user import User
from arena.services.admission import tournament_lock_query
from arena.services.holds import HoldLedger
from arena.services.notifications import NotificationDispatcher
from arena.utils.clock import ensure_utc, utcnow
from arena.utils.db import atomic
from arena.utils.errors import (
    CheckinStillOpenError,
    TournamentNotFoundError,
)

logger = get_logger(__name__)

NO_SHOW_REASON = "Missed check-in"


@dataclass
class FinalizedEntrant:
    registration_id: str
    user_id: str
    team_name: str | None
    slot_number: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "user_id": self.user_id,
            "team_name": self.team_name,
            "slot_number": self.slot_number,
        }


@dataclass
class FinalizationResult:
    tournament_id: str
    already_finalized: bool = False
    promoted: list[FinalizedEntrant] = field(default_factory=list)
    disqualified: list[FinalizedEntrant] = field(default_factory=list)
    no_show_count: int = 0
    unfunded_candidates: list[str] = field(default_factory=list)
    finalized_at: datetime | None = None

    @property
    def promoted_count(self) -> int:
        return len(self.promoted)

    @property
    def disqualified_count(self) -> int:
        return len(self.disqualified)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "already_finalized": self.already_finalized,
            "promoted_count": self.promoted_count,
            "disqualified_count": self.disqualified_count,
            "no_show_count": self.no_show_count,
            "unfunded_candidates": list(self.unfunded_candidates),
            "promoted": [p.to_dict() for p in self.promoted],
            "disqualified": [d.to_dict() for d in self.disqualified],
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }


class FinalizationService:
    """Resolves no-shows against checked-in waitlisters."""

    def __init__(self, db: AsyncSession, notifier: NotificationDispatcher | None = None):
        self.db = db
        self._notifier = notifier
        self.holds = HoldLedger(db)

    @property
    def notifier(self) -> NotificationDispatcher:
        if self._notifier is None:
            self._notifier = NotificationDispatcher()
        return self._notifier

    async def _settings_row(self, tournament_id: str) -> TournamentCheckinSettings | None:
        result = await self.db.execute(
            select(TournamentCheckinSettings)
            .where(TournamentCheckinSettings.tournament_id == tournament_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _lock_registrations(self, *conditions, order_by) -> list[Registration]:
        result = await self.db.execute(
            select(Registration)
            .where(Registration.status.in_(ACTIVE_STATUSES), *conditions)
            .order_by(*order_by)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _lock_no_shows(self, tournament_id: str) -> list[Registration]:
        return await self._lock_registrations(
            Registration.tournament_id == tournament_id,
            Registration.is_waitlisted.is_(False),
            Registration.checked_in.is_(False),
            order_by=(Registration.slot_number,),
        )

    async def _lock_candidates(self, tournament_id: str) -> list[Registration]:
        return await self._lock_registrations(
            Registration.tournament_id == tournament_id,
            Registration.is_waitlisted.is_(True),
            Registration.checked_in.is_(True),
            order_by=(Registration.checked_in_at, Registration.waitlist_position),
        )

    async def _usernames(self, registrations: list[Registration]) -> dict[str, str]:
        user_ids = {r.user_id for r in registrations}
        if not user_ids:
            return {}
        result = await self.db.execute(
            select(User.id, User.username).where(User.id.in_(user_ids))
        )
        return dict(result.all())

    async def finalize(
        self,
        tournament_id: str,
        *,
        force: bool = False,
        now: datetime | None = None,
    ) -> FinalizationResult:
        """Finalize check-ins for a tournament.

        Args:
            tournament_id: Tournament to finalize
            force: Organizer override allowing finalization before start
            now: Evaluation time (defaults to current UTC time)

        Raises:
            TournamentNotFoundError: Unknown tournament
            CheckinStillOpenError: Before start time without ``force``
        """
        now = now or utcnow()

        tournament = await self.db.get(Tournament, tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)

        settings_row = await self._settings_row(tournament_id)
        if settings_row is not None and settings_row.finalized_at is not None:
            return FinalizationResult(
                tournament_id=tournament_id,
                already_finalized=True,
                finalized_at=ensure_utc(settings_row.finalized_at),
            )

        if not force and now < ensure_utc(tournament.tournament_start_date):
            raise CheckinStillOpenError(tournament_id)

        async with atomic(self.db):
            result = await self._finalize_locked(tournament_id, now)

        if not result.already_finalized:
            logger.info(
                "checkin_finalized",
                tournament_id=tournament_id,
                promoted=result.promoted_count,
                disqualified=result.disqualified_count,
                no_shows=result.no_show_count,
                forced=force,
            )
            await self._notify(tournament, result)
        return result

    async def _finalize_locked(self, tournament_id: str, now: datetime) -> FinalizationResult:
        locked = await self.db.execute(tournament_lock_query(tournament_id))
        tournament = locked.scalar_one()

        # Another worker may have finished while we waited for the lock
        settings_row = await self._settings_row(tournament_id)
        if settings_row is not None and settings_row.finalized_at is not None:
            return FinalizationResult(
                tournament_id=tournament_id,
                already_finalized=True,
                finalized_at=ensure_utc(settings_row.finalized_at),
            )

        no_shows = await self._lock_no_shows(tournament_id)
        candidates = await self._lock_candidates(tournament_id)
        usernames = await self._usernames(no_shows + candidates)

        result = FinalizationResult(tournament_id=tournament_id, no_show_count=len(no_shows))

        holds: dict[str, BalanceHold] = {}
        if tournament.entry_fee > 0:
            funded = []
            for candidate in candidates:
                hold = await self.holds.find_active_hold(
                    HOLD_REFERENCE_REGISTRATION, candidate.id
                )
                if hold is None:
                    result.unfunded_candidates.append(candidate.id)
                    logger.warning(
                        "candidate_without_hold",
                        tournament_id=tournament_id,
                        registration_id=candidate.id,
                        user_id=candidate.user_id,
                    )
                    continue
                holds[candidate.id] = hold
                funded.append(candidate)
            candidates = funded

        for no_show, candidate in zip(no_shows, candidates):
            slot_number = no_show.slot_number
            no_show.cancel(NO_SHOW_REASON, now)
            # Vacate the slot before reassigning it (unique per active slot)
            await self.db.flush()
            candidate.promote(slot_number, no_show.id, now)
            await self.db.flush()

            result.disqualified.append(
                FinalizedEntrant(
                    registration_id=no_show.id,
                    user_id=no_show.user_id,
                    team_name=no_show.team_name or usernames.get(no_show.user_id),
                    slot_number=slot_number,
                )
            )
            result.promoted.append(
                FinalizedEntrant(
                    registration_id=candidate.id,
                    user_id=candidate.user_id,
                    team_name=candidate.team_name or usernames.get(candidate.user_id),
                    slot_number=slot_number,
                )
            )

        await self._reconcile_ledger(tournament, result, holds, now)

        await self.db.flush()
        confirmed = await self.db.scalar(
            select(func.count())
            .select_from(Registration)
            .where(
                Registration.tournament_id == tournament_id,
                Registration.is_waitlisted.is_(False),
                Registration.status.in_(ACTIVE_STATUSES),
            )
        )
        tournament.current_teams = int(confirmed or 0)

        if settings_row is None:
            settings_row = TournamentCheckinSettings(
                tournament_id=tournament_id,
                checkin_window_minutes=get_settings().default_checkin_window_minutes,
                auto_finalize=True,
            )
            self.db.add(settings_row)
        settings_row.finalized_at = now
        await self.db.flush()

        result.finalized_at = now
        return result

    async def _reconcile_ledger(
        self,
        tournament: Tournament,
        result: FinalizationResult,
        holds: dict[str, BalanceHold],
        now: datetime,
    ) -> None:
        """Confirm promoted entrants' fee holds, release cancelled no-shows' holds."""
        for promoted in result.promoted:
            hold = holds.get(promoted.registration_id)
            if hold is None:
                # Free tournament
                continue
            await self.holds.confirm_hold(
                hold.id,
                description=f"Entry fee for {tournament.tournament_name} (promoted from waitlist)",
                now=now,
            )

        for disqualified in result.disqualified:
            hold = await self.holds.find_active_hold(
                HOLD_REFERENCE_REGISTRATION, disqualified.registration_id
            )
            if hold is not None:
                await self.holds.release_hold(hold.id, NO_SHOW_REASON, now=now)

    async def _notify(self, tournament: Tournament, result: FinalizationResult) -> None:
        for promoted in result.promoted:
            await self.notifier.promoted(
                promoted.user_id,
                tournament.id,
                tournament.tournament_name,
                promoted.slot_number,
            )
        for disqualified in result.disqualified:
            await self.notifier.slot_forfeited(
                disqualified.user_id,
                tournament.id,
                tournament.tournament_name,
            )

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def find_tournaments_needing_finalization(
        self, now: datetime | None = None
    ) -> list[str]:
        """Started recently, still live, auto-finalize on, not finalized, has entrants."""
        now = now or utcnow()
        lookback = timedelta(hours=get_settings().finalize_lookback_hours)

        has_entrants = exists().where(
            Registration.tournament_id == Tournament.id,
            Registration.status.in_(ACTIVE_STATUSES),
        )
        result = await self.db.execute(
            select(Tournament.id)
            .outerjoin(
                TournamentCheckinSettings,
                TournamentCheckinSettings.tournament_id == Tournament.id,
            )
            .where(
                Tournament.tournament_start_date <= now,
                Tournament.tournament_start_date > now - lookback,
                Tournament.status.not_in(
                    [TournamentStatus.COMPLETED.value, TournamentStatus.CANCELLED.value]
                ),
                or_(
                    TournamentCheckinSettings.id.is_(None),
                    TournamentCheckinSettings.auto_finalize.is_(True),
                ),
                TournamentCheckinSettings.finalized_at.is_(None),
                has_entrants,
            )
            .order_by(Tournament.tournament_start_date)
        )
        return list(result.scalars().all())


async def auto_finalize(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Finalize every due tournament, each in its own session.

    One tournament failing is logged and does not stop the others.
    """
    now = now or utcnow()
    async with session_factory() as session:
        tournament_ids = await FinalizationService(
            session, notifier
        ).find_tournaments_needing_finalization(now)

    summary: dict[str, Any] = {
        "checked": len(tournament_ids),
        "finalized": 0,
        "promoted": 0,
        "failed": 0,
    }
    for tournament_id in tournament_ids:
        try:
            async with session_factory() as session:
                result = await FinalizationService(session, notifier).finalize(
                    tournament_id, now=now
                )
        except Exception as exc:
            summary["failed"] += 1
            logger.error(
                "auto_finalize_failed",
                tournament_id=tournament_id,
                error=str(exc),
                exc_info=True,
            )
            continue
        if not result.already_finalized:
            summary["finalized"] += 1
            summary["promoted"] += result.promoted_count

    return summary
