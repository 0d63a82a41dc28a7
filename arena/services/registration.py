"""Registration workflow.

Capacity-gated registration with waitlist fallback:

1. Read-only preconditions (tournament open, not already registered, game
   identity present, available balance covers the fee, team rules)
2. Lock the tournament occupancy row
3. Decide Admit / Waitlist / OfferWaitlist / Reject under the lock
4. Admit: next slot, ``current_teams + 1``, wallet debit
   Waitlist: next waitlist position, active hold for the fee

Everything from step 1 on runs in one transaction. Notifications are sent
only after it commits.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import get_settings
from arena.logging_config import get_logger
from arena.models.hold import HOLD_REFERENCE_REGISTRATION, HoldType
from arena.models.registration import Registration, RegistrationStatus
from arena.models.team import Team, TeamMember
from arena.models.tournament import Tournament, TournamentType
from arena.models.user import User
from arena.models.wallet import WalletTransaction
from arena.services.admission import (
    AdmissionDecision,
    CapacitySnapshot,
    calculate_waitlist_slots,
    decide_admission,
    tournament_lock_query,
)
from arena.services.bans import BanChecker
from arena.services.holds import HoldLedger
from arena.services.notifications import NotificationDispatcher
from arena.services.wallet import WalletService
from arena.utils.clock import ensure_utc, utcnow
from arena.utils.db import atomic
from arena.utils.errors import (
    AlreadyRegisteredError,
    AlreadyWaitlistedError,
    InsufficientBalanceError,
    MissingGameIdentityError,
    NotTeamMemberError,
    RegistrationNotFoundError,
    TeamRequiredError,
    TournamentFullError,
    TournamentNotFoundError,
    TournamentNotOpenError,
    UserNotFoundError,
)

logger = get_logger(__name__)


class OutcomeKind(str, Enum):
    ADMITTED = "admitted"
    WAITLISTED = "waitlisted"
    WAITLIST_OFFERED = "waitlist_offered"


@dataclass
class RegistrationOutcome:
    kind: OutcomeKind
    message: str
    registration: Registration | None = None
    slot_number: int | None = None
    waitlist_position: int | None = None
    entry_fee_paid: int = 0
    entry_fee_held: int = 0
    hold_id: str | None = None
    waitlist_slots_total: int = 0
    waitlist_slots_taken: int = 0

    @property
    def is_waitlisted(self) -> bool:
        return self.kind == OutcomeKind.WAITLISTED

    @property
    def waitlist_slots_remaining(self) -> int:
        return max(0, self.waitlist_slots_total - self.waitlist_slots_taken)

    def to_dict(self) -> dict[str, Any]:
        if self.kind == OutcomeKind.WAITLIST_OFFERED:
            return {
                "outcome": self.kind.value,
                "message": self.message,
                "waitlist_available": True,
                "waitlist_slots_total": self.waitlist_slots_total,
                "waitlist_slots_taken": self.waitlist_slots_taken,
                "waitlist_slots_remaining": self.waitlist_slots_remaining,
            }
        return {
            "outcome": self.kind.value,
            "message": self.message,
            "registration_id": self.registration.id if self.registration else None,
            "is_waitlisted": self.is_waitlisted,
            "slot_number": self.slot_number,
            "waitlist_position": self.waitlist_position,
            "entry_fee_paid": self.entry_fee_paid,
            "entry_fee_held": self.entry_fee_held,
            "hold_id": self.hold_id,
        }


@dataclass
class CancellationResult:
    registration: Registration
    was_waitlisted: bool
    refunded: int = 0
    released: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration.id,
            "was_waitlisted": self.was_waitlisted,
            "refunded": self.refunded,
            "released": self.released,
        }


class RegistrationService:
    """Admits entrants into tournament slots or the waitlist."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationDispatcher | None = None,
    ):
        self.db = db
        self.notifier = notifier or NotificationDispatcher()
        self.settings = get_settings()
        self.wallet = WalletService(db)
        self.holds = HoldLedger(db)

    # =========================================================================
    # Queries
    # =========================================================================

    async def _find_active_registration(
        self,
        tournament_id: str,
        *,
        user_id: str | None = None,
        team_id: str | None = None,
        for_update: bool = False,
    ) -> Registration | None:
        query = select(Registration).where(
            Registration.tournament_id == tournament_id,
            Registration.status != RegistrationStatus.CANCELLED.value,
        )
        if user_id is not None:
            query = query.where(Registration.user_id == user_id)
        if team_id is not None:
            query = query.where(Registration.team_id == team_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def count_waitlisted(self, tournament_id: str) -> int:
        count = await self.db.scalar(
            select(func.count())
            .select_from(Registration)
            .where(
                Registration.tournament_id == tournament_id,
                Registration.is_waitlisted.is_(True),
                Registration.status != RegistrationStatus.CANCELLED.value,
            )
        )
        return int(count or 0)

    async def _next_slot_number(self, tournament_id: str) -> int:
        current = await self.db.scalar(
            select(func.coalesce(func.max(Registration.slot_number), 0)).where(
                Registration.tournament_id == tournament_id,
                Registration.is_waitlisted.is_(False),
            )
        )
        return int(current or 0) + 1

    async def _next_waitlist_position(self, tournament_id: str) -> int:
        current = await self.db.scalar(
            select(func.coalesce(func.max(Registration.waitlist_position), 0)).where(
                Registration.tournament_id == tournament_id,
                Registration.is_waitlisted.is_(True),
            )
        )
        return int(current or 0) + 1

    def max_waitlist_slots(self, max_teams: int) -> int:
        return calculate_waitlist_slots(
            max_teams,
            self.settings.waitlist_ratio,
            self.settings.waitlist_min_slots,
        )

    # =========================================================================
    # Preconditions
    # =========================================================================

    async def _check_team(
        self,
        tournament: Tournament,
        user: User,
        team_id: str | None,
        selected_players: list[str],
    ) -> Team:
        if not team_id:
            raise TeamRequiredError(tournament.tournament_type)

        membership = await self.db.scalar(
            select(TeamMember.id).where(
                TeamMember.team_id == team_id,
                TeamMember.user_id == user.id,
                TeamMember.left_at.is_(None),
            )
        )
        if membership is None:
            raise NotTeamMemberError(team_id)

        team = await self.db.get(Team, team_id)
        if team is None:
            raise NotTeamMemberError(team_id)

        existing = await self._find_active_registration(tournament.id, team_id=team_id)
        if existing is not None:
            if existing.is_waitlisted:
                raise AlreadyWaitlistedError(tournament.id, team=True)
            raise AlreadyRegisteredError(tournament.id, team=True)

        result = await self.db.execute(select(User).where(User.id.in_(selected_players)))
        players = list(result.scalars().all())
        await BanChecker(self.db).ensure_players_not_banned(tournament.game_type, players)
        return team

    # =========================================================================
    # Register
    # =========================================================================

    async def register(
        self,
        tournament_id: str,
        user_id: str,
        *,
        team_id: str | None = None,
        selected_players: list[str] | None = None,
        backup_players: list[str] | None = None,
        join_waitlist: bool = False,
    ) -> RegistrationOutcome:
        """Register an entrant for a tournament.

        Returns:
            RegistrationOutcome; WAITLIST_OFFERED persists nothing and asks
            the caller to retry with ``join_waitlist=True``

        Raises:
            DomainRuleViolation subclasses for every refused registration
            ConcurrencyConflictError: Lock timeout or lost race, retry
        """
        async with atomic(self.db):
            outcome = await self._register(
                tournament_id,
                user_id,
                team_id=team_id,
                selected_players=selected_players,
                backup_players=backup_players,
                join_waitlist=join_waitlist,
            )

        await self._notify_registered(outcome, user_id, tournament_id)
        return outcome

    async def _register(
        self,
        tournament_id: str,
        user_id: str,
        *,
        team_id: str | None,
        selected_players: list[str] | None,
        backup_players: list[str] | None,
        join_waitlist: bool,
    ) -> RegistrationOutcome:
        tournament = await self.db.get(Tournament, tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        user = await self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        if not tournament.accepts_registrations:
            raise TournamentNotOpenError(tournament_id, tournament.status)

        existing = await self._find_active_registration(tournament_id, user_id=user_id)
        if existing is not None:
            if existing.is_waitlisted:
                raise AlreadyWaitlistedError(tournament_id)
            raise AlreadyRegisteredError(tournament_id)

        if not user.game_id_for(tournament.game_type):
            raise MissingGameIdentityError(tournament.game_type)

        entry_fee = tournament.entry_fee or 0
        if entry_fee > 0 and user.available_balance < entry_fee:
            raise InsufficientBalanceError(required=entry_fee, available=user.available_balance)

        entrant: dict[str, Any] = {"registration_type": tournament.tournament_type}
        if tournament.tournament_type != TournamentType.SOLO.value:
            players = selected_players or [user_id]
            team = await self._check_team(tournament, user, team_id, players)
            entrant.update(
                team_id=team.id,
                team_name=team.team_name,
                selected_players=players,
                backup_players=backup_players or [],
            )
        else:
            entrant.update(selected_players=[user_id], backup_players=[])

        # Critical section: occupancy is read and written under the row lock
        result = await self.db.execute(tournament_lock_query(tournament_id))
        tournament = result.scalar_one()

        now = utcnow()
        waitlisted_count = await self.count_waitlisted(tournament_id)
        snapshot = CapacitySnapshot(
            current_teams=tournament.current_teams,
            max_teams=tournament.max_teams,
            waitlisted_count=waitlisted_count,
            max_waitlist_slots=self.max_waitlist_slots(tournament.max_teams),
            tournament_start=ensure_utc(tournament.tournament_start_date),
            now=now,
        )
        decision = decide_admission(snapshot, join_waitlist)

        logger.info(
            "admission_decided",
            tournament_id=tournament_id,
            user_id=user_id,
            decision=decision.value,
            current_teams=snapshot.current_teams,
            max_teams=snapshot.max_teams,
            waitlisted=waitlisted_count,
        )

        if decision == AdmissionDecision.REJECT:
            waitlist_full = not snapshot.has_started and snapshot.max_waitlist_slots > 0
            raise TournamentFullError(tournament_id, tournament.max_teams, waitlist_full=waitlist_full)

        if decision == AdmissionDecision.OFFER_WAITLIST:
            return RegistrationOutcome(
                kind=OutcomeKind.WAITLIST_OFFERED,
                message="Tournament is full",
                waitlist_slots_total=snapshot.max_waitlist_slots,
                waitlist_slots_taken=waitlisted_count,
            )

        if decision == AdmissionDecision.WAITLIST:
            return await self._add_to_waitlist(tournament, user_id, entrant, snapshot)

        return await self._admit(tournament, user_id, entrant)

    async def _admit(
        self,
        tournament: Tournament,
        user_id: str,
        entrant: dict[str, Any],
    ) -> RegistrationOutcome:
        await self.db.flush()
        slot_number = await self._next_slot_number(tournament.id)

        registration = Registration.confirmed(
            tournament_id=tournament.id,
            user_id=user_id,
            slot_number=slot_number,
            **entrant,
        )
        self.db.add(registration)
        tournament.current_teams += 1
        await self.db.flush()

        entry_fee = tournament.entry_fee or 0
        if entry_fee > 0:
            await self.wallet.debit_entry_fee(
                user_id,
                entry_fee,
                reference_type=HOLD_REFERENCE_REGISTRATION,
                reference_id=registration.id,
                tournament_name=tournament.tournament_name,
            )

        logger.info(
            "registration_admitted",
            tournament_id=tournament.id,
            registration_id=registration.id,
            user_id=user_id,
            slot_number=slot_number,
            entry_fee_paid=entry_fee,
        )

        message = "Successfully registered for the tournament"
        if entry_fee > 0:
            message += f" ({entry_fee:,} deducted from wallet)"
        return RegistrationOutcome(
            kind=OutcomeKind.ADMITTED,
            message=message,
            registration=registration,
            slot_number=slot_number,
            entry_fee_paid=entry_fee,
        )

    async def _add_to_waitlist(
        self,
        tournament: Tournament,
        user_id: str,
        entrant: dict[str, Any],
        snapshot: CapacitySnapshot,
    ) -> RegistrationOutcome:
        await self.db.flush()
        position = await self._next_waitlist_position(tournament.id)

        registration = Registration.waitlisted(
            tournament_id=tournament.id,
            user_id=user_id,
            waitlist_position=position,
            **entrant,
        )
        self.db.add(registration)
        await self.db.flush()

        entry_fee = tournament.entry_fee or 0
        hold_id = None
        if entry_fee > 0:
            hold = await self.holds.create_hold(
                user_id,
                entry_fee,
                HoldType.WAITLIST_ENTRY_FEE,
                reference_type=HOLD_REFERENCE_REGISTRATION,
                reference_id=registration.id,
                description=f"Entry fee hold for waitlist: {tournament.tournament_name}",
                expires_at=ensure_utc(tournament.tournament_start_date)
                + timedelta(minutes=self.settings.waitlist_hold_grace_minutes),
            )
            hold_id = hold.id

        logger.info(
            "registration_waitlisted",
            tournament_id=tournament.id,
            registration_id=registration.id,
            user_id=user_id,
            waitlist_position=position,
            entry_fee_held=entry_fee,
        )

        message = f"Added to waitlist at position {position}"
        if entry_fee > 0:
            message += f" ({entry_fee:,} held from wallet)"
        return RegistrationOutcome(
            kind=OutcomeKind.WAITLISTED,
            message=message,
            registration=registration,
            waitlist_position=position,
            entry_fee_held=entry_fee,
            hold_id=hold_id,
            waitlist_slots_total=snapshot.max_waitlist_slots,
            waitlist_slots_taken=snapshot.waitlisted_count + 1,
        )

    async def _notify_registered(
        self,
        outcome: RegistrationOutcome,
        user_id: str,
        tournament_id: str,
    ) -> None:
        if outcome.registration is None:
            return
        tournament = await self.db.get(Tournament, tournament_id)
        name = tournament.tournament_name if tournament else ""
        if outcome.kind == OutcomeKind.ADMITTED:
            await self.notifier.registration_confirmed(
                user_id, tournament_id, name, outcome.slot_number
            )
        else:
            await self.notifier.waitlist_joined(
                user_id, tournament_id, name, outcome.waitlist_position, outcome.entry_fee_held
            )

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel_registration(
        self,
        tournament_id: str,
        user_id: str,
        reason: str = "Cancelled by entrant",
    ) -> CancellationResult:
        """Withdraw from a tournament that still accepts registrations.

        Confirmed entrants get the slot freed and the entry fee refunded;
        waitlisted entrants get their fee hold released.
        """
        async with atomic(self.db):
            result = await self.db.execute(tournament_lock_query(tournament_id))
            tournament = result.scalar_one_or_none()
            if tournament is None:
                raise TournamentNotFoundError(tournament_id)
            if not tournament.accepts_registrations:
                raise TournamentNotOpenError(tournament_id, tournament.status)

            registration = await self._find_active_registration(
                tournament_id, user_id=user_id, for_update=True
            )
            if registration is None:
                raise RegistrationNotFoundError(tournament_id, user_id)

            was_waitlisted = registration.is_waitlisted
            registration.cancel(reason, utcnow())
            outcome = CancellationResult(registration=registration, was_waitlisted=was_waitlisted)

            if was_waitlisted:
                hold = await self.holds.find_active_hold(
                    HOLD_REFERENCE_REGISTRATION, registration.id
                )
                if hold is not None:
                    await self.holds.release_hold(hold.id, "Registration cancelled")
                    outcome.released = hold.amount
            else:
                tournament.current_teams = max(0, tournament.current_teams - 1)
                paid = await self._entry_fee_paid(registration)
                if paid > 0:
                    await self.wallet.refund_entry_fee(
                        user_id,
                        paid,
                        reference_type=HOLD_REFERENCE_REGISTRATION,
                        reference_id=registration.id,
                        tournament_name=tournament.tournament_name,
                    )
                    outcome.refunded = paid

            await self.db.flush()

        logger.info(
            "registration_cancelled",
            tournament_id=tournament_id,
            registration_id=registration.id,
            user_id=user_id,
            was_waitlisted=was_waitlisted,
            refunded=outcome.refunded,
            released=outcome.released,
        )
        return outcome

    async def _entry_fee_paid(self, registration: Registration) -> int:
        """Net amount debited for this registration (entry fee or confirmed hold)."""
        total = await self.db.scalar(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.reference_type == HOLD_REFERENCE_REGISTRATION,
                WalletTransaction.reference_id == registration.id,
            )
        )
        return max(0, -int(total or 0))
