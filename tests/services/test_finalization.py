"""Tests for check-in finalization.

Covers no-show/candidate pairing, ledger reconciliation, idempotency and
the scheduled auto-finalize sweep.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from arena.models import (
    BalanceHold,
    HoldStatus,
    Registration,
    RegistrationStatus,
    Tournament,
    TournamentCheckinSettings,
)
from arena.services.checkin import CheckinService
from arena.services.finalization import (
    NO_SHOW_REASON,
    FinalizationService,
    auto_finalize,
)
from arena.services.hold_sweeper import HoldExpirySweeper
from arena.services.holds import HoldLedger
from arena.services.registration import RegistrationService
from arena.utils.clock import ensure_utc
from arena.utils.errors import (
    CheckinStillOpenError,
    TournamentNotFoundError,
)

FEE = 100


async def registration_of(db, user_id) -> Registration:
    return await db.scalar(
        select(Registration)
        .where(Registration.user_id == user_id)
        .execution_options(populate_existing=True)
    )


def after_start(tournament, minutes=1):
    return ensure_utc(tournament.tournament_start_date) + timedelta(minutes=minutes)


@pytest.fixture
def finalizer(db, notifier):
    return FinalizationService(db, notifier)


@pytest.fixture
def checkin_settings(db):
    async def _create(tournament_id, **values):
        row = TournamentCheckinSettings(tournament_id=tournament_id, **values)
        db.add(row)
        await db.commit()
        return row

    return _create


@pytest.fixture
def arrange(db, notifier, make_user, make_tournament):
    """Build a tournament with confirmed entrants and waitlisters.

    ``checkins`` maps entrant labels to minutes-before-start check-in times.
    """

    async def _arrange(confirmed, waitlisted, checkins, *, entry_fee=FEE):
        tournament = await make_tournament(
            max_teams=len(confirmed),
            entry_fee=entry_fee,
            starts_in=timedelta(minutes=10),
        )
        registration = RegistrationService(db, notifier)
        users = {}
        for label in confirmed:
            users[label] = await make_user(label, balance=500)
            await registration.register(tournament.id, users[label].id)
        for label in waitlisted:
            users[label] = await make_user(label, balance=500)
            await registration.register(tournament.id, users[label].id, join_waitlist=True)

        start = ensure_utc(tournament.tournament_start_date)
        checkin = CheckinService(db, notifier)
        for label, minutes_before in checkins.items():
            result = await checkin.checkin(
                tournament.id, users[label].id, now=start - timedelta(minutes=minutes_before)
            )
            assert result.success, result.message
        return tournament, users

    return _arrange


class TestFinalize:
    """Pairing no-shows with checked-in waitlisters."""

    @pytest.mark.asyncio
    async def test_no_show_replaced_by_checked_in_waitlister(self, db, finalizer, notifier, arrange):
        """Should hand a no-show's slot to a checked-in waitlister."""
        tournament, users = await arrange(
            confirmed=["alpha", "bravo"],
            waitlisted=["charlie"],
            checkins={"alpha": 20, "charlie": 15},
        )
        bravo_reg = await registration_of(db, users["bravo"].id)
        bravo_slot = bravo_reg.slot_number

        result = await finalizer.finalize(tournament.id, now=after_start(tournament))

        assert result.promoted_count == 1
        assert result.disqualified_count == 1
        assert result.no_show_count == 1
        assert result.finalized_at is not None

        bravo_reg = await registration_of(db, users["bravo"].id)
        assert bravo_reg.status == RegistrationStatus.CANCELLED.value
        assert bravo_reg.cancel_reason == NO_SHOW_REASON

        charlie_reg = await registration_of(db, users["charlie"].id)
        assert charlie_reg.slot_number == bravo_slot
        assert charlie_reg.is_waitlisted is False
        assert charlie_reg.waitlist_position is None
        assert charlie_reg.promoted_via_checkin is True
        assert charlie_reg.original_slot_holder_id == bravo_reg.id

        refreshed = await db.get(Tournament, tournament.id)
        assert refreshed.current_teams == 2

        notifier.promoted.assert_awaited_once_with(
            users["charlie"].id, tournament.id, "Weekend Cup", bravo_slot
        )
        notifier.slot_forfeited.assert_awaited_once_with(
            users["bravo"].id, tournament.id, "Weekend Cup"
        )

    @pytest.mark.asyncio
    async def test_promoted_hold_confirmed(self, db, finalizer, arrange):
        """Should turn the promoted entrant's hold into a debit."""
        tournament, users = await arrange(
            confirmed=["alpha", "bravo"],
            waitlisted=["charlie"],
            checkins={"alpha": 20, "charlie": 15},
        )

        await finalizer.finalize(tournament.id, now=after_start(tournament))

        charlie = users["charlie"]
        await db.refresh(charlie)
        assert charlie.wallet_balance == 500 - FEE
        assert charlie.hold_balance == 0

        hold = await db.scalar(select(BalanceHold).where(BalanceHold.user_id == charlie.id))
        await db.refresh(hold)
        assert hold.status == HoldStatus.CONFIRMED.value
        assert hold.transaction_id is not None
        assert await HoldLedger(db).verify_hold_balance(charlie.id) == 0

        # No refund for the no-show
        bravo = users["bravo"]
        await db.refresh(bravo)
        assert bravo.wallet_balance == 500 - FEE

    @pytest.mark.asyncio
    async def test_earliest_checkin_promoted_first(self, db, finalizer, arrange):
        """Should promote in check-in order."""
        tournament, users = await arrange(
            confirmed=["alpha", "bravo", "echo"],
            waitlisted=["charlie", "delta"],
            checkins={"alpha": 20, "bravo": 20, "delta": 25, "charlie": 12},
        )

        result = await finalizer.finalize(tournament.id, now=after_start(tournament))

        assert [p.user_id for p in result.promoted] == [users["delta"].id]
        charlie_reg = await registration_of(db, users["charlie"].id)
        assert charlie_reg.is_waitlisted is True

        # Unpromoted waitlister keeps the hold until it expires
        hold = await db.scalar(
            select(BalanceHold)
            .where(BalanceHold.user_id == users["charlie"].id)
            .execution_options(populate_existing=True)
        )
        assert hold.status == HoldStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_more_no_shows_than_candidates(self, db, finalizer, arrange):
        """Should cancel only as many no-shows as there are candidates."""
        tournament, users = await arrange(
            confirmed=["alpha", "bravo"],
            waitlisted=["charlie"],
            checkins={"charlie": 15},
        )

        result = await finalizer.finalize(tournament.id, now=after_start(tournament))

        assert result.no_show_count == 2
        assert result.disqualified_count == 1
        # Lowest slot goes first
        assert result.disqualified[0].user_id == users["alpha"].id
        assert result.promoted[0].slot_number == 1

        bravo_reg = await registration_of(db, users["bravo"].id)
        assert bravo_reg.status == RegistrationStatus.REGISTERED.value
        refreshed = await db.get(Tournament, tournament.id)
        assert refreshed.current_teams == 2

    @pytest.mark.asyncio
    async def test_everyone_checked_in(self, finalizer, notifier, arrange):
        """Should change nothing when everyone checked in."""
        tournament, _ = await arrange(
            confirmed=["alpha", "bravo"],
            waitlisted=["charlie"],
            checkins={"alpha": 20, "bravo": 20, "charlie": 15},
        )

        result = await finalizer.finalize(tournament.id, now=after_start(tournament))

        assert result.promoted_count == 0
        assert result.disqualified_count == 0
        assert result.no_show_count == 0
        notifier.promoted.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_free_tournament_needs_no_hold(self, db, finalizer, arrange):
        """Should promote without a hold on a free tournament."""
        tournament, users = await arrange(
            confirmed=["alpha"],
            waitlisted=["charlie"],
            checkins={"charlie": 15},
            entry_fee=0,
        )

        result = await finalizer.finalize(tournament.id, now=after_start(tournament))

        assert result.promoted_count == 1
        charlie_reg = await registration_of(db, users["charlie"].id)
        assert charlie_reg.slot_number == 1


class TestFinalizeGuards:
    """Idempotency, timing and integrity failures."""

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, finalizer, notifier, arrange):
        """Should do nothing on a second run."""
        tournament, _ = await arrange(
            confirmed=["alpha", "bravo"],
            waitlisted=["charlie"],
            checkins={"alpha": 20, "charlie": 15},
        )
        now = after_start(tournament)
        first = await finalizer.finalize(tournament.id, now=now)

        second = await finalizer.finalize(tournament.id, now=now + timedelta(minutes=1))

        assert second.already_finalized
        assert second.promoted_count == 0
        assert second.finalized_at == first.finalized_at
        assert notifier.promoted.await_count == 1

    @pytest.mark.asyncio
    async def test_refused_before_start(self, finalizer, arrange):
        """Should refuse to finalize before the start time."""
        tournament, _ = await arrange(confirmed=["alpha"], waitlisted=[], checkins={})

        with pytest.raises(CheckinStillOpenError):
            await finalizer.finalize(
                tournament.id, now=after_start(tournament, minutes=-5)
            )

    @pytest.mark.asyncio
    async def test_force_before_start(self, finalizer, arrange):
        """Should finalize early when forced."""
        tournament, _ = await arrange(
            confirmed=["alpha"],
            waitlisted=["charlie"],
            checkins={"charlie": 15},
        )

        result = await finalizer.finalize(
            tournament.id, force=True, now=after_start(tournament, minutes=-5)
        )

        assert result.promoted_count == 1

    @pytest.mark.asyncio
    async def test_unknown_tournament(self, finalizer):
        """Should raise for an unknown tournament."""
        with pytest.raises(TournamentNotFoundError):
            await finalizer.finalize("missing")

    @pytest.mark.asyncio
    async def test_released_hold_passes_candidate_over(self, db, finalizer, notifier, arrange):
        """Should promote the next funded candidate when one hold was released."""
        tournament, users = await arrange(
            confirmed=["alpha", "bravo", "echo"],
            waitlisted=["charlie", "delta"],
            checkins={"alpha": 20, "bravo": 20, "charlie": 25, "delta": 12},
        )
        tournament_id = tournament.id
        charlie_id = users["charlie"].id
        delta_id = users["delta"].id
        echo_id = users["echo"].id
        now = after_start(tournament)
        hold = await db.scalar(select(BalanceHold).where(BalanceHold.user_id == charlie_id))
        await HoldLedger(db).release_hold(hold.id, "Released by admin")
        await db.commit()

        result = await finalizer.finalize(tournament_id, now=now)

        charlie_reg = await registration_of(db, charlie_id)
        assert result.unfunded_candidates == [charlie_reg.id]
        assert [p.user_id for p in result.promoted] == [delta_id]
        assert [d.user_id for d in result.disqualified] == [echo_id]
        assert charlie_reg.is_waitlisted is True
        assert charlie_reg.status == RegistrationStatus.REGISTERED.value
        assert result.finalized_at is not None
        notifier.promoted.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_hold_after_late_finalize(
        self, db, session_factory, finalizer, notifier, arrange
    ):
        """Should finalize without promotion when the sweeper expired the only hold."""
        tournament, users = await arrange(
            confirmed=["alpha", "bravo"],
            waitlisted=["charlie"],
            checkins={"alpha": 20, "charlie": 15},
        )
        tournament_id = tournament.id
        bravo_id = users["bravo"].id
        charlie = users["charlie"]
        start = ensure_utc(tournament.tournament_start_date)
        await db.commit()

        sweep = await HoldExpirySweeper(session_factory).run(
            now=start + timedelta(minutes=121)
        )
        assert sweep.expired == 1

        result = await finalizer.finalize(
            tournament_id, now=start + timedelta(minutes=180)
        )

        assert result.promoted_count == 0
        assert result.disqualified_count == 0
        assert result.no_show_count == 1
        assert len(result.unfunded_candidates) == 1
        assert result.finalized_at is not None

        bravo_reg = await registration_of(db, bravo_id)
        assert bravo_reg.status == RegistrationStatus.REGISTERED.value
        await db.refresh(charlie)
        assert charlie.wallet_balance == 500
        assert charlie.hold_balance == 0
        notifier.slot_forfeited.assert_not_awaited()

        again = await finalizer.finalize(tournament_id, now=start + timedelta(minutes=181))
        assert again.already_finalized


class TestAutoFinalize:
    """Scheduled sweep over started tournaments."""

    @pytest.mark.asyncio
    async def test_finds_only_due_tournaments(self, db, finalizer, checkin_settings, arrange):
        """Should select only started auto-finalize tournaments."""
        due, _ = await arrange(confirmed=["alpha"], waitlisted=[], checkins={})
        manual, _ = await arrange(confirmed=["bravo"], waitlisted=[], checkins={})
        await checkin_settings(manual.id, auto_finalize=False)

        found = await finalizer.find_tournaments_needing_finalization(after_start(due))

        assert found == [due.id]
        assert await finalizer.find_tournaments_needing_finalization(
            after_start(due, minutes=-5)
        ) == []

    @pytest.mark.asyncio
    async def test_finalizes_each_due_tournament(self, session_factory, notifier, arrange):
        """Should finalize due tournaments once."""
        tournament, users = await arrange(
            confirmed=["alpha"],
            waitlisted=["charlie"],
            checkins={"charlie": 15},
        )
        now = after_start(tournament)

        summary = await auto_finalize(session_factory, notifier, now=now)
        repeat = await auto_finalize(session_factory, notifier, now=now)

        assert summary == {"checked": 1, "finalized": 1, "promoted": 1, "failed": 0}
        assert repeat == {"checked": 0, "finalized": 0, "promoted": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, db, session_factory, notifier, arrange):
        """Should keep finalizing the other tournaments when one fails."""
        broken, _ = await arrange(
            confirmed=["alpha"],
            waitlisted=["charlie"],
            checkins={"charlie": 15},
        )
        healthy, _ = await arrange(
            confirmed=["bravo"],
            waitlisted=["delta"],
            checkins={"delta": 15},
        )
        broken_id = broken.id
        now = after_start(healthy)
        finalize = FinalizationService.finalize

        async def flaky_finalize(service, tournament_id, **kwargs):
            if tournament_id == broken_id:
                raise RuntimeError("database went away")
            return await finalize(service, tournament_id, **kwargs)

        with patch.object(FinalizationService, "finalize", flaky_finalize):
            summary = await auto_finalize(session_factory, notifier, now=now)

        assert summary == {"checked": 2, "finalized": 1, "promoted": 1, "failed": 1}
