"""Tests for capacity admission decisions."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.dialects import postgresql

from arena.services.admission import (
    AdmissionDecision,
    CapacitySnapshot,
    calculate_waitlist_slots,
    decide_admission,
    tournament_lock_query,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def snapshot(
    current: int,
    max_teams: int = 4,
    waitlisted: int = 0,
    waitlist_slots: int = 2,
    starts_in: timedelta = timedelta(hours=3),
) -> CapacitySnapshot:
    return CapacitySnapshot(
        current_teams=current,
        max_teams=max_teams,
        waitlisted_count=waitlisted,
        max_waitlist_slots=waitlist_slots,
        tournament_start=NOW + starts_in,
        now=NOW,
    )


class TestCalculateWaitlistSlots:
    """Waitlist capacity derivation."""

    def test_ratio_of_max_teams_rounded_up(self):
        """Should round the waitlist ratio up."""
        assert calculate_waitlist_slots(16, 0.5, 1) == 8
        assert calculate_waitlist_slots(5, 0.5, 1) == 3

    def test_minimum_applies_to_small_tournaments(self):
        """Should never offer fewer than the minimum slots."""
        assert calculate_waitlist_slots(2, 0.1, 2) == 2

    def test_zero_ratio_disables_waitlist(self):
        """Should disable the waitlist when the ratio is zero."""
        assert calculate_waitlist_slots(16, 0, 5) == 0


class TestDecideAdmission:
    """Decision table for Admit / Waitlist / OfferWaitlist / Reject."""

    def test_admit_while_slots_remain(self):
        """Should admit while slots remain."""
        assert decide_admission(snapshot(current=3), join_waitlist=False) == AdmissionDecision.ADMIT

    def test_admit_ignores_waitlist_flag_when_not_full(self):
        """Should admit even when the entrant asked for the waitlist."""
        assert decide_admission(snapshot(current=0), join_waitlist=True) == AdmissionDecision.ADMIT

    def test_full_without_opt_in_offers_waitlist(self):
        """Should offer the waitlist when full."""
        decision = decide_admission(snapshot(current=4), join_waitlist=False)
        assert decision == AdmissionDecision.OFFER_WAITLIST

    def test_full_with_opt_in_waitlists(self):
        """Should waitlist when full and the entrant opted in."""
        decision = decide_admission(snapshot(current=4), join_waitlist=True)
        assert decision == AdmissionDecision.WAITLIST

    def test_full_waitlist_rejects(self):
        """Should reject when the waitlist is full too."""
        decision = decide_admission(
            snapshot(current=4, waitlisted=2, waitlist_slots=2), join_waitlist=True
        )
        assert decision == AdmissionDecision.REJECT

    def test_started_tournament_rejects_waitlist(self):
        """Should reject waitlisting once the tournament has started."""
        decision = decide_admission(
            snapshot(current=4, starts_in=timedelta(minutes=-1)), join_waitlist=True
        )
        assert decision == AdmissionDecision.REJECT

    def test_disabled_waitlist_rejects(self):
        """Should reject when the waitlist has no capacity."""
        decision = decide_admission(
            snapshot(current=4, waitlist_slots=0), join_waitlist=True
        )
        assert decision == AdmissionDecision.REJECT

    @pytest.mark.parametrize("waitlisted,expected", [(0, 2), (1, 1), (2, 0), (5, 0)])
    def test_waitlist_slots_available(self, waitlisted, expected):
        """Should report the remaining waitlist slots."""
        assert snapshot(current=4, waitlisted=waitlisted).waitlist_slots_available == expected


class TestTournamentLockQuery:
    """Occupancy read takes a row lock on PostgreSQL."""

    def test_compiles_to_for_update(self):
        """Should lock the tournament row."""
        query = tournament_lock_query("t-1")

        sql = str(query.compile(dialect=postgresql.dialect()))

        assert sql.rstrip().endswith("FOR UPDATE")
        assert "tournaments.id = %(id_1)s" in sql

    def test_refreshes_identity_map(self):
        """Should reload the row instead of trusting the identity map."""
        query = tournament_lock_query("t-1")
        assert query.get_execution_options()["populate_existing"] is True
