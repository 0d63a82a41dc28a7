"""Capacity admission.

Decides Admit / Waitlist / OfferWaitlist / Reject from an occupancy
snapshot that was read under the tournament row lock. The decision itself
is a pure function so that it can be exercised without a database.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import Select, select

from arena.models.tournament import Tournament


class AdmissionDecision(str, Enum):
    ADMIT = "admit"
    WAITLIST = "waitlist"
    OFFER_WAITLIST = "offer_waitlist"
    REJECT = "reject"


@dataclass(frozen=True)
class CapacitySnapshot:
    """Occupancy figures read inside the locked critical section."""

    current_teams: int
    max_teams: int
    waitlisted_count: int
    max_waitlist_slots: int
    tournament_start: datetime
    now: datetime

    @property
    def is_full(self) -> bool:
        return self.current_teams >= self.max_teams

    @property
    def has_started(self) -> bool:
        return self.now >= self.tournament_start

    @property
    def waitlist_accepting(self) -> bool:
        return (
            not self.has_started
            and self.max_waitlist_slots > 0
            and self.waitlisted_count < self.max_waitlist_slots
        )

    @property
    def waitlist_slots_available(self) -> int:
        return max(0, self.max_waitlist_slots - self.waitlisted_count)


def calculate_waitlist_slots(max_teams: int, ratio: float, min_slots: int) -> int:
    """Waitlist capacity for a tournament of ``max_teams``.

    A ratio of zero disables the waitlist entirely.
    """
    if ratio <= 0 or max_teams <= 0:
        return 0
    return max(min_slots, math.ceil(max_teams * ratio))


def decide_admission(snapshot: CapacitySnapshot, join_waitlist: bool) -> AdmissionDecision:
    if not snapshot.is_full:
        return AdmissionDecision.ADMIT
    if not snapshot.waitlist_accepting:
        return AdmissionDecision.REJECT
    if join_waitlist:
        return AdmissionDecision.WAITLIST
    return AdmissionDecision.OFFER_WAITLIST


def tournament_lock_query(tournament_id: str) -> Select:
    """Locked occupancy read. Held until the registering transaction ends."""
    return (
        select(Tournament)
        .where(Tournament.id == tournament_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
