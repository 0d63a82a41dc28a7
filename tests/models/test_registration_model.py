"""Tests for registration state transitions and storage constraints."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from arena.models import (
    Registration,
    RegistrationState,
    RegistrationStatus,
    Tournament,
    User,
)
from arena.utils.errors import IllegalTransitionError

AT = datetime(2026, 3, 1, 17, 45, tzinfo=timezone.utc)


def confirmed(slot=1):
    return Registration.confirmed(tournament_id="t-1", user_id="u-1", slot_number=slot)


def waitlisted(position=1):
    return Registration.waitlisted(
        tournament_id="t-1", user_id="u-2", waitlist_position=position
    )


class TestRegistrationState:
    """Derived state from the stored columns."""

    def test_confirmed(self):
        registration = confirmed(slot=4)

        assert registration.state == RegistrationState.CONFIRMED
        assert registration.slot_number == 4
        assert registration.waitlist_position is None
        assert registration.is_active

    def test_waitlisted(self):
        registration = waitlisted(position=2)

        assert registration.state == RegistrationState.WAITLISTED
        assert registration.slot_number is None
        assert registration.waitlist_position == 2

    def test_entrant_fields_passed_through(self):
        registration = Registration.confirmed(
            tournament_id="t-1",
            user_id="u-1",
            slot_number=1,
            team_name="Night Owls",
            selected_players=["u-1", "u-3"],
        )

        assert registration.team_name == "Night Owls"
        assert registration.selected_players == ["u-1", "u-3"]


class TestRegistrationTransitions:
    """One-way transitions."""

    def test_check_in(self):
        registration = confirmed()

        registration.check_in(AT)

        assert registration.checked_in
        assert registration.checked_in_at == AT

    def test_check_in_twice(self):
        registration = waitlisted()
        registration.check_in(AT)

        with pytest.raises(IllegalTransitionError):
            registration.check_in(AT)

    def test_promote(self):
        registration = waitlisted()

        registration.promote(slot_number=2, original_holder_id="reg-b", at=AT)

        assert registration.state == RegistrationState.CONFIRMED
        assert registration.slot_number == 2
        assert registration.waitlist_position is None
        assert registration.promoted_via_checkin
        assert registration.original_slot_holder_id == "reg-b"
        assert registration.promoted_at == AT
        assert registration.status == RegistrationStatus.REGISTERED.value

    def test_confirmed_cannot_be_promoted(self):
        with pytest.raises(IllegalTransitionError) as exc_info:
            confirmed().promote(slot_number=2, original_holder_id="reg-b", at=AT)

        assert exc_info.value.code == "ILLEGAL_TRANSITION"
        assert exc_info.value.details["fromState"] == "confirmed"

    def test_cancel(self):
        registration = confirmed()

        registration.cancel("Missed check-in", AT)

        assert registration.state == RegistrationState.CANCELLED
        assert not registration.is_active
        assert registration.cancel_reason == "Missed check-in"
        # Slot kept for history
        assert registration.slot_number == 1

    @pytest.mark.parametrize(
        "action",
        [
            lambda r: r.cancel("again", AT),
            lambda r: r.check_in(AT),
            lambda r: r.promote(3, "reg-x", AT),
        ],
    )
    def test_cancelled_is_terminal(self, action):
        registration = waitlisted()
        registration.cancel("Cancelled by entrant", AT)

        with pytest.raises(IllegalTransitionError):
            action(registration)


class TestRegistrationConstraints:
    """Storage-level guards."""

    @pytest_asyncio.fixture
    async def tournament_and_users(self, db):
        users = [User(username=f"player{i}", in_game_ids={}) for i in range(2)]
        tournament = Tournament(
            tournament_name="Weekend Cup",
            game_type="valorant",
            tournament_start_date=AT,
            max_teams=4,
        )
        db.add_all([tournament, *users])
        await db.commit()
        return tournament, users

    @pytest.mark.asyncio
    async def test_active_slot_is_unique(self, db, tournament_and_users):
        tournament, users = tournament_and_users
        db.add_all(
            [
                Registration.confirmed(
                    tournament_id=tournament.id, user_id=user.id, slot_number=1
                )
                for user in users
            ]
        )

        with pytest.raises(IntegrityError):
            await db.commit()

    @pytest.mark.asyncio
    async def test_cancelled_slot_can_be_reused(self, db, tournament_and_users):
        tournament, users = tournament_and_users
        old = Registration.confirmed(
            tournament_id=tournament.id, user_id=users[0].id, slot_number=1
        )
        db.add(old)
        await db.flush()
        old.cancel("Missed check-in", AT)
        await db.flush()
        db.add(
            Registration.confirmed(
                tournament_id=tournament.id, user_id=users[1].id, slot_number=1
            )
        )

        await db.commit()

    @pytest.mark.asyncio
    async def test_one_active_registration_per_user(self, db, tournament_and_users):
        tournament, users = tournament_and_users
        db.add(
            Registration.confirmed(
                tournament_id=tournament.id, user_id=users[0].id, slot_number=1
            )
        )
        db.add(
            Registration.waitlisted(
                tournament_id=tournament.id, user_id=users[0].id, waitlist_position=1
            )
        )

        with pytest.raises(IntegrityError):
            await db.commit()

    @pytest.mark.asyncio
    async def test_slot_and_waitlist_are_exclusive(self, db, tournament_and_users):
        tournament, users = tournament_and_users
        registration = Registration.waitlisted(
            tournament_id=tournament.id, user_id=users[0].id, waitlist_position=1
        )
        registration.slot_number = 1
        db.add(registration)

        with pytest.raises(IntegrityError):
            await db.commit()
