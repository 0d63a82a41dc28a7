"""Tests for the periodic hold expiry sweep."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from arena.models.hold import HoldStatus, HoldType
from arena.services.hold_sweeper import HoldExpirySweeper
from arena.services.holds import HoldLedger
from arena.utils.clock import utcnow


@pytest.fixture
def overdue_holds(db, make_user):
    """Create ``count`` holds of 100 that expired a few minutes ago."""

    async def _create(count: int, balance: int = 1000):
        user = await make_user(balance=balance)
        ledger = HoldLedger(db)
        holds = []
        for i in range(count):
            holds.append(
                await ledger.create_hold(
                    user.id,
                    100,
                    HoldType.WAITLIST_ENTRY_FEE,
                    reference_type="tournament_registration",
                    reference_id=f"reg-{i}",
                    expires_at=utcnow() - timedelta(minutes=10 + i),
                )
            )
        await db.commit()
        return user, holds

    return _create


class TestHoldExpirySweeper:
    """Batch expiry with per-hold transactions."""

    @pytest.mark.asyncio
    async def test_expires_overdue_holds(self, db, session_factory, overdue_holds):
        """Should expire every overdue hold."""
        user, holds = await overdue_holds(3)

        result = await HoldExpirySweeper(session_factory).run()

        assert result.expired == 3
        assert result.failed == 0
        assert result.total_released == 300

        await db.refresh(user)
        assert user.hold_balance == 0
        for hold in holds:
            await db.refresh(hold)
            assert hold.status == HoldStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_nothing_due(self, session_factory, make_user):
        """Should return an empty summary when nothing is due."""
        await make_user(balance=1000)

        result = await HoldExpirySweeper(session_factory).run()

        assert result.to_dict() == {
            "expired": 0,
            "failed": 0,
            "skipped": 0,
            "total_released": 0,
        }

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_run(self, db, session_factory, overdue_holds):
        """Should stop at the batch size."""
        user, _ = await overdue_holds(3)

        result = await HoldExpirySweeper(session_factory, batch_size=2).run()

        assert result.expired == 2
        await db.refresh(user)
        assert user.hold_balance == 100

    @pytest.mark.asyncio
    async def test_hold_released_since_scan_is_skipped(self, db, session_factory, overdue_holds):
        """Should skip holds released after the scan."""
        user, holds = await overdue_holds(2)
        await HoldLedger(db).release_hold(holds[0].id, "Registration cancelled")
        await db.commit()

        sweeper = HoldExpirySweeper(session_factory)
        with patch.object(
            sweeper,
            "find_expired_hold_ids",
            AsyncMock(return_value=[holds[0].id, holds[1].id]),
        ):
            result = await sweeper.run()

        assert result.skipped == 1
        assert result.expired == 1
        await db.refresh(holds[0])
        assert holds[0].status == HoldStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, db, session_factory, overdue_holds):
        """Should count a failing hold and keep going."""
        user, holds = await overdue_holds(2)
        broken_id = holds[1].id
        original = HoldLedger.expire_hold

        async def flaky_expire(self, hold_id, **kwargs):
            if hold_id == broken_id:
                raise RuntimeError("connection reset")
            return await original(self, hold_id, **kwargs)

        with patch.object(HoldLedger, "expire_hold", flaky_expire):
            result = await HoldExpirySweeper(session_factory).run()

        assert result.failed == 1
        assert result.failed_hold_ids == [broken_id]
        assert result.expired == 1
        await db.refresh(user)
        assert user.hold_balance == 100

    @pytest.mark.asyncio
    async def test_vanished_hold_is_skipped(self, session_factory):
        """Should skip a hold that no longer exists."""
        sweeper = HoldExpirySweeper(session_factory)
        with patch.object(
            sweeper, "find_expired_hold_ids", AsyncMock(return_value=["missing-hold"])
        ):
            result = await sweeper.run()

        assert result.skipped == 1
        assert result.failed == 0
