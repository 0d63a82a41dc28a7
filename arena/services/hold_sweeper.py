"""Periodic expiry of balance holds.

Candidates are selected without locks, then each hold is expired in its own
short transaction so a slow run never blocks registration traffic and one
bad hold never aborts the rest of the batch.
"""

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arena.config import get_settings
from arena.logging_config import get_logger
from arena.models.hold import BalanceHold, HoldStatus
from arena.services.holds import HoldLedger
from arena.utils.clock import utcnow
from arena.utils.db import atomic
from arena.utils.errors import HoldNotActiveError

logger = get_logger(__name__)


@dataclass
class SweepResult:
    expired: int = 0
    failed: int = 0
    skipped: int = 0
    total_released: int = 0
    failed_hold_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "expired": self.expired,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_released": self.total_released,
        }


class HoldExpirySweeper:
    """Releases active holds whose ``expires_at`` has passed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.batch_size = batch_size or get_settings().hold_sweep_batch_size

    async def find_expired_hold_ids(self, now: datetime) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BalanceHold.id)
                .where(
                    BalanceHold.status == HoldStatus.ACTIVE.value,
                    BalanceHold.expires_at.is_not(None),
                    BalanceHold.expires_at < now,
                )
                .order_by(BalanceHold.expires_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def run(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        summary = SweepResult()

        hold_ids = await self.find_expired_hold_ids(now)
        if not hold_ids:
            return summary

        logger.info("hold_sweep_started", candidates=len(hold_ids))

        for hold_id in hold_ids:
            try:
                async with self.session_factory() as session:
                    async with atomic(session):
                        hold = await HoldLedger(session).expire_hold(
                            hold_id, now=now, skip_locked=True
                        )
            except HoldNotActiveError:
                # Released or confirmed since the candidate scan
                summary.skipped += 1
                continue
            except Exception as exc:
                summary.failed += 1
                summary.failed_hold_ids.append(hold_id)
                logger.error(
                    "hold_expiry_failed",
                    hold_id=hold_id,
                    error=str(exc),
                    exc_info=True,
                )
                continue

            if hold is None:
                summary.skipped += 1
                continue
            summary.expired += 1
            summary.total_released += hold.amount

        logger.info("hold_sweep_finished", **summary.to_dict())
        return summary
