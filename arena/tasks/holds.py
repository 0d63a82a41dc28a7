"""Balance hold expiry task.

Scheduled every 5 minutes on the ``ledger`` queue.
"""

import asyncio
import logging

from arena.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="arena.tasks.holds.expire_holds_task",
    max_retries=3,
    default_retry_delay=60,
)
def expire_holds_task(self):
    """Release every active hold whose ``expires_at`` has passed.

    Returns:
        Summary dict with expired/failed/skipped counts and released total
    """
    logger.info(f"Starting hold expiry sweep (attempt {self.request.retries + 1})")

    result = asyncio.run(_expire_holds())

    logger.info(f"Hold expiry sweep complete: {result}")
    return result


async def _expire_holds() -> dict:
    from arena.services.hold_sweeper import HoldExpirySweeper
    from arena.utils.db import create_task_session_factory

    engine, session_factory = create_task_session_factory()
    try:
        summary = await HoldExpirySweeper(session_factory).run()
        return {"status": "success", **summary.to_dict()}
    finally:
        await engine.dispose()
