"""Check-in reminder and auto-finalization tasks.

Both run every minute on the ``checkin`` queue.
"""

import asyncio
import logging

from arena.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="arena.tasks.checkin.send_checkin_reminders_task",
    max_retries=1,
)
def send_checkin_reminders_task(self):
    """Notify entrants of tournaments whose check-in window just opened."""
    result = asyncio.run(_send_checkin_reminders())
    if result["tournaments"]:
        logger.info(f"Check-in reminders: {result}")
    return result


@celery_app.task(
    bind=True,
    name="arena.tasks.checkin.auto_finalize_task",
    max_retries=1,
)
def auto_finalize_task(self):
    """Finalize check-ins for tournaments that have started."""
    result = asyncio.run(_auto_finalize())
    if result["checked"]:
        logger.info(f"Auto-finalization: {result}")
    return result


async def _send_checkin_reminders() -> dict:
    from arena.services.checkin import CheckinService
    from arena.utils.db import create_task_session_factory
    from arena.utils.redis_client import close_redis

    engine, session_factory = create_task_session_factory()
    try:
        async with session_factory() as session:
            return await CheckinService(session).send_checkin_reminders()
    finally:
        await close_redis()
        await engine.dispose()


async def _auto_finalize() -> dict:
    from arena.services.finalization import auto_finalize
    from arena.utils.db import create_task_session_factory
    from arena.utils.redis_client import close_redis

    engine, session_factory = create_task_session_factory()
    try:
        return await auto_finalize(session_factory)
    finally:
        await close_redis()
        await engine.dispose()
