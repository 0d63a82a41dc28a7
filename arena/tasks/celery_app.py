"""Celery application configuration.

Features:
- Redis as broker and result backend
- Task routing by queue
- Scheduled tasks via Celery Beat
- Worker logging configured through structlog
"""

from celery import Celery
from celery.signals import setup_logging

from arena.config import get_settings
from arena.logging_config import configure_logging
from arena.tasks.schedules import CELERY_BEAT_SCHEDULE, CELERY_TASK_ROUTES

settings = get_settings()
REDIS_BASE_URL = settings.redis_url.rsplit("/", 1)[0]

# Create Celery app
celery_app = Celery(
    "arena_tasks",
    broker=f"{REDIS_BASE_URL}/1",  # Use DB 1 for broker
    backend=f"{REDIS_BASE_URL}/2",  # Use DB 2 for results
    include=[
        "arena.tasks.holds",
        "arena.tasks.checkin",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone=settings.celery_timezone,
    enable_utc=True,

    # Task routing (from schedules.py)
    task_routes=CELERY_TASK_ROUTES,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # Result settings
    result_expires=3600,  # 1 hour

    # Beat schedule (from schedules.py)
    beat_schedule=CELERY_BEAT_SCHEDULE,

    # Retry settings
    task_default_retry_delay=30,
    task_max_retries=3,
)


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Replace Celery's default logging with the structlog setup."""
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.app_env == "production",
        app_env=settings.app_env,
    )
