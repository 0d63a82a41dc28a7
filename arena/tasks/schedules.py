"""Celery Beat schedule configuration.

Tasks:
- Every minute: check-in reminders, auto-finalization
- Every 5 minutes: balance hold expiry
"""

from celery.schedules import crontab


# Celery Beat schedule
CELERY_BEAT_SCHEDULE = {
    # ==========================================================================
    # Check-in
    # ==========================================================================

    # Notify entrants when a check-in window opens
    "checkin-reminders-every-minute": {
        "task": "arena.tasks.checkin.send_checkin_reminders_task",
        "schedule": crontab(),  # Every minute
        "options": {"queue": "checkin"},
    },

    # Finalize tournaments that have started
    "auto-finalize-every-minute": {
        "task": "arena.tasks.checkin.auto_finalize_task",
        "schedule": crontab(),
        "options": {"queue": "checkin"},
    },

    # ==========================================================================
    # Ledger
    # ==========================================================================

    # Release holds whose expiry has passed
    "expire-holds-every-5-minutes": {
        "task": "arena.tasks.holds.expire_holds_task",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "ledger"},
    },
}


# Task routing configuration
CELERY_TASK_ROUTES = {
    "arena.tasks.holds.*": {"queue": "ledger"},
    "arena.tasks.checkin.*": {"queue": "checkin"},
}
