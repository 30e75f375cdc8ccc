# backend/consultbook/tasks/beat_schedule.py
"""
Celery Beat schedule.

Every job here is idempotent and safe to run concurrently with request
traffic, so overlapping runs only cost a few wasted queries.
"""

from datetime import timedelta
import logging
import os
from typing import Any

from celery.schedules import crontab

logger = logging.getLogger(__name__)

CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    # Side effects committed with settlements and refunds
    "dispatch-outbox-events": {
        "task": "outbox.dispatch_pending",
        "schedule": crontab(minute="*"),
        "options": {"queue": "notifications", "priority": 8},
    },
    # Abandon reservations whose hold lapsed and free their slots
    "sweep-expired-reservations": {
        "task": "reservations.sweep_expired",
        "schedule": crontab(minute="*"),
        "options": {"queue": "bookings", "priority": 7},
    },
    # Ask the gateway about checkouts that never produced a signal
    "reconcile-pending-payments": {
        "task": "payments.reconcile_pending",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "payments", "priority": 9},
    },
    # CONFIRMED -> ONGOING -> COMPLETED as the clock passes
    "advance-session-lifecycle": {
        "task": "sessions.advance_lifecycle",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "bookings", "priority": 5},
    },
}

SCHEDULE_CONFIG: dict[str, dict[str, dict[str, Any]]] = {
    "production": {},
    "testing": {
        "dispatch-outbox-events": {
            "task": "outbox.dispatch_pending",
            "schedule": timedelta(seconds=15),
            "options": {"queue": "notifications"},
        },
    },
}


def get_beat_schedule(environment: str = "production") -> dict[str, dict[str, Any]]:
    """Base schedule with the environment's overrides applied."""
    base: dict[str, dict[str, Any]] = dict(CELERYBEAT_SCHEDULE)
    overrides = SCHEDULE_CONFIG.get(environment)
    if overrides:
        base.update(overrides)
    if os.getenv("CONSULTBOOK_DISABLE_RECONCILIATION", "").lower() in {"1", "true", "yes"}:
        logger.warning("Payment reconciliation is disabled by environment")
        base.pop("reconcile-pending-payments", None)
    return base
