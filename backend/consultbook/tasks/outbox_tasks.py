# backend/consultbook/tasks/outbox_tasks.py
"""
Celery tasks for dispatching outbox events.

Two steps:
1. ``outbox.dispatch_pending`` periodically enqueues one delivery per due event.
2. ``outbox.deliver_event`` delivers it and schedules the retry on failure.
"""

from __future__ import annotations

from typing import Any, Optional

from celery.app.task import Task  # noqa: F401 - used for type hints
from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from ..services.meeting_service import MeetingLinkService
from ..services.notification_service import NotificationService
from ..services.outbox_service import DeliveryOutcome, OutboxService
from .celery_app import WorkerResources, celery_app, get_worker_resources, session_scope

logger = get_task_logger(__name__)


def build_outbox_service(session: Session, resources: WorkerResources) -> OutboxService:
    return OutboxService(
        session,
        meetings=MeetingLinkService(session, resources.meeting_client, resources.config),
        notifications=NotificationService(session, resources.email_sender, resources.config),
        config=resources.config,
    )


@celery_app.task(name="outbox.dispatch_pending", max_retries=0, queue="notifications")
def dispatch_pending() -> int:
    """Returns the number of events scheduled."""
    resources = get_worker_resources()
    with session_scope() as session:
        event_ids = build_outbox_service(session, resources).pending_event_ids()
    for event_id in event_ids:
        deliver_event.apply_async((event_id,), queue="notifications")
    if event_ids:
        logger.info("Scheduled %s outbox events for delivery", len(event_ids))
    return len(event_ids)


@celery_app.task(
    name="outbox.deliver_event",
    bind=True,
    max_retries=None,
    queue="notifications",
)
def deliver_event(self: "Task[Any, Any]", event_id: str) -> Optional[str]:
    """
    Deliver a single outbox event.

    The attempt count lives on the row, so retries scheduled here and rows
    picked up again by ``dispatch_pending`` share one budget.
    """
    resources = get_worker_resources()
    with session_scope() as session:
        result = build_outbox_service(session, resources).deliver(event_id)

    if result.outcome is DeliveryOutcome.RETRY:
        raise self.retry(countdown=result.backoff_seconds, exc=RuntimeError(result.error))
    if result.outcome is DeliveryOutcome.SENT:
        return event_id
    return None
