# backend/consultbook/tasks/reservation_tasks.py
"""Expire reservations whose hold lapsed without a payment."""

from celery.utils.log import get_task_logger

from ..services.reservation_service import SlotReservationManager
from .celery_app import celery_app, get_worker_resources, session_scope

logger = get_task_logger(__name__)

SWEEP_BATCH_SIZE = 500


@celery_app.task(name="reservations.sweep_expired", max_retries=0)
def sweep_expired_reservations() -> int:
    """Returns the number of sessions moved to ABANDONED."""
    config = get_worker_resources().config
    with session_scope() as session:
        abandoned: int = SlotReservationManager(session, config).sweep_expired(limit=SWEEP_BATCH_SIZE)
    if abandoned:
        logger.info("Abandoned %s expired reservations", abandoned)
    return abandoned
