# backend/consultbook/tasks/session_tasks.py
"""Time-driven session lifecycle."""

from typing import Dict

from celery.utils.log import get_task_logger

from ..services.session_service import SessionService
from .celery_app import celery_app, get_worker_resources, session_scope

logger = get_task_logger(__name__)


@celery_app.task(name="sessions.advance_lifecycle", max_retries=0)
def advance_session_lifecycle() -> Dict[str, int]:
    with session_scope() as session:
        return SessionService(session, get_worker_resources().config).advance_lifecycle()
