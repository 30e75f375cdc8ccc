# backend/consultbook/tasks/payment_tasks.py
"""
Payment reconciliation.

Checkouts that never produced a verify call or a webhook are settled from
the gateway's own record. Runs every five minutes; safe to overlap with
request traffic because every settlement goes through the same
compare-and-set.
"""

from typing import Dict

from celery.utils.log import get_task_logger

from ..services.settlement_service import PaymentSettlementService
from .celery_app import celery_app, get_worker_resources, session_scope

logger = get_task_logger(__name__)


@celery_app.task(name="payments.reconcile_pending", max_retries=0)
def reconcile_pending_payments() -> Dict[str, int]:
    resources = get_worker_resources()
    with session_scope() as session:
        service = PaymentSettlementService(session, resources.gateway, resources.config)
        counts = service.reconcile_pending()
    if counts.get("checked"):
        logger.info("Reconciliation pass: %s", counts)
    return counts
