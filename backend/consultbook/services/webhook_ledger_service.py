"""Ledger of authenticated gateway webhooks."""

from __future__ import annotations

from typing import Any, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.timezone_utils import utc_now
from ..models.webhook_event import WebhookEvent, WebhookEventStatus
from ..repositories.factory import RepositoryFactory
from .base import BaseService

RAZORPAY_SOURCE = "razorpay"


class WebhookLedgerService(BaseService):
    """
    Records every authenticated delivery before it is processed.

    Callers own the transaction; nothing here commits.
    """

    def __init__(self, db: Session) -> None:
        super().__init__(db)
        self.repository = RepositoryFactory.create_webhook_event_repository(db)

    def log_received(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        related_order_id: Optional[str] = None,
        source: str = RAZORPAY_SOURCE,
    ) -> Tuple[WebhookEvent, bool]:
        """Returns (event, is_new). A redelivery bumps the attempt counter."""
        event = self.repository.insert_if_absent(
            source=source,
            event_id=event_id,
            event_type=event_type or "unknown",
            payload=payload,
            related_order_id=related_order_id,
            status=WebhookEventStatus.RECEIVED.value,
            received_at=utc_now(),
        )
        if event is not None:
            return event, True

        existing = self.repository.get_by_event_id(source, event_id)
        if existing is None:
            raise RuntimeError(f"Webhook event {event_id} vanished after a duplicate insert")
        self.repository.bump_attempts(existing.id)
        self.logger.info(
            "Webhook redelivered",
            extra={"event_id": event_id, "event_type": event_type, "status": existing.status},
        )
        return existing, False

    def mark_processed(self, event: WebhookEvent, *, outcome: str) -> None:
        self.repository.set_status(
            event.id, WebhookEventStatus.PROCESSED.value, processed_at=utc_now(), outcome=outcome
        )

    def mark_failed(self, event: WebhookEvent, *, error: str) -> None:
        self.repository.set_status(
            event.id, WebhookEventStatus.FAILED.value, processed_at=utc_now(), error=error
        )
