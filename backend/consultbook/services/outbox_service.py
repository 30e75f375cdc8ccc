# backend/consultbook/services/outbox_service.py
"""
Outbox delivery.

Rows are written by settlement and refunds inside their own transactions;
this service delivers one row at a time and records the attempt. Retry
timing follows ``BACKOFF_SECONDS``; after ``outbox_max_attempts`` the row is
parked as FAILED for an operator.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..models.event_outbox import EventOutboxStatus, OutboxEventType
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .meeting_service import MeetingLinkService
from .notification_service import NotificationService

BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]
DELIVERY_LEASE_SECONDS = 300


def next_backoff(attempt_number: int) -> int:
    """Backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"
    MISSING = "missing"


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DeliveryOutcome
    attempt: int = 0
    backoff_seconds: Optional[int] = None
    error: Optional[str] = None


class OutboxService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        meetings: MeetingLinkService,
        notifications: NotificationService,
        config: Optional[Settings] = None,
    ):
        super().__init__(db)
        self.config = config or default_settings
        self.outbox = RepositoryFactory.create_event_outbox_repository(db)
        self.meetings = meetings
        self.notifications = notifications
        self._handlers: Dict[str, Callable[[Dict[str, Any], str], None]] = {
            OutboxEventType.MEETING_LINK.value: self._handle_meeting_link,
            OutboxEventType.SESSION_CONFIRMED.value: self._handle_confirmed,
            OutboxEventType.SESSION_REFUNDED.value: self._handle_refunded,
        }

    def pending_event_ids(self, limit: Optional[int] = None) -> List[str]:
        with self.transaction():
            return [event.id for event in self.outbox.fetch_pending(limit or self.config.outbox_batch_size)]

    @BaseService.measure_operation("deliver_outbox_event")
    def deliver(self, event_id: str) -> DeliveryResult:
        with self.transaction():
            event = self.outbox.get_by_id(event_id)
            if event is None:
                self.logger.warning("Outbox event %s missing; skipping", event_id)
                return DeliveryResult(DeliveryOutcome.MISSING)
            if event.status != EventOutboxStatus.PENDING.value:
                return DeliveryResult(DeliveryOutcome.SKIPPED, attempt=event.attempt_count)
            attempts_so_far = event.attempt_count
            event_type = event.event_type
            payload = dict(event.payload or {})
            idempotency_key = event.idempotency_key
            if not self.outbox.claim(event_id, attempts_so_far, DELIVERY_LEASE_SECONDS):
                return DeliveryResult(DeliveryOutcome.SKIPPED, attempt=attempts_so_far)
            attempt = attempts_so_far + 1

        handler = self._handlers.get(event_type)
        try:
            if handler is None:
                raise ValueError(f"No handler for outbox event type {event_type!r}")
            handler(payload, idempotency_key)
        except Exception as exc:
            backoff = next_backoff(attempt)
            terminal = attempt >= self.config.outbox_max_attempts
            with self.transaction():
                self.outbox.mark_failed(
                    event_id,
                    attempt_count=attempt,
                    backoff_seconds=backoff,
                    error=str(exc),
                    terminal=terminal,
                )
            if terminal:
                prometheus_metrics.record_outbox_delivery(event_type, "failed")
                self.logger.error(
                    "Outbox event %s failed permanently after %s attempts",
                    event_id,
                    attempt,
                    extra={"event_type": event_type, "error": str(exc)},
                )
                return DeliveryResult(DeliveryOutcome.FAILED, attempt, None, str(exc))
            prometheus_metrics.record_outbox_delivery(event_type, "retry")
            self.logger.warning(
                "Outbox event %s attempt=%s failed; retrying in %ss",
                event_id,
                attempt,
                backoff,
                extra={"event_type": event_type, "error": str(exc)},
            )
            return DeliveryResult(DeliveryOutcome.RETRY, attempt, backoff, str(exc))

        with self.transaction():
            self.outbox.mark_sent(event_id, attempt)
        prometheus_metrics.record_outbox_delivery(event_type, "sent")
        self.logger.info("Delivered outbox event %s type=%s attempts=%s", event_id, event_type, attempt)
        return DeliveryResult(DeliveryOutcome.SENT, attempt)

    def _handle_meeting_link(self, payload: Dict[str, Any], idempotency_key: str) -> None:
        self.meetings.ensure_meeting_link(payload["session_id"])

    def _handle_confirmed(self, payload: Dict[str, Any], idempotency_key: str) -> None:
        self.notifications.send_session_confirmed(payload["session_id"], idempotency_key=idempotency_key)

    def _handle_refunded(self, payload: Dict[str, Any], idempotency_key: str) -> None:
        self.notifications.send_session_refunded(
            payload["session_id"],
            amount=payload.get("amount", ""),
            currency=payload.get("currency", self.config.default_currency),
            idempotency_key=idempotency_key,
        )
