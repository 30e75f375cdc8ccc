"""Webhook ledger persistence."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.webhook_event import WebhookEvent
from .base_repository import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    def __init__(self, db: Session):
        super().__init__(db, WebhookEvent)

    def get_by_event_id(self, source: str, event_id: str) -> Optional[WebhookEvent]:
        return self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.source == source, WebhookEvent.event_id == event_id
            )
        ).scalar_one_or_none()

    def insert_if_absent(self, **values: Any) -> Optional[WebhookEvent]:
        """Insert a ledger row; None when (source, event_id) is already recorded."""
        try:
            with self.db.begin_nested():
                event = WebhookEvent(**values)
                self.db.add(event)
            return event
        except IntegrityError:
            return None

    def bump_attempts(self, event_id: str) -> None:
        self.conditional_update(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(attempts=WebhookEvent.attempts + 1),
            event_id,
        )

    def set_status(
        self,
        event_id: str,
        status: str,
        *,
        processed_at: datetime,
        outcome: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self.conditional_update(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=status,
                outcome=outcome,
                processing_error=error[:2000] if error else None,
                processed_at=processed_at,
            ),
            event_id,
        )
