# backend/consultbook/models/webhook_event.py
"""
Ledger of gateway webhook deliveries.

A row is written for every delivery whose signature checked out, before
any settlement work. ``(source, event_id)`` is unique, so a redelivery
finds its earlier row and only bumps ``attempts``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON
import ulid

from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    __table_args__ = (
        sa.UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event_id"),
        sa.Index("ix_webhook_events_order", "related_order_id"),
        sa.Index("ix_webhook_events_status_received", "status", "received_at"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    # Gateway event id, or the sha256 of the raw body when the header is absent
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
    )
    related_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WebhookEventStatus.RECEIVED.value
    )
    # SettlementOutcome value once processed
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.source}:{self.event_id} {self.event_type} status={self.status}>"
