# backend/consultbook/repositories/event_outbox_repository.py
"""
Repository for the transactional outbox.

``enqueue`` is insert-if-absent on ``idempotency_key`` so re-running a
settlement can never produce a second side effect row.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Optional, cast

from sqlalchemy import Select, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key
import ulid

from ..database.session_utils import get_dialect_name
from ..models.event_outbox import EventOutbox, EventOutboxStatus

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EventOutboxRepository:
    """Data access helpers for event outbox rows."""

    def __init__(self, db: Session):
        self.db = db
        self._dialect = get_dialect_name(db, default="postgresql").lower()

    def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        payload: Optional[dict[str, Any]] = None,
        *,
        idempotency_key: str,
        next_attempt_at: Optional[datetime] = None,
    ) -> tuple[EventOutbox, bool]:
        """Insert unless the key exists. Returns (row, created)."""
        values = {
            "id": str(ulid.ULID()),
            "event_type": event_type,
            "aggregate_id": aggregate_id,
            "payload": payload or {},
            "idempotency_key": idempotency_key,
            "status": EventOutboxStatus.PENDING.value,
            "attempt_count": 0,
            "next_attempt_at": next_attempt_at or _now_utc(),
        }

        inserted = False
        if self._dialect == "postgresql":
            stmt = (
                pg_insert(EventOutbox)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
                .returning(EventOutbox.id)
            )
            inserted = self.db.execute(stmt).scalar_one_or_none() is not None
        else:
            stmt = insert(EventOutbox).values(**values)
            if self._dialect == "sqlite":
                stmt = stmt.prefix_with("OR IGNORE")
            inserted = bool(getattr(self.db.execute(stmt), "rowcount", 0))

        row = self.db.execute(
            select(EventOutbox).where(EventOutbox.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
        if row is None:
            raise RuntimeError("Outbox row not found after enqueue")
        if not inserted:
            logger.info(
                "Outbox event already enqueued",
                extra={"event_type": event_type, "idempotency_key": idempotency_key},
            )
        return cast(EventOutbox, row), inserted

    def fetch_pending(self, limit: int = 200) -> list[EventOutbox]:
        """Pending events eligible for delivery, oldest attempt first."""
        stmt: Select[Any] = (
            select(EventOutbox)
            .where(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .where(EventOutbox.next_attempt_at <= _now_utc())
            .order_by(EventOutbox.next_attempt_at.asc(), EventOutbox.id.asc())
            .limit(limit)
        )
        if self._dialect == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        return list(self.db.execute(stmt).scalars().all())

    def _reload(self, event_id: str) -> None:
        # Reload inside the current transaction; an expired instance would
        # autobegin a new one on its next attribute access after commit.
        cached = self.db.identity_map.get(identity_key(EventOutbox, event_id))
        if cached is not None:
            self.db.refresh(cached)

    def get_by_id(self, event_id: str) -> Optional[EventOutbox]:
        return cast(Optional[EventOutbox], self.db.get(EventOutbox, event_id))

    def list_for_aggregate(self, aggregate_id: str) -> list[EventOutbox]:
        return list(
            self.db.execute(
                select(EventOutbox)
                .where(EventOutbox.aggregate_id == aggregate_id)
                .order_by(EventOutbox.created_at, EventOutbox.id)
            ).scalars().all()
        )

    def claim(self, event_id: str, attempt_count: int, lease_seconds: int) -> bool:
        """
        Lease a due PENDING row for one delivery attempt.

        Pushes ``next_attempt_at`` past the lease so a concurrent dispatcher
        or an early retry skips it. False when someone else holds the row.
        """
        now = _now_utc()
        result = self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .where(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .where(EventOutbox.attempt_count == attempt_count)
            .where(EventOutbox.next_attempt_at <= now)
            .values(next_attempt_at=now + timedelta(seconds=lease_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self._reload(event_id)
        return bool(result.rowcount)

    def mark_sent(self, event_id: str, attempt_count: int) -> None:
        now = _now_utc()
        self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .values(
                status=EventOutboxStatus.SENT.value,
                attempt_count=attempt_count,
                last_error=None,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self._reload(event_id)

    def mark_failed(
        self,
        event_id: str,
        *,
        attempt_count: int,
        backoff_seconds: int,
        error: str | None = None,
        terminal: bool = False,
    ) -> None:
        now = _now_utc()
        values: dict[str, Any] = {
            "attempt_count": attempt_count,
            "updated_at": now,
            "last_error": (error[:1000] if error else None),
        }
        if terminal:
            values["status"] = EventOutboxStatus.FAILED.value
            values["next_attempt_at"] = now
        else:
            values["status"] = EventOutboxStatus.PENDING.value
            values["next_attempt_at"] = now + timedelta(seconds=max(backoff_seconds, 1))
        self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._reload(event_id)
