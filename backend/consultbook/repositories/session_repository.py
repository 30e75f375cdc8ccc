# backend/consultbook/repositories/session_repository.py
"""Session queries and the status compare-and-set used by every transition."""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from ..models.payment import PaymentTransaction, PaymentTransactionStatus
from ..models.session import ConsultationSession, SessionStatus
from .base_repository import BaseRepository


def _pending_payment_exists() -> Any:
    return (
        exists()
        .where(
            PaymentTransaction.session_id == ConsultationSession.id,
            PaymentTransaction.status == PaymentTransactionStatus.PENDING.value,
        )
        .correlate(ConsultationSession)
    )


class SessionRepository(BaseRepository[ConsultationSession]):
    def __init__(self, db: Session):
        super().__init__(db, ConsultationSession)

    def compare_and_set_status(
        self,
        session_id: str,
        expected: Iterable[str],
        target: str,
        *,
        unless_payment_pending: bool = False,
        **values: Any,
    ) -> bool:
        """
        Move ``session_id`` to ``target`` only if its status is in ``expected``.

        With ``unless_payment_pending`` the same UPDATE also requires that no
        PENDING payment transaction exists for the session, so an order
        persisted concurrently keeps its reservation.
        """
        expected_values = [getattr(status, "value", status) for status in expected]
        stmt = update(ConsultationSession).where(
            ConsultationSession.id == session_id,
            ConsultationSession.status.in_(expected_values),
        )
        if unless_payment_pending:
            stmt = stmt.where(~_pending_payment_exists())
        updated = self.conditional_update(stmt.values(status=target, **values), session_id)
        return updated == 1

    def list_expired_reservations(self, now: datetime, limit: int = 500) -> List[ConsultationSession]:
        """PENDING sessions past expiry with no checkout in flight."""
        stmt = (
            select(ConsultationSession)
            .where(
                ConsultationSession.status == SessionStatus.PENDING.value,
                ConsultationSession.reservation_expires_at <= now,
                ~_pending_payment_exists(),
            )
            .order_by(ConsultationSession.reservation_expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_due_to_start(self, now: datetime, limit: int = 500) -> List[ConsultationSession]:
        stmt = (
            select(ConsultationSession)
            .where(
                ConsultationSession.status == SessionStatus.CONFIRMED.value,
                ConsultationSession.scheduled_start_at <= now,
            )
            .order_by(ConsultationSession.scheduled_start_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_ongoing(self, limit: int = 500) -> List[ConsultationSession]:
        stmt = (
            select(ConsultationSession)
            .where(ConsultationSession.status == SessionStatus.ONGOING.value)
            .order_by(ConsultationSession.scheduled_start_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_consultant(
        self,
        consultant_id: str,
        status: Optional[str] = None,
        *,
        skip: int = 0,
        limit: int = 50,
    ) -> List[ConsultationSession]:
        stmt = select(ConsultationSession).where(ConsultationSession.consultant_id == consultant_id)
        if status:
            stmt = stmt.where(ConsultationSession.status == status)
        stmt = (
            stmt.order_by(ConsultationSession.scheduled_start_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def set_meeting_details(
        self,
        session_id: str,
        *,
        link: str,
        meeting_id: Optional[str],
        password: Optional[str],
        platform: str,
    ) -> bool:
        """Store meeting details unless a link was already recorded."""
        updated = self.conditional_update(
            update(ConsultationSession)
            .where(
                ConsultationSession.id == session_id,
                ConsultationSession.meeting_link.is_(None),
            )
            .values(
                meeting_link=link,
                meeting_id=meeting_id,
                meeting_password=password,
                meeting_platform=platform,
            ),
            session_id,
        )
        return updated == 1
