# backend/consultbook/services/session_service.py
"""
Session actions outside payment settlement: cancellation, consultant marks,
the time-driven lifecycle sweep and note/title edits.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    InvalidStateTransitionException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..models.payment import PaymentTransactionStatus, SettlementSource
from ..models.session import ConsultationSession, SessionPaymentStatus, SessionStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .session_state import SessionStateMachine

EDITABLE_FIELDS = frozenset({"title", "client_notes", "consultant_notes"})
MARKABLE_OUTCOMES = frozenset({SessionStatus.COMPLETED.value, SessionStatus.NO_SHOW.value})


class SessionService(BaseService):
    def __init__(self, db: Session, config: Optional[Settings] = None):
        super().__init__(db)
        self.config = config or default_settings
        self.sessions = RepositoryFactory.create_session_repository(db)
        self.payments = RepositoryFactory.create_payment_repository(db)
        self.slots = RepositoryFactory.create_slot_repository(db)
        self.state = SessionStateMachine(self.sessions)

    def _require(self, session_id: str, consultant_id: Optional[str] = None) -> ConsultationSession:
        session = self.sessions.get_by_id(session_id)
        if session is None or (consultant_id and session.consultant_id != consultant_id):
            raise NotFoundException("Session not found", code="SESSION_NOT_FOUND")
        return session

    def get_session(self, session_id: str, consultant_id: Optional[str] = None) -> ConsultationSession:
        with self.transaction():
            return self._require(session_id, consultant_id)

    def list_sessions(
        self,
        consultant_id: str,
        status: Optional[str] = None,
        *,
        skip: int = 0,
        limit: int = 50,
    ) -> List[ConsultationSession]:
        if status and status not in SessionStatus.__members__:
            raise ValidationException(f"Unknown session status {status!r}", code="INVALID_STATUS")
        with self.transaction():
            return self.sessions.list_for_consultant(consultant_id, status, skip=skip, limit=limit)

    @BaseService.measure_operation("cancel_session")
    def cancel_session(
        self,
        session_id: str,
        *,
        cancelled_by: str,
        consultant_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConsultationSession:
        """
        Cancel a PENDING session.

        A checkout in flight is failed first with the same compare-and-set
        settlement uses. If the payment already succeeded the cancellation
        loses and the session stays confirmed.
        """
        now = now or utc_now()
        with self.transaction():
            session = self._require(session_id, consultant_id)
            if session.status == SessionStatus.CONFIRMED.value:
                raise InvalidStateTransitionException(
                    session.status,
                    SessionStatus.CANCELLED.value,
                    message="A confirmed session can only be refunded",
                )
            if session.status != SessionStatus.PENDING.value:
                raise InvalidStateTransitionException(session.status, SessionStatus.CANCELLED.value)

            payment_status = session.payment_status
            pending = self.payments.get_pending_for_session(session.id)
            if pending is not None:
                won = self.payments.settle(
                    pending.id,
                    PaymentTransactionStatus.FAILED.value,
                    settled_by=SettlementSource.CANCELLATION.value,
                    processed_at=now,
                    failure_code="cancelled",
                    failure_reason=reason or f"Cancelled by {cancelled_by}",
                )
                if not won and pending.status == PaymentTransactionStatus.SUCCESS.value:
                    prometheus_metrics.record_settlement(SettlementSource.CANCELLATION.value, "lost_to_capture")
                    raise ConflictException(
                        "Payment already completed; the session is confirmed",
                        code="PAYMENT_ALREADY_CAPTURED",
                        details={"session_id": session.id},
                    )
                prometheus_metrics.record_settlement(SettlementSource.CANCELLATION.value, "settled")
                payment_status = SessionPaymentStatus.FAILED.value

            if not self.state.transition(
                session,
                SessionStatus.CANCELLED,
                now=now,
                cancelled_by=cancelled_by,
                cancellation_reason=reason,
                payment_status=payment_status,
            ):
                raise ConflictException("Session changed, please retry", code="SESSION_CHANGED")
            if session.slot_id:
                self.slots.release(session.slot_id, session.id)

        self.log_operation("session_cancelled", session_id=session.id, cancelled_by=cancelled_by)
        return session

    @BaseService.measure_operation("mark_session")
    def mark_session(
        self,
        session_id: str,
        outcome: str,
        *,
        consultant_id: str,
        now: Optional[datetime] = None,
    ) -> ConsultationSession:
        if outcome not in MARKABLE_OUTCOMES:
            raise ValidationException(
                "Sessions can only be marked COMPLETED or NO_SHOW", code="INVALID_MARK"
            )
        now = now or utc_now()
        with self.transaction():
            session = self._require(session_id, consultant_id)
            started = ensure_utc(session.scheduled_start_at) <= now
            if session.status == SessionStatus.CONFIRMED.value and not started:
                raise BusinessRuleException(
                    "The session has not started yet", code="SESSION_NOT_STARTED"
                )

            if outcome == SessionStatus.COMPLETED.value and session.status == SessionStatus.CONFIRMED.value:
                if not self.state.transition(session, SessionStatus.ONGOING, now=now):
                    raise ConflictException("Session changed, please retry", code="SESSION_CHANGED")
            if not self.state.transition(session, SessionStatus(outcome), now=now):
                raise ConflictException("Session changed, please retry", code="SESSION_CHANGED")
            self.sessions.refresh(session)

        self.log_operation("session_marked", session_id=session.id, outcome=outcome)
        return session

    @BaseService.measure_operation("advance_session_lifecycle")
    def advance_lifecycle(self, *, now: Optional[datetime] = None, limit: int = 500) -> Dict[str, int]:
        """CONFIRMED sessions that have started become ONGOING; ONGOING past end plus grace become COMPLETED."""
        now = now or utc_now()
        grace = timedelta(minutes=self.config.session_completion_grace_minutes)
        started = completed = 0

        with self.transaction():
            for session in self.sessions.list_due_to_start(now, limit=limit):
                if self.state.transition(session, SessionStatus.ONGOING, now=now):
                    started += 1

        with self.transaction():
            for session in self.sessions.list_ongoing(limit=limit):
                if session.scheduled_end_at + grace > now:
                    continue
                if self.state.transition(session, SessionStatus.COMPLETED, now=now):
                    completed += 1

        if started or completed:
            self.log_operation("session_lifecycle_advanced", started=started, completed=completed)
        return {"started": started, "completed": completed}

    @BaseService.measure_operation("update_session")
    def update_session(
        self, session_id: str, changes: Dict[str, Any], *, consultant_id: str
    ) -> ConsultationSession:
        """Only notes and the title are editable here; status moves through dedicated actions."""
        rejected = set(changes) - EDITABLE_FIELDS
        if rejected:
            raise ValidationException(
                "Only title and notes can be updated",
                code="FIELD_NOT_EDITABLE",
                details={"fields": sorted(rejected)},
            )
        with self.transaction():
            session = self._require(session_id, consultant_id)
            for field_name, value in changes.items():
                if field_name == "title" and not (value or "").strip():
                    raise ValidationException("Title cannot be empty", code="INVALID_TITLE")
                setattr(session, field_name, value)
            self.sessions.flush()
        return session
