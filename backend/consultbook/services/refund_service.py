# backend/consultbook/services/refund_service.py
"""
Refunds for confirmed sessions.

The gateway refund happens first, outside any database transaction. Only
when the provider accepted it does the ledger move: the payment is
compare-and-set from its current status, a REFUND row is appended and the
session becomes RETURNED. A provider failure changes nothing locally.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    GatewayTimeoutException,
    InvalidStateTransitionException,
    NotFoundException,
    RefundFailedException,
    ValidationException,
)
from ..core.remote_call import Deadline, call_with_deadline
from ..core.timezone_utils import ensure_utc, utc_now
from ..integrations.razorpay_client import GatewayError, RazorpayClient
from ..models.event_outbox import OutboxEventType
from ..models.payment import PaymentTransactionStatus, PaymentTransactionType
from ..models.session import SessionPaymentStatus, SessionStatus
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .payment_order_service import to_minor_units
from .session_state import SessionStateMachine
from .settlement_service import outbox_key

REFUNDABLE_SESSION_STATUSES = frozenset({SessionStatus.CONFIRMED.value, SessionStatus.COMPLETED.value})


@dataclass(frozen=True)
class RefundResult:
    session_id: str
    payment_transaction_id: str
    refund_transaction_id: str
    gateway_refund_id: str
    amount: Decimal
    currency: str
    payment_status: str
    session_status: str


class RefundService(BaseService):
    def __init__(self, db: Session, gateway: RazorpayClient, config: Optional[Settings] = None):
        super().__init__(db)
        self.gateway = gateway
        self.config = config or default_settings
        self.sessions = RepositoryFactory.create_session_repository(db)
        self.payments = RepositoryFactory.create_payment_repository(db)
        self.clients = RepositoryFactory.create_client_repository(db)
        self.outbox = RepositoryFactory.create_event_outbox_repository(db)
        self.state = SessionStateMachine(self.sessions)

    @BaseService.measure_operation("refund_session")
    def refund_session(
        self,
        session_id: str,
        amount: Optional[Decimal] = None,
        *,
        consultant_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RefundResult:
        now = now or utc_now()

        with self.transaction():
            session = self.sessions.get_by_id(session_id)
            if session is None or (consultant_id and session.consultant_id != consultant_id):
                raise NotFoundException("Session not found", code="SESSION_NOT_FOUND")
            if session.status not in REFUNDABLE_SESSION_STATUSES:
                raise InvalidStateTransitionException(
                    session.status,
                    SessionStatus.RETURNED.value,
                    message=f"A {session.status} session cannot be refunded",
                )
            payment = self.payments.get_successful_payment(session.id)
            if payment is None or not payment.gateway_payment_id:
                raise BusinessRuleException("No captured payment to refund", code="NO_REFUNDABLE_PAYMENT")

            paid_at = ensure_utc(payment.processed_at or payment.created_at)
            if now - paid_at > timedelta(days=self.config.refund_window_days):
                raise BusinessRuleException(
                    "The refund window for this payment has closed",
                    code="REFUND_WINDOW_EXPIRED",
                    details={"window_days": self.config.refund_window_days},
                )

            already_refunded = Decimal(payment.refunded_amount or 0)
            remaining = Decimal(payment.amount) - already_refunded
            refund_amount = Decimal(str(amount)) if amount is not None else remaining
            if refund_amount <= 0 or refund_amount > remaining:
                raise ValidationException(
                    "Refund amount must be positive and no more than the amount paid",
                    code="INVALID_REFUND_AMOUNT",
                    details={"refundable": str(remaining), "requested": str(refund_amount)},
                )
            expected_status = payment.status

        # Same key for a retry of the same refund, so the provider deduplicates it.
        idempotency_key = f"refund:{payment.id}:{to_minor_units(already_refunded)}"
        gateway_payment_id = payment.gateway_payment_id
        refund_notes = {"session_id": session.id, "reason": reason or "consultant_refund"}
        try:
            refund = call_with_deadline(
                Deadline("refund", self.config.gateway_refund_timeout_seconds),
                lambda timeout: self.gateway.refund_payment(
                    gateway_payment_id,
                    amount_minor=to_minor_units(refund_amount),
                    notes=refund_notes,
                    idempotency_key=idempotency_key,
                    timeout=timeout,
                ),
            )
        except (GatewayTimeoutException, GatewayError) as exc:
            self.logger.error(
                "Refund failed at the payment provider",
                extra={
                    "session_id": session.id,
                    "transaction_id": payment.id,
                    "amount": str(refund_amount),
                    "idempotency_key": idempotency_key,
                    "error": str(exc),
                },
            )
            raise RefundFailedException(session.id, str(exc)) from exc

        refunded_total = already_refunded + refund_amount
        new_status = (
            PaymentTransactionStatus.REFUNDED
            if refunded_total >= Decimal(payment.amount)
            else PaymentTransactionStatus.PARTIALLY_REFUNDED
        )
        with self.transaction():
            if not self.payments.mark_refunded(payment.id, expected_status, new_status.value, refunded_total):
                self.logger.error(
                    "Provider refund succeeded but the payment changed concurrently; manual review required",
                    extra={
                        "session_id": session.id,
                        "transaction_id": payment.id,
                        "gateway_refund_id": refund.get("id"),
                    },
                )
                raise ConflictException("A refund for this session is already in progress", code="REFUND_CONFLICT")

            refund_txn = self.payments.create(
                session_id=session.id,
                consultant_id=session.consultant_id,
                client_id=session.client_id,
                parent_transaction_id=payment.id,
                transaction_type=PaymentTransactionType.REFUND.value,
                amount=refund_amount,
                amount_minor=to_minor_units(refund_amount),
                currency=payment.currency,
                status=PaymentTransactionStatus.SUCCESS.value,
                gateway_payment_id=payment.gateway_payment_id,
                gateway_refund_id=refund.get("id"),
                failure_reason=reason,
                processed_at=now,
            )
            if not self.state.transition(
                session,
                SessionStatus.RETURNED,
                now=now,
                refunded_payment=payment,
                payment_status=SessionPaymentStatus.REFUNDED.value,
            ):
                raise ConflictException("Session changed while refunding", code="SESSION_CHANGED")
            self.clients.add_paid_amount(session.client_id, -refund_amount)
            self.outbox.enqueue(
                OutboxEventType.SESSION_REFUNDED.value,
                session.id,
                {
                    "session_id": session.id,
                    "transaction_id": refund_txn.id,
                    "amount": str(refund_amount),
                    "currency": payment.currency,
                },
                idempotency_key=outbox_key(OutboxEventType.SESSION_REFUNDED, session.id, refund_txn.id),
            )
            result = RefundResult(
                session_id=session.id,
                payment_transaction_id=payment.id,
                refund_transaction_id=refund_txn.id,
                gateway_refund_id=refund.get("id", ""),
                amount=refund_amount,
                currency=payment.currency,
                payment_status=new_status.value,
                session_status=SessionStatus.RETURNED.value,
            )

        self.log_operation(
            "session_refunded",
            session_id=session.id,
            amount=str(refund_amount),
            payment_status=new_status.value,
        )
        return result
