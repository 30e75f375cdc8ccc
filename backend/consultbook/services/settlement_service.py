# backend/consultbook/services/settlement_service.py
"""
Payment verification and reconciliation.

Three signals can report the outcome of one checkout: the browser's
verification call, the gateway webhook and the reconciliation job. They
arrive in any order and any number of times. Each one funnels into
``_settle``, where a single conditional UPDATE moves the transaction out of
PENDING. The caller whose UPDATE changed the row applies the side effects
in the same database transaction; every other caller gets ALREADY_SETTLED.
A settled quotation payment marks the quotation ACCEPTED; a failed one
leaves it open for another checkout.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import hashlib
import json
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    GatewayException,
    GatewayTimeoutException,
    InvalidSignatureException,
    NotFoundException,
    ValidationException,
)
from ..core.remote_call import Deadline, call_with_deadline
from ..core.signatures import signatures_match
from ..core.timezone_utils import ensure_utc, utc_now
from ..integrations.razorpay_client import GatewayError, RazorpayClient
from ..models.event_outbox import OutboxEventType
from ..models.payment import PaymentTransaction, PaymentTransactionStatus, SettlementSource
from ..models.session import ConsultationSession, SessionPaymentStatus, SessionStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .session_state import SessionStateMachine
from .webhook_ledger_service import WebhookLedgerService

VERIFY_TIMEOUT_MESSAGE = "Your payment is being confirmed, you will be notified"

CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})
FAILURE_EVENTS = frozenset({"payment.failed"})
REFUND_EVENTS = frozenset({"refund.processed"})


class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    PROCESSING = "processing"
    ACKNOWLEDGED = "acknowledged"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class SettlementResult:
    outcome: SettlementOutcome
    transaction_id: Optional[str] = None
    session_id: Optional[str] = None
    payment_status: Optional[str] = None
    session_status: Optional[str] = None
    detail: Optional[str] = None
    quotation_id: Optional[str] = None


def outbox_key(event_type: OutboxEventType, session_id: str, transaction_id: str) -> str:
    return f"{event_type.value}:{session_id}:{transaction_id}"


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = (payload.get("payload") or {}).get(name) or {}
    entity = section.get("entity") if isinstance(section, dict) else None
    return entity if isinstance(entity, dict) else {}


class PaymentSettlementService(BaseService):
    def __init__(self, db: Session, gateway: RazorpayClient, config: Optional[Settings] = None):
        super().__init__(db)
        self.gateway = gateway
        self.config = config or default_settings
        self.sessions = RepositoryFactory.create_session_repository(db)
        self.payments = RepositoryFactory.create_payment_repository(db)
        self.clients = RepositoryFactory.create_client_repository(db)
        self.slots = RepositoryFactory.create_slot_repository(db)
        self.quotations = RepositoryFactory.create_quotation_repository(db)
        self.outbox = RepositoryFactory.create_event_outbox_repository(db)
        self.state = SessionStateMachine(self.sessions)
        self.ledger = WebhookLedgerService(db)

    # ------------------------------------------------------------------
    # Settlement core
    # ------------------------------------------------------------------

    def _result(
        self,
        outcome: SettlementOutcome,
        txn: Optional[PaymentTransaction],
        *,
        detail: Optional[str] = None,
    ) -> SettlementResult:
        if txn is None:
            return SettlementResult(outcome=outcome, detail=detail)
        session = self.sessions.get_by_id(txn.session_id) if txn.session_id else None
        return SettlementResult(
            outcome=outcome,
            transaction_id=txn.id,
            session_id=txn.session_id,
            payment_status=txn.status,
            session_status=session.status if session else None,
            detail=detail,
            quotation_id=txn.quotation_id,
        )

    def _settle(
        self,
        transaction_id: str,
        status: PaymentTransactionStatus,
        *,
        source: SettlementSource,
        now: datetime,
        gateway_payment_id: Optional[str] = None,
        failure_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
        charge_attempted: bool = True,
    ) -> SettlementResult:
        with self.transaction():
            won = self.payments.settle(
                transaction_id,
                status.value,
                settled_by=source.value,
                processed_at=now,
                gateway_payment_id=gateway_payment_id,
                failure_code=failure_code,
                failure_reason=failure_reason,
            )
            txn = self.payments.get_by_id(transaction_id)
            if txn is None:
                raise NotFoundException("Payment transaction not found", code="TRANSACTION_NOT_FOUND")
            session = self.sessions.get_by_id(txn.session_id) if txn.session_id else None

            if not won:
                if (
                    status == PaymentTransactionStatus.SUCCESS
                    and txn.status == PaymentTransactionStatus.FAILED.value
                ):
                    self.logger.error(
                        "Capture reported for a payment already settled as FAILED; refund required",
                        extra={
                            "refund_required": True,
                            "transaction_id": txn.id,
                            "session_id": txn.session_id,
                            "gateway_payment_id": gateway_payment_id,
                            "source": source.value,
                            "failure_code": txn.failure_code,
                        },
                    )
                outcome = SettlementOutcome.ALREADY_SETTLED
            elif txn.quotation_id:
                self._apply_quotation_settlement(txn, now=now)
                outcome = SettlementOutcome.SETTLED
            elif status == PaymentTransactionStatus.SUCCESS:
                self._apply_success(session, txn, now=now)
                outcome = SettlementOutcome.SETTLED
            else:
                self._apply_failure(
                    session, txn, now=now, reason=failure_reason, charge_attempted=charge_attempted
                )
                outcome = SettlementOutcome.SETTLED
            result = self._result(outcome, txn)

        prometheus_metrics.record_settlement(source.value, outcome.value)
        self.log_operation(
            "payment_settlement",
            transaction_id=transaction_id,
            target_status=status.value,
            source=source.value,
            outcome=outcome.value,
        )
        return result

    def _apply_success(
        self, session: Optional[ConsultationSession], txn: PaymentTransaction, *, now: datetime
    ) -> None:
        if session is None or session.status != SessionStatus.PENDING.value or not self.state.transition(
            session,
            SessionStatus.CONFIRMED,
            now=now,
            settled_payment=txn,
            payment_status=SessionPaymentStatus.PAID.value,
        ):
            self.logger.error(
                "Payment captured for a session that can no longer be confirmed; refund required",
                extra={
                    "refund_required": True,
                    "transaction_id": txn.id,
                    "session_id": txn.session_id,
                    "session_status": session.status if session else None,
                },
            )
            return

        self.clients.add_paid_amount(session.client_id, txn.amount)
        payload = {"session_id": session.id, "transaction_id": txn.id}
        for event_type in (OutboxEventType.MEETING_LINK, OutboxEventType.SESSION_CONFIRMED):
            self.outbox.enqueue(
                event_type.value,
                session.id,
                payload,
                idempotency_key=outbox_key(event_type, session.id, txn.id),
            )

    def _apply_quotation_settlement(self, txn: PaymentTransaction, *, now: datetime) -> None:
        if txn.status != PaymentTransactionStatus.SUCCESS.value:
            self.logger.info(
                "Quotation payment failed; quotation stays open",
                extra={"transaction_id": txn.id, "quotation_id": txn.quotation_id},
            )
            return
        if not self.quotations.mark_accepted(txn.quotation_id, now):
            quotation = self.quotations.get_by_id(txn.quotation_id)
            self.logger.error(
                "Payment captured for a quotation that can no longer be accepted; refund required",
                extra={
                    "refund_required": True,
                    "transaction_id": txn.id,
                    "quotation_id": txn.quotation_id,
                    "quotation_status": quotation.status if quotation else None,
                },
            )
            return
        self.log_operation("quotation_accepted", quotation_id=txn.quotation_id, transaction_id=txn.id)

    def _apply_failure(
        self,
        session: Optional[ConsultationSession],
        txn: PaymentTransaction,
        *,
        now: datetime,
        reason: Optional[str],
        charge_attempted: bool,
    ) -> None:
        if session is None or session.status != SessionStatus.PENDING.value:
            self.logger.warning(
                "Payment failed for a session that is no longer pending",
                extra={"transaction_id": txn.id, "session_id": txn.session_id},
            )
            return
        target = SessionStatus.CANCELLED if charge_attempted else SessionStatus.ABANDONED
        moved = self.state.transition(
            session,
            target,
            now=now,
            payment_status=SessionPaymentStatus.FAILED.value,
            cancelled_by="system",
            cancellation_reason=reason or "payment_failed",
        )
        if moved and session.slot_id:
            self.slots.release(session.slot_id, session.id)

    def _find_transaction(self, order_id: str) -> Optional[PaymentTransaction]:
        with self.transaction():
            return self.payments.get_by_order_id(order_id)

    # ------------------------------------------------------------------
    # Browser verification
    # ------------------------------------------------------------------

    @BaseService.measure_operation("verify_payment")
    def verify_payment(
        self,
        order_id: str,
        payment_id: str,
        signature: str,
        *,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        if not self.gateway.payment_signature_valid(order_id, payment_id, signature):
            self.logger.warning(
                "Invalid payment signature",
                extra={
                    "security_event": "invalid_payment_signature",
                    "order_id": order_id,
                    "payment_id": payment_id,
                },
            )
            prometheus_metrics.record_settlement(SettlementSource.VERIFY.value, "invalid_signature")
            raise InvalidSignatureException(SettlementSource.VERIFY.value)

        txn = self._find_transaction(order_id)
        if txn is None:
            raise NotFoundException("Payment order not found", code="ORDER_NOT_FOUND")
        if not txn.is_pending:
            with self.transaction():
                return self._result(SettlementOutcome.ALREADY_SETTLED, txn)

        if not self.config.verify_fetches_payment:
            return self._settle(
                txn.id,
                PaymentTransactionStatus.SUCCESS,
                source=SettlementSource.VERIFY,
                now=now or utc_now(),
                gateway_payment_id=payment_id,
            )

        deadline = Deadline("fetch_payment", self.config.gateway_verify_timeout_seconds)
        try:
            payment = call_with_deadline(
                deadline, lambda timeout: self.gateway.fetch_payment(payment_id, timeout=timeout)
            )
        except GatewayTimeoutException as exc:
            raise GatewayTimeoutException(
                exc.operation, exc.deadline_seconds, message=VERIFY_TIMEOUT_MESSAGE
            ) from exc
        except GatewayError as exc:
            raise GatewayException(
                deadline.operation,
                "Could not confirm the payment with the provider",
                status_code=exc.status_code,
            ) from exc

        if payment.get("order_id") != order_id:
            self.logger.warning(
                "Payment does not belong to the verified order",
                extra={
                    "security_event": "payment_order_mismatch",
                    "order_id": order_id,
                    "payment_id": payment_id,
                },
            )
            raise ValidationException("Payment does not match the order", code="PAYMENT_ORDER_MISMATCH")

        return self._apply_gateway_payment(txn, payment, source=SettlementSource.VERIFY, now=now or utc_now())

    def _apply_gateway_payment(
        self,
        txn: PaymentTransaction,
        payment: Dict[str, Any],
        *,
        source: SettlementSource,
        now: datetime,
    ) -> SettlementResult:
        status = payment.get("status")
        if status == "captured":
            if not self._amount_matches(txn, payment.get("amount"), source=source):
                with self.transaction():
                    return self._result(SettlementOutcome.IGNORED, txn, detail="amount_mismatch")
            return self._settle(
                txn.id,
                PaymentTransactionStatus.SUCCESS,
                source=source,
                now=now,
                gateway_payment_id=payment.get("id"),
            )
        if status == "failed":
            return self._settle(
                txn.id,
                PaymentTransactionStatus.FAILED,
                source=source,
                now=now,
                gateway_payment_id=payment.get("id"),
                failure_code=payment.get("error_code") or "payment_failed",
                failure_reason=payment.get("error_description"),
            )
        # created / authorized: the capture has not happened yet.
        with self.transaction():
            return self._result(SettlementOutcome.PROCESSING, txn, detail=status)

    def _amount_matches(self, txn: PaymentTransaction, amount: Any, *, source: SettlementSource) -> bool:
        if amount is None:
            return True
        try:
            matches = int(amount) == int(txn.amount_minor)
        except (TypeError, ValueError):
            matches = False
        if not matches:
            self.logger.error(
                "Captured amount does not match the order; not applied",
                extra={
                    "transaction_id": txn.id,
                    "order_id": txn.gateway_order_id,
                    "expected_minor": txn.amount_minor,
                    "reported_minor": amount,
                    "source": source.value,
                },
            )
            prometheus_metrics.record_settlement(source.value, "amount_mismatch")
        return matches

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    @BaseService.measure_operation("handle_webhook")
    def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        secret = self.config.razorpay_webhook_secret.get_secret_value()
        if not signatures_match(secret, raw_body, signature):
            self.logger.warning(
                "Invalid webhook signature",
                extra={"security_event": "invalid_webhook_signature", "event_id": event_id},
            )
            prometheus_metrics.record_settlement(SettlementSource.WEBHOOK.value, "invalid_signature")
            raise InvalidSignatureException(SettlementSource.WEBHOOK.value)

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationException("Malformed webhook payload", code="INVALID_PAYLOAD") from exc
        if not isinstance(payload, dict):
            raise ValidationException("Malformed webhook payload", code="INVALID_PAYLOAD")

        event_type = str(payload.get("event") or "unknown")
        payment = _entity(payload, "payment")
        order = _entity(payload, "order")
        order_id = payment.get("order_id") or order.get("id")

        with self.transaction():
            event, is_new = self.ledger.log_received(
                event_id=event_id or hashlib.sha256(raw_body).hexdigest(),
                event_type=event_type,
                payload=payload,
                related_order_id=order_id,
            )
            duplicate = not is_new and event.status == "processed"
        if duplicate:
            prometheus_metrics.record_settlement(SettlementSource.WEBHOOK.value, "duplicate")
            return SettlementResult(outcome=SettlementOutcome.DUPLICATE, detail=event_type)

        try:
            result = self._dispatch_webhook(event_type, payment, order, order_id, now=now or utc_now())
        except Exception as exc:
            with self.transaction():
                self.ledger.mark_failed(event, error=str(exc))
            raise
        with self.transaction():
            self.ledger.mark_processed(event, outcome=result.outcome.value)
        return result

    def _dispatch_webhook(
        self,
        event_type: str,
        payment: Dict[str, Any],
        order: Dict[str, Any],
        order_id: Optional[str],
        *,
        now: datetime,
    ) -> SettlementResult:
        if event_type in REFUND_EVENTS:
            self.log_operation("refund_acknowledged", event_type=event_type, order_id=order_id)
            return SettlementResult(outcome=SettlementOutcome.ACKNOWLEDGED, detail=event_type)
        if event_type not in CAPTURE_EVENTS | FAILURE_EVENTS:
            return SettlementResult(outcome=SettlementOutcome.IGNORED, detail=event_type)
        if not order_id:
            return SettlementResult(outcome=SettlementOutcome.IGNORED, detail="missing_order_id")

        txn = self._find_transaction(order_id)
        if txn is None:
            self.logger.warning("Webhook for unknown order", extra={"order_id": order_id, "event_type": event_type})
            return SettlementResult(outcome=SettlementOutcome.IGNORED, detail="unknown_order")

        if event_type in CAPTURE_EVENTS:
            amount = payment.get("amount") if payment else order.get("amount_paid")
            if not self._amount_matches(txn, amount, source=SettlementSource.WEBHOOK):
                with self.transaction():
                    return self._result(SettlementOutcome.IGNORED, txn, detail="amount_mismatch")
            return self._settle(
                txn.id,
                PaymentTransactionStatus.SUCCESS,
                source=SettlementSource.WEBHOOK,
                now=now,
                gateway_payment_id=payment.get("id"),
            )

        return self._settle(
            txn.id,
            PaymentTransactionStatus.FAILED,
            source=SettlementSource.WEBHOOK,
            now=now,
            gateway_payment_id=payment.get("id"),
            failure_code=payment.get("error_code") or "payment_failed",
            failure_reason=payment.get("error_description"),
        )

    # ------------------------------------------------------------------
    # Client-reported failure
    # ------------------------------------------------------------------

    @BaseService.measure_operation("mark_payment_failed")
    def mark_failed(
        self,
        order_id: str,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> SettlementResult:
        """Record what the browser saw. Settlement waits for an authenticated signal."""
        with self.transaction():
            txn = self.payments.get_by_order_id(order_id)
            if txn is None:
                raise NotFoundException("Payment order not found", code="ORDER_NOT_FOUND")
            recorded = self.payments.record_client_failure(txn.id, error_code, error_description)
            result = self._result(
                SettlementOutcome.PROCESSING if recorded else SettlementOutcome.ALREADY_SETTLED, txn
            )
        self.log_operation(
            "client_reported_failure",
            order_id=order_id,
            error_code=error_code,
            recorded=recorded,
        )
        return result

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @BaseService.measure_operation("reconcile_pending")
    def reconcile_pending(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Poll the gateway for checkouts that went quiet: session orders whose
        reservation lapsed, and quotation orders older than a reservation hold.
        """
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self.config.reconciliation_grace_minutes)
        with self.transaction():
            stale: List[PaymentTransaction] = self.payments.list_stale_pending(
                cutoff,
                limit=self.config.reconciliation_batch_size,
                quotation_opened_before=cutoff - timedelta(minutes=self.config.reservation_ttl_minutes),
            )

        counts = {"checked": 0, "succeeded": 0, "failed": 0, "abandoned": 0, "deferred": 0}
        for txn in stale:
            counts["checked"] += 1
            try:
                attempts = call_with_deadline(
                    Deadline("fetch_order_payments", self.config.gateway_reconcile_timeout_seconds),
                    lambda timeout, order_id=txn.gateway_order_id: self.gateway.fetch_order_payments(
                        order_id, timeout=timeout
                    ),
                )
            except (GatewayTimeoutException, GatewayError) as exc:
                self.logger.warning(
                    "Reconciliation lookup failed; retrying next run",
                    extra={"transaction_id": txn.id, "error": str(exc)},
                )
                counts["deferred"] += 1
                self._escalate_if_overdue(txn, now)
                continue

            outcome = self._reconcile_one(txn, attempts, now=now)
            counts[outcome] += 1
            if outcome == "deferred":
                self._escalate_if_overdue(txn, now)

        if counts["checked"]:
            self.log_operation("reconciliation_run", **counts)
        return counts

    def _reconcile_one(self, txn: PaymentTransaction, attempts: List[Dict[str, Any]], *, now: datetime) -> str:
        source = SettlementSource.RECONCILIATION
        captured = [p for p in attempts if p.get("status") == "captured"]
        if captured:
            payment = captured[0]
            if not self._amount_matches(txn, payment.get("amount"), source=source):
                return "deferred"
            self._settle(
                txn.id,
                PaymentTransactionStatus.SUCCESS,
                source=source,
                now=now,
                gateway_payment_id=payment.get("id"),
            )
            return "succeeded"
        if any(p.get("status") in ("created", "authorized") for p in attempts):
            return "deferred"
        if attempts:
            last = attempts[-1]
            self._settle(
                txn.id,
                PaymentTransactionStatus.FAILED,
                source=source,
                now=now,
                gateway_payment_id=last.get("id"),
                failure_code=last.get("error_code") or "payment_failed",
                failure_reason=last.get("error_description"),
                charge_attempted=True,
            )
            return "failed"
        self._settle(
            txn.id,
            PaymentTransactionStatus.FAILED,
            source=source,
            now=now,
            failure_code="expired_unpaid",
            failure_reason="Reservation expired without a payment attempt",
            charge_attempted=False,
        )
        return "abandoned"

    def _escalate_if_overdue(self, txn: PaymentTransaction, now: datetime) -> None:
        age = now - ensure_utc(txn.created_at)
        if age >= timedelta(minutes=self.config.reconciliation_escalation_minutes):
            self.logger.error(
                "Payment unresolved past escalation threshold",
                extra={
                    "transaction_id": txn.id,
                    "session_id": txn.session_id,
                    "quotation_id": txn.quotation_id,
                    "order_id": txn.gateway_order_id,
                    "age_minutes": int(age.total_seconds() // 60),
                },
            )
