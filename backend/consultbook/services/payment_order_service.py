# backend/consultbook/services/payment_order_service.py
"""
Payment order coordinator.

Creates the gateway order for a reserved session or a sent quotation, or
hands back the one already in flight. Remote calls run outside any database transaction and
each carries its own deadline; a timeout surfaces as
GatewayTimeoutException and leaves the reservation untouched so the caller
can retry.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
import time
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    GatewayException,
    InvalidStateTransitionException,
    NotFoundException,
    ReservationExpiredException,
    ValidationException,
)
from ..core.remote_call import Deadline, call_with_deadline
from ..core.timezone_utils import ensure_utc, utc_now
from ..integrations.razorpay_client import GatewayError, RazorpayClient
from ..models.consultant import Consultant
from ..models.payment import PaymentTransaction
from ..models.quotation import Quotation
from ..models.session import ConsultationSession, SessionStatus
from ..repositories.factory import RepositoryFactory
from .base import BaseService


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_amount(consultant: Consultant, session_type: str, amount: Decimal, config: Settings) -> Decimal:
    """The amount must be the listed price and inside the gateway limits."""
    amount = Decimal(str(amount))
    price = consultant.price_for(session_type)
    if price is None:
        raise BusinessRuleException(
            f"{session_type.title()} sessions are not offered by this consultant",
            code="SESSION_TYPE_NOT_OFFERED",
        )
    if amount != Decimal(price):
        raise ValidationException(
            "Amount does not match the listed price",
            code="AMOUNT_MISMATCH",
            details={"expected": str(price), "received": str(amount)},
        )
    if not Decimal(str(config.payment_min_amount)) <= amount <= Decimal(str(config.payment_max_amount)):
        raise ValidationException(
            "Amount is outside the accepted range",
            code="AMOUNT_OUT_OF_RANGE",
            details={
                "min": str(config.payment_min_amount),
                "max": str(config.payment_max_amount),
            },
        )
    return amount


@dataclass(frozen=True)
class OrderHandle:
    transaction_id: str
    session_id: Optional[str]
    order_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    key_id: str
    reused: bool
    expires_at: Optional[datetime]
    checkout_config: Dict[str, Any] = field(default_factory=dict)
    quotation_id: Optional[str] = None


class PaymentOrderCoordinator(BaseService):
    def __init__(self, db: Session, gateway: RazorpayClient, config: Optional[Settings] = None):
        super().__init__(db)
        self.gateway = gateway
        self.config = config or default_settings
        self.sessions = RepositoryFactory.create_session_repository(db)
        self.payments = RepositoryFactory.create_payment_repository(db)
        self.quotations = RepositoryFactory.create_quotation_repository(db)

    def _handle(
        self,
        txn: PaymentTransaction,
        *,
        reused: bool,
        expires_at: Optional[datetime],
        checkout_config: Optional[Dict[str, Any]] = None,
    ) -> OrderHandle:
        return OrderHandle(
            transaction_id=txn.id,
            session_id=txn.session_id,
            quotation_id=txn.quotation_id,
            order_id=txn.gateway_order_id,
            amount=Decimal(txn.amount),
            amount_minor=txn.amount_minor,
            currency=txn.currency,
            key_id=self.gateway.key_id,
            reused=reused,
            expires_at=expires_at,
            checkout_config=checkout_config or {},
        )

    def _load_orderable(self, session_id: str, amount: Decimal, now: datetime) -> ConsultationSession:
        session = self.sessions.get_by_id(session_id)
        if session is None:
            raise NotFoundException("Session not found", code="SESSION_NOT_FOUND")
        if session.status == SessionStatus.ABANDONED.value:
            raise ReservationExpiredException(session.id)
        if session.status != SessionStatus.PENDING.value:
            raise InvalidStateTransitionException(
                session.status,
                SessionStatus.CONFIRMED.value,
                message=f"Session is {session.status}; payment is not possible",
            )
        if session.reservation_expired(now):
            raise ReservationExpiredException(session.id)
        if Decimal(amount) != Decimal(session.amount):
            raise ValidationException(
                "Amount does not match the reserved session",
                code="AMOUNT_MISMATCH",
                details={"expected": str(session.amount), "received": str(amount)},
            )
        return session

    @BaseService.measure_operation("create_order")
    def create_order(
        self,
        session_id: str,
        amount: Decimal,
        client_email: str,
        *,
        now: Optional[datetime] = None,
    ) -> OrderHandle:
        now = now or utc_now()
        started = time.monotonic()

        with self.transaction():
            session = self._load_orderable(session_id, amount, now)
            existing = self.payments.get_pending_for_session(session.id)
        if existing is not None:
            self.log_operation("order_reused", session_id=session.id, order_id=existing.gateway_order_id)
            return self._handle(existing, reused=True, expires_at=session.reservation_expires_at)

        amount_minor = to_minor_units(session.amount)
        order_request = {
            "amount_minor": amount_minor,
            "currency": session.currency,
            "receipt": session.id,
            "notes": {
                "session_id": session.id,
                "consultant_id": session.consultant_id,
                "client_id": session.client_id,
                "client_email": client_email,
            },
        }

        checkout_config, order = self._open_gateway_order(order_request)

        with self.transaction():
            # The reservation may have lapsed or been cancelled during the remote calls;
            # judge expiry at the time the order is persisted, not when the call began.
            checked_at = now + timedelta(seconds=time.monotonic() - started)
            self.sessions.refresh(session)
            if session.status != SessionStatus.PENDING.value or session.reservation_expired(checked_at):
                self.logger.warning(
                    "Discarding gateway order for session that is no longer payable",
                    extra={"session_id": session.id, "order_id": order.get("id")},
                )
                raise ReservationExpiredException(session.id)
            txn = self.payments.create_pending(
                session_id=session.id,
                consultant_id=session.consultant_id,
                client_id=session.client_id,
                amount=session.amount,
                amount_minor=amount_minor,
                currency=session.currency,
                gateway_order_id=order["id"],
            )
            reused = False
            if txn is None:
                # A concurrent retry persisted its order first; its order wins.
                txn = self.payments.get_pending_for_session(session.id)
                reused = True
                if txn is None:
                    raise ConflictException("Payment state changed, please retry", code="ORDER_RACE")

        self.log_operation(
            "order_created" if not reused else "order_reused",
            session_id=session.id,
            order_id=txn.gateway_order_id,
            amount_minor=amount_minor,
            expires_at=ensure_utc(session.reservation_expires_at).isoformat()
            if session.reservation_expires_at
            else None,
        )
        return self._handle(
            txn,
            reused=reused,
            expires_at=session.reservation_expires_at,
            checkout_config=checkout_config,
        )

    def _load_payable_quotation(self, quotation_id: str, now: datetime) -> Quotation:
        quotation = self.quotations.get_by_id(quotation_id)
        if quotation is None:
            raise NotFoundException("Quotation not found", code="QUOTATION_NOT_FOUND")
        if not quotation.is_payable(now):
            message = (
                "Quotation has expired"
                if quotation.lapsed(now)
                else f"Quotation is {quotation.status}; payment is not possible"
            )
            raise BusinessRuleException(
                message, code="QUOTATION_NOT_PAYABLE", details={"status": quotation.status}
            )
        return quotation

    @BaseService.measure_operation("create_quotation_order")
    def create_quotation_order(
        self,
        quotation_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> OrderHandle:
        """Open (or reuse) the checkout for a SENT quotation."""
        now = now or utc_now()
        started = time.monotonic()

        with self.transaction():
            quotation = self._load_payable_quotation(quotation_id, now)
            existing = self.payments.get_pending_for_quotation(quotation.id)
        if existing is not None:
            self.log_operation(
                "order_reused", quotation_id=quotation.id, order_id=existing.gateway_order_id
            )
            return self._handle(existing, reused=True, expires_at=quotation.valid_until)

        amount = Decimal(quotation.amount)
        if not Decimal(str(self.config.payment_min_amount)) <= amount <= Decimal(str(self.config.payment_max_amount)):
            raise ValidationException(
                "Amount is outside the accepted range",
                code="AMOUNT_OUT_OF_RANGE",
                details={
                    "min": str(self.config.payment_min_amount),
                    "max": str(self.config.payment_max_amount),
                },
            )
        amount_minor = to_minor_units(amount)
        order_request = {
            "amount_minor": amount_minor,
            "currency": quotation.currency,
            "receipt": quotation.id,
            "notes": {
                "quotation_id": quotation.id,
                "consultant_id": quotation.consultant_id,
                "client_email": quotation.client_email,
            },
        }

        checkout_config, order = self._open_gateway_order(order_request)

        with self.transaction():
            checked_at = now + timedelta(seconds=time.monotonic() - started)
            self.quotations.refresh(quotation)
            if not quotation.is_payable(checked_at):
                self.logger.warning(
                    "Discarding gateway order for quotation that is no longer payable",
                    extra={"quotation_id": quotation.id, "order_id": order.get("id")},
                )
                raise BusinessRuleException(
                    "Quotation can no longer be paid",
                    code="QUOTATION_NOT_PAYABLE",
                    details={"status": quotation.status},
                )
            txn = self.payments.create_pending(
                quotation_id=quotation.id,
                consultant_id=quotation.consultant_id,
                amount=amount,
                amount_minor=amount_minor,
                currency=quotation.currency,
                gateway_order_id=order["id"],
            )
            reused = False
            if txn is None:
                txn = self.payments.get_pending_for_quotation(quotation.id)
                reused = True
                if txn is None:
                    raise ConflictException("Payment state changed, please retry", code="ORDER_RACE")

        self.log_operation(
            "order_created" if not reused else "order_reused",
            quotation_id=quotation.id,
            order_id=txn.gateway_order_id,
            amount_minor=amount_minor,
        )
        return self._handle(
            txn,
            reused=reused,
            expires_at=quotation.valid_until,
            checkout_config=checkout_config,
        )

    def _open_gateway_order(self, order_request: Dict[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
        """Fetch the checkout config, then create the order. Each call has its own deadline."""
        checkout_config = self._call_gateway(
            Deadline("fetch_config", self.config.gateway_config_timeout_seconds),
            lambda timeout: self.gateway.fetch_checkout_config(timeout=timeout),
        )
        order = self._call_gateway(
            Deadline("create_order", self.config.gateway_order_timeout_seconds),
            lambda timeout: self.gateway.create_order(**order_request, timeout=timeout),
        )
        return checkout_config, order

    def _call_gateway(self, deadline: Deadline, func: Any) -> Dict[str, Any]:
        try:
            return call_with_deadline(deadline, func)
        except GatewayError as exc:
            raise GatewayException(
                deadline.operation,
                "Payment provider rejected the request",
                status_code=exc.status_code,
                provider_error=exc.error_body if isinstance(exc.error_body, dict) else None,
            ) from exc
