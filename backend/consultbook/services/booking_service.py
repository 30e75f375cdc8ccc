# backend/consultbook/services/booking_service.py
"""Reserve-and-pay entry point used by the public booking page."""

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import GatewayException, GatewayTimeoutException, NotFoundException
from ..integrations.razorpay_client import RazorpayClient
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .payment_order_service import OrderHandle, PaymentOrderCoordinator, validate_amount
from .reservation_service import ReservationHandle, SlotReservationManager


@dataclass(frozen=True)
class BookingResult:
    reservation: ReservationHandle
    client_id: str
    order: Optional[OrderHandle] = None
    order_error: Optional[Dict[str, Any]] = None


class BookingService(BaseService):
    def __init__(self, db: Session, gateway: RazorpayClient, config: Optional[Settings] = None):
        super().__init__(db)
        self.gateway = gateway
        self.config = config or default_settings
        self.consultants = RepositoryFactory.create_consultant_repository(db)
        self.clients = RepositoryFactory.create_client_repository(db)
        self.sessions = RepositoryFactory.create_session_repository(db)
        self.reservations = SlotReservationManager(db, self.config)
        self.orders = PaymentOrderCoordinator(db, gateway, self.config)

    @BaseService.measure_operation("reserve_and_create_order")
    def reserve_and_create_order(
        self,
        consultant_id: str,
        session_type: str,
        slot_date: date,
        start_time: time,
        *,
        client_name: str,
        client_email: str,
        amount: Decimal,
        client_phone: Optional[str] = None,
        client_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BookingResult:
        """
        Hold the slot, then open the checkout.

        If the order cannot be created the reservation is kept and the
        result carries the error; the caller retries with
        ``POST /sessions/{id}/order`` before the hold expires.
        """
        with self.transaction():
            consultant = self.consultants.get_active(consultant_id)
            if consultant is None:
                raise NotFoundException("Consultant not found", code="CONSULTANT_NOT_FOUND")
            amount = validate_amount(consultant, session_type, amount, self.config)
            client = self.clients.find_or_create(
                consultant.id, name=client_name, email=client_email, phone=client_phone
            )

        reservation = self.reservations.reserve(
            consultant.id,
            session_type,
            slot_date,
            start_time,
            client.id,
            amount=amount,
            currency=consultant.currency,
            client_notes=client_notes,
            now=now,
        )

        try:
            order = self.orders.create_order(reservation.session_id, amount, client.email, now=now)
        except (GatewayTimeoutException, GatewayException) as exc:
            self.logger.warning(
                "Order creation failed after reservation; client may retry",
                extra={"session_id": reservation.session_id, "error_code": exc.code},
            )
            return BookingResult(
                reservation=reservation,
                client_id=client.id,
                order_error={"code": exc.code, "message": exc.message, "retriable": True},
            )

        return BookingResult(reservation=reservation, client_id=client.id, order=order)

    @BaseService.measure_operation("retry_order")
    def retry_order(self, session_id: str, amount: Optional[Decimal] = None) -> OrderHandle:
        with self.transaction():
            session = self.sessions.get_by_id(session_id)
            if session is None:
                raise NotFoundException("Session not found", code="SESSION_NOT_FOUND")
            client_email = session.client.email
            expected = session.amount
        return self.orders.create_order(session_id, amount if amount is not None else expected, client_email)
