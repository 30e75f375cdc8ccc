# backend/consultbook/routes/v1/bookings.py
"""
Booking routes - API v1

Public endpoints used by the booking page. The session id returned by
``POST /bookings`` is the client's handle for the rest of the checkout.

Endpoints:
    POST /bookings - Reserve a slot and open a payment order
    POST /sessions/{session_id}/order - Retry order creation for a held reservation
    POST /quotations/{quotation_id}/order - Open the checkout for a sent quotation
"""

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status

from ...api.dependencies.services import get_booking_service, get_order_coordinator
from ...core.exceptions import DomainException
from ...schemas.booking import (
    BookingCreate,
    BookingResponse,
    OrderRequest,
    OrderResponse,
    ReservationResponse,
)
from ...services.booking_service import BookingService
from ...services.payment_order_service import OrderHandle, PaymentOrderCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _order_response(order: OrderHandle) -> OrderResponse:
    return OrderResponse(
        transaction_id=order.transaction_id,
        order_id=order.order_id,
        amount=order.amount,
        amount_minor=order.amount_minor,
        currency=order.currency,
        key_id=order.key_id,
        reused=order.reused,
        expires_at=order.expires_at,
        checkout_config=order.checkout_config or {},
        quotation_id=order.quotation_id,
    )


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    payload: BookingCreate,
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Hold the requested slot and create the payment order.

    A provider failure after the hold is reported in ``order_error`` with
    the reservation intact, so the page can retry the order alone.
    """
    try:
        result = booking_service.reserve_and_create_order(
            payload.consultant_id,
            payload.slot.session_type,
            payload.slot.date,
            payload.slot.start_time,
            client_name=payload.client.name,
            client_email=str(payload.client.email),
            client_phone=payload.client.phone,
            client_notes=payload.client.notes,
            amount=payload.amount,
        )
    except DomainException as exc:
        handle_domain_exception(exc)

    reservation = result.reservation
    return BookingResponse(
        session_id=reservation.session_id,
        client_id=result.client_id,
        reservation=ReservationResponse(
            session_id=reservation.session_id,
            slot_id=reservation.slot_id,
            session_type=reservation.session_type,
            date=reservation.slot_date,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            expires_at=reservation.expires_at,
        ),
        order=_order_response(result.order) if result.order else None,
        order_error=result.order_error,
    )


@router.post("/sessions/{session_id}/order", response_model=OrderResponse)
def retry_order(
    session_id: str,
    payload: Optional[OrderRequest] = Body(None),
    booking_service: BookingService = Depends(get_booking_service),
) -> OrderResponse:
    try:
        order = booking_service.retry_order(session_id, payload.amount if payload else None)
    except DomainException as exc:
        handle_domain_exception(exc)
    return _order_response(order)


@router.post("/quotations/{quotation_id}/order", response_model=OrderResponse)
def create_quotation_order(
    quotation_id: str,
    coordinator: PaymentOrderCoordinator = Depends(get_order_coordinator),
) -> OrderResponse:
    """Checkout for a quotation; settling it accepts the quotation."""
    try:
        order = coordinator.create_quotation_order(quotation_id)
    except DomainException as exc:
        handle_domain_exception(exc)
    return _order_response(order)
