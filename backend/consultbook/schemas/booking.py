"""Booking request/response schemas."""

from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import EmailStr, Field

from .availability import SessionTypeLiteral
from .base import ClockTime, Money, StandardizedModel, StrictModel


class SlotKey(StrictModel):
    session_type: SessionTypeLiteral
    date: date
    start_time: ClockTime


class ClientInfo(StrictModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=30)
    notes: Optional[str] = Field(None, max_length=2000)


class BookingCreate(StrictModel):
    consultant_id: str
    slot: SlotKey
    client: ClientInfo
    amount: Money


class OrderRequest(StrictModel):
    amount: Optional[Money] = None


class OrderResponse(StandardizedModel):
    transaction_id: str
    order_id: str
    amount: Money
    amount_minor: int
    currency: str
    key_id: str
    reused: bool
    expires_at: Optional[datetime] = None
    checkout_config: Dict[str, Any] = Field(default_factory=dict)
    quotation_id: Optional[str] = None


class ReservationResponse(StandardizedModel):
    session_id: str
    slot_id: str
    session_type: SessionTypeLiteral
    date: date
    start_time: ClockTime
    end_time: ClockTime
    expires_at: datetime


class BookingResponse(StandardizedModel):
    session_id: str
    client_id: str
    reservation: ReservationResponse
    order: Optional[OrderResponse] = None
    order_error: Optional[Dict[str, Any]] = None
