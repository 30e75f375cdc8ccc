"""Session request/response schemas."""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import Field, model_validator

from .base import ClockTime, Money, StandardizedModel, StrictModel


class SessionResponse(StandardizedModel):
    id: str
    consultant_id: str
    client_id: str
    slot_id: Optional[str] = None
    session_type: str
    title: str
    scheduled_date: date
    start_time: ClockTime
    end_time: ClockTime
    duration_minutes: int
    timezone: str
    scheduled_start_at: datetime
    amount: Money
    currency: str
    status: str
    payment_status: str
    reservation_expires_at: Optional[datetime] = None
    meeting_link: Optional[str] = None
    meeting_platform: Optional[str] = None
    client_notes: Optional[str] = None
    consultant_notes: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None


class SessionCancelRequest(StrictModel):
    reason: Optional[str] = Field(None, max_length=1000)


class SessionMarkRequest(StrictModel):
    status: Literal["COMPLETED", "NO_SHOW"]


class SessionUpdate(StrictModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    client_notes: Optional[str] = Field(None, max_length=2000)
    consultant_notes: Optional[str] = Field(None, max_length=5000)

    @model_validator(mode="after")
    def _not_empty(self) -> "SessionUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class RefundRequest(StrictModel):
    amount: Optional[Money] = None
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponse(StandardizedModel):
    session_id: str
    payment_transaction_id: str
    refund_transaction_id: str
    gateway_refund_id: str
    amount: Money
    currency: str
    payment_status: str
    session_status: str
