# backend/consultbook/models/session.py
"""
Consultation session model.

A session is one booking attempt and its outcome. It is created PENDING by
the reservation manager and never hard-deleted; cancelled and abandoned
sessions stay as history. Status changes go through
``services.session_state`` so the transition table is enforced in one place.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ABANDONED = "ABANDONED"
    NO_SHOW = "NO_SHOW"
    RETURNED = "RETURNED"


class SessionPaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# Statuses that keep a slot occupied.
SLOT_HOLDING_STATUSES = frozenset(
    {
        SessionStatus.PENDING.value,
        SessionStatus.CONFIRMED.value,
        SessionStatus.ONGOING.value,
        SessionStatus.COMPLETED.value,
        SessionStatus.NO_SHOW.value,
        SessionStatus.RETURNED.value,
    }
)


class ConsultationSession(Base):
    __tablename__ = "sessions"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    consultant_id = Column(String(26), ForeignKey("consultants.id"), nullable=False, index=True)
    client_id = Column(String(26), ForeignKey("clients.id"), nullable=False, index=True)
    slot_id = Column(String(26), ForeignKey("availability_slots.id"), nullable=True, index=True)

    session_type = Column(String(20), nullable=False)
    title = Column(String(200), nullable=False)
    scheduled_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    timezone = Column(String(64), nullable=False, default="Asia/Kolkata")
    scheduled_start_at = Column(DateTime(timezone=True), nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), nullable=False, default=SessionStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=SessionPaymentStatus.PENDING.value)
    reservation_expires_at = Column(DateTime(timezone=True), nullable=True)

    meeting_link = Column(String(500), nullable=True)
    meeting_id = Column(String(100), nullable=True)
    meeting_password = Column(String(100), nullable=True)
    meeting_platform = Column(String(30), nullable=True)

    client_notes = Column(Text, nullable=True)
    consultant_notes = Column(Text, nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    consultant = relationship("Consultant")
    client = relationship("Client")
    slot = relationship("AvailabilitySlot", foreign_keys=[slot_id])
    transactions = relationship(
        "PaymentTransaction",
        back_populates="session",
        order_by="PaymentTransaction.created_at",
    )

    __table_args__ = (
        Index("ix_sessions_status_expiry", "status", "reservation_expires_at"),
        Index("ix_sessions_status_start", "status", "scheduled_start_at"),
    )

    @property
    def scheduled_end_at(self) -> datetime:
        return ensure_utc(self.scheduled_start_at) + timedelta(minutes=self.duration_minutes)

    def reservation_expired(self, now: Optional[datetime] = None) -> bool:
        if self.reservation_expires_at is None:
            return False
        return ensure_utc(self.reservation_expires_at) <= ensure_utc(now or _now_utc())

    def __repr__(self) -> str:
        return (
            f"<ConsultationSession {self.id} {self.scheduled_date} {self.start_time} "
            f"status={self.status}>"
        )
