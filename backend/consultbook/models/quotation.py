# backend/consultbook/models/quotation.py
"""
Quotations: a priced offer a consultant sends to a prospective client.

A SENT quotation can be paid through the same checkout flow as a session.
The payment that settles it as SUCCESS moves it to ACCEPTED.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class QuotationStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class Quotation(Base):
    __tablename__ = "quotations"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    consultant_id = Column(String(26), ForeignKey("consultants.id"), nullable=False, index=True)
    client_name = Column(String(200), nullable=False)
    client_email = Column(String(255), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), nullable=False, default=QuotationStatus.DRAFT.value, index=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    consultant = relationship("Consultant")
    transactions = relationship("PaymentTransaction", back_populates="quotation")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_quotations_amount_positive"),
    )

    def lapsed(self, now: datetime) -> bool:
        return self.valid_until is not None and ensure_utc(self.valid_until) <= now

    def is_payable(self, now: Optional[datetime] = None) -> bool:
        """Only a SENT quotation inside its validity window can be checked out."""
        if self.status != QuotationStatus.SENT.value:
            return False
        return now is None or not self.lapsed(now)

    def __repr__(self) -> str:
        return f"<Quotation {self.id} {self.amount} {self.currency} status={self.status}>"
