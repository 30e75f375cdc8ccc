# backend/consultbook/models/consultant.py
"""
Consultant and client models.

Consultants own availability patterns and sessions and publish a price per
session type. Clients are booking parties scoped to a single consultant.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Consultant(Base):
    __tablename__ = "consultants"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    slug = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    personal_session_price = Column(Numeric(10, 2), nullable=True)
    webinar_session_price = Column(Numeric(10, 2), nullable=True)
    personal_session_title = Column(String(200), nullable=True)
    webinar_session_title = Column(String(200), nullable=True)
    currency = Column(String(3), nullable=False, default="INR")
    timezone = Column(String(64), nullable=False, default="Asia/Kolkata")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    clients = relationship("Client", back_populates="consultant")
    patterns = relationship("WeeklyAvailabilityPattern", back_populates="consultant")

    __table_args__ = (
        CheckConstraint(
            "personal_session_price IS NULL OR personal_session_price >= 0",
            name="ck_consultants_personal_price_non_negative",
        ),
        CheckConstraint(
            "webinar_session_price IS NULL OR webinar_session_price >= 0",
            name="ck_consultants_webinar_price_non_negative",
        ),
    )

    def price_for(self, session_type: str):
        """Listed price for a session type, or None when the type is not offered."""
        if session_type == "PERSONAL":
            return self.personal_session_price
        if session_type == "WEBINAR":
            return self.webinar_session_price
        return None

    def title_for(self, session_type: str) -> str:
        if session_type == "WEBINAR":
            return self.webinar_session_title or f"Webinar with {self.name}"
        return self.personal_session_title or f"Session with {self.name}"

    def __repr__(self) -> str:
        return f"<Consultant {self.slug}>"


class Client(Base):
    """A booking party; the same email under two consultants is two clients."""

    __tablename__ = "clients"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    consultant_id = Column(String(26), ForeignKey("consultants.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True)
    total_sessions = Column(Integer, nullable=False, default=0)
    total_amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    consultant = relationship("Consultant", back_populates="clients")

    __table_args__ = (
        UniqueConstraint("consultant_id", "email", name="uq_clients_consultant_email"),
    )

    def __repr__(self) -> str:
        return f"<Client {self.email} consultant={self.consultant_id}>"
