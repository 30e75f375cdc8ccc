# backend/consultbook/models/availability.py
"""
Availability models.

WeeklyAvailabilityPattern is a recurring template and is never booked.
AvailabilitySlot is the concrete bookable unit; the unique constraint on
(consultant_id, session_type, slot_date, start_time) is what prevents a slot
from being sold twice. Rows are created by pre-materialization or lazily at
reservation time and are never deleted while a session references them.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SessionType(str, Enum):
    PERSONAL = "PERSONAL"
    WEBINAR = "WEBINAR"


class WeeklyAvailabilityPattern(Base):
    """Recurring weekly window. ``day_of_week`` is 0=Sunday through 6=Saturday."""

    __tablename__ = "weekly_availability_patterns"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    consultant_id = Column(String(26), ForeignKey("consultants.id"), nullable=False)
    session_type = Column(String(20), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    timezone = Column(String(64), nullable=False, default="Asia/Kolkata")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    consultant = relationship("Consultant", back_populates="patterns")

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_patterns_day_of_week"),
        CheckConstraint("start_time < end_time", name="ck_patterns_time_order"),
        CheckConstraint(
            "session_type IN ('PERSONAL', 'WEBINAR')", name="ck_patterns_session_type"
        ),
        Index(
            "ix_patterns_consultant_type_day",
            "consultant_id",
            "session_type",
            "day_of_week",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WeeklyAvailabilityPattern {self.consultant_id} {self.session_type} "
            f"dow={self.day_of_week} {self.start_time}-{self.end_time}>"
        )


class AvailabilitySlot(Base):
    __tablename__ = "availability_slots"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    consultant_id = Column(String(26), ForeignKey("consultants.id"), nullable=False)
    session_type = Column(String(20), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    timezone = Column(String(64), nullable=False, default="Asia/Kolkata")
    is_booked = Column(Boolean, nullable=False, default=False)
    is_blocked = Column(Boolean, nullable=False, default=False)
    # Holding session; no FK so sessions and slots can reference each other.
    session_id = Column(String(26), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "consultant_id",
            "session_type",
            "slot_date",
            "start_time",
            name="uq_availability_slots_key",
        ),
        CheckConstraint("start_time < end_time", name="ck_slots_time_order"),
        Index("ix_availability_slots_lookup", "consultant_id", "session_type", "slot_date"),
    )

    @property
    def is_open(self) -> bool:
        return not self.is_booked and not self.is_blocked

    def __repr__(self) -> str:
        return (
            f"<AvailabilitySlot {self.consultant_id} {self.session_type} {self.slot_date} "
            f"{self.start_time} booked={self.is_booked}>"
        )
