"""Availability request/response schemas."""

from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import Field, model_validator

from .base import ClockTime, StandardizedModel, StrictModel

SessionTypeLiteral = Literal["PERSONAL", "WEBINAR"]


class OpenSlotResponse(StandardizedModel):
    date: date
    start: ClockTime
    end: ClockTime
    timezone: str
    starts_at: datetime


class AvailableSlotsResponse(StandardizedModel):
    consultant_id: str
    session_type: SessionTypeLiteral
    start_date: date
    end_date: date
    timezone: Optional[str] = None
    slots: List[OpenSlotResponse]
    slots_by_date: Dict[str, List[OpenSlotResponse]]
    total: int


class PatternWindowIn(StrictModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0=Sunday .. 6=Saturday")
    start_time: ClockTime
    end_time: ClockTime
    timezone: Optional[str] = None

    @model_validator(mode="after")
    def _check_order(self) -> "PatternWindowIn":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class PatternCreate(PatternWindowIn):
    session_type: SessionTypeLiteral
    is_active: bool = True


class PatternUpdate(StrictModel):
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    start_time: Optional[ClockTime] = None
    end_time: Optional[ClockTime] = None
    timezone: Optional[str] = None
    is_active: Optional[bool] = None


class PatternBulkReplace(StrictModel):
    session_type: SessionTypeLiteral
    windows: List[PatternWindowIn]


class PatternResponse(StandardizedModel):
    id: str
    consultant_id: str
    session_type: SessionTypeLiteral
    day_of_week: int
    start_time: ClockTime
    end_time: ClockTime
    timezone: str
    is_active: bool


class GenerateSlotsRequest(StrictModel):
    session_type: SessionTypeLiteral
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_range(self) -> "GenerateSlotsRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class GenerateSlotsResponse(StandardizedModel):
    created: int
    skipped: int


class SlotBlockRequest(StrictModel):
    slot_id: str
    blocked: bool = True


class SlotResponse(StandardizedModel):
    id: str
    session_type: SessionTypeLiteral
    slot_date: date
    start_time: ClockTime
    end_time: ClockTime
    is_booked: bool
    is_blocked: bool
