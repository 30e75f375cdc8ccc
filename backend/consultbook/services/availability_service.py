# backend/consultbook/services/availability_service.py
"""
Availability service.

Loads patterns and concrete slot rows, hands them to the pure resolver, and
owns consultant-side administration: weekly pattern CRUD, bulk replacement,
slot pre-materialization and blocking.
"""

from datetime import date, datetime, time, timedelta
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import get_timezone, today_in, utc_now
from ..models.availability import AvailabilitySlot, SessionType, WeeklyAvailabilityPattern
from ..models.consultant import Consultant
from ..repositories.factory import RepositoryFactory
from .availability_resolver import (
    OpenSlot,
    PatternWindow,
    ResolvedAvailability,
    SlotState,
    resolve_open_slots,
)
from .base import BaseService

logger = logging.getLogger(__name__)


def _validate_session_type(session_type: str) -> str:
    try:
        return SessionType(session_type).value
    except ValueError as exc:
        raise ValidationException(
            f"Unknown session type {session_type!r}", code="INVALID_SESSION_TYPE"
        ) from exc


def _validate_window(day_of_week: int, start_time: time, end_time: time) -> None:
    if not 0 <= day_of_week <= 6:
        raise ValidationException("day_of_week must be between 0 (Sunday) and 6", code="INVALID_DAY")
    if start_time >= end_time:
        raise ValidationException("start_time must be before end_time", code="INVALID_TIME_RANGE")


def _windows_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


class AvailabilityService(BaseService):
    def __init__(self, db: Session, config: Optional[Settings] = None):
        super().__init__(db)
        self.config = config or default_settings
        self.consultants = RepositoryFactory.create_consultant_repository(db)
        self.patterns = RepositoryFactory.create_pattern_repository(db)
        self.slots = RepositoryFactory.create_slot_repository(db)

    # ------------------------------------------------------------------ reads

    def _require_consultant(self, consultant_id: str) -> Consultant:
        consultant = self.consultants.get_active(consultant_id)
        if consultant is None:
            raise NotFoundException("Consultant not found", code="CONSULTANT_NOT_FOUND")
        return consultant

    def _resolve(
        self,
        consultant: Consultant,
        session_type: str,
        start_date: date,
        end_date: date,
        *,
        now: datetime,
        timezone: Optional[str],
        include_concrete: bool = True,
        max_range_days: Optional[int] = None,
    ) -> ResolvedAvailability:
        tz_name = timezone or consultant.timezone or self.config.default_timezone
        try:
            get_timezone(tz_name)
        except ValueError as exc:
            raise ValidationException(str(exc), code="INVALID_TIMEZONE") from exc
        windows = [
            PatternWindow(p.day_of_week, p.start_time, p.end_time, p.timezone)
            for p in self.patterns.list_active(consultant.id, session_type)
        ]
        concrete: List[SlotState] = []
        if include_concrete:
            concrete = [
                SlotState(row.slot_date, row.start_time, row.is_booked, row.is_blocked)
                for row in self.slots.list_in_range(consultant.id, session_type, start_date, end_date)
            ]
        try:
            return resolve_open_slots(
                patterns=windows,
                concrete_slots=concrete,
                start_date=start_date,
                end_date=end_date,
                now=now,
                timezone=tz_name,
                slot_minutes=self.config.slot_duration_minutes,
                lead_minutes=self.config.min_booking_lead_minutes,
                max_range_days=max_range_days or self.config.availability_max_range_days,
            )
        except ValueError as exc:
            raise ValidationException(str(exc), code="INVALID_DATE_RANGE") from exc

    @BaseService.measure_operation("get_available_slots")
    def get_available_slots(
        self,
        consultant_id: str,
        session_type: str,
        start_date: date,
        end_date: date,
        *,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ResolvedAvailability:
        session_type = _validate_session_type(session_type)
        with self.transaction():
            consultant = self._require_consultant(consultant_id)
            return self._resolve(
                consultant, session_type, start_date, end_date, now=now or utc_now(), timezone=timezone
            )

    def get_available_slots_by_slug(
        self,
        slug: str,
        session_type: str,
        *,
        start_date: Optional[date] = None,
        days: Optional[int] = None,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Consultant, date, date, ResolvedAvailability]:
        with self.transaction():
            consultant = self.consultants.get_by_slug(slug)
            if consultant is None or not consultant.is_active:
                raise NotFoundException("Consultant not found", code="CONSULTANT_NOT_FOUND")
        now = now or utc_now()
        tz_name = timezone or consultant.timezone or self.config.default_timezone
        first = start_date or today_in(tz_name, now)
        last = first + timedelta(days=(days or self.config.public_availability_days) - 1)
        resolved = self.get_available_slots(
            consultant.id, session_type, first, last, timezone=tz_name, now=now
        )
        return consultant, first, last, resolved

    def find_offered_slot(
        self,
        consultant: Consultant,
        session_type: str,
        slot_date: date,
        start_time: time,
        *,
        now: datetime,
    ) -> Optional[OpenSlot]:
        """The pattern-derived slot at this key, ignoring whether it is already taken."""
        resolved = self._resolve(
            consultant,
            session_type,
            slot_date,
            slot_date,
            now=now,
            timezone=None,
            include_concrete=False,
        )
        for slot in resolved.slots:
            if slot.start_time == start_time:
                return slot
        return None

    # --------------------------------------------------------------- patterns

    def list_patterns(
        self, consultant_id: str, session_type: Optional[str] = None
    ) -> List[WeeklyAvailabilityPattern]:
        if session_type:
            session_type = _validate_session_type(session_type)
        with self.transaction():
            return self.patterns.list_for_consultant(consultant_id, session_type)

    def _check_overlap(
        self,
        consultant_id: str,
        session_type: str,
        day_of_week: int,
        start_time: time,
        end_time: time,
        *,
        ignore_id: Optional[str] = None,
    ) -> None:
        for existing in self.patterns.list_active(consultant_id, session_type):
            if existing.id == ignore_id or existing.day_of_week != day_of_week:
                continue
            if _windows_overlap(start_time, end_time, existing.start_time, existing.end_time):
                raise ConflictException(
                    "Pattern overlaps an existing availability window",
                    code="PATTERN_OVERLAP",
                    details={
                        "day_of_week": day_of_week,
                        "conflicting_pattern_id": existing.id,
                    },
                )

    @BaseService.measure_operation("create_pattern")
    def create_pattern(self, consultant_id: str, data: Dict[str, Any]) -> WeeklyAvailabilityPattern:
        session_type = _validate_session_type(data["session_type"])
        _validate_window(data["day_of_week"], data["start_time"], data["end_time"])
        is_active = data.get("is_active", True)
        with self.transaction():
            consultant = self._require_consultant(consultant_id)
            timezone = data.get("timezone") or consultant.timezone or self.config.default_timezone
            if is_active:
                self._check_overlap(
                    consultant.id,
                    session_type,
                    data["day_of_week"],
                    data["start_time"],
                    data["end_time"],
                )
            pattern = self.patterns.create(
                consultant_id=consultant.id,
                session_type=session_type,
                day_of_week=data["day_of_week"],
                start_time=data["start_time"],
                end_time=data["end_time"],
                timezone=timezone,
                is_active=is_active,
            )
        self.log_operation("pattern_created", consultant_id=consultant.id, pattern_id=pattern.id)
        return pattern

    def _owned_pattern(self, consultant_id: str, pattern_id: str) -> WeeklyAvailabilityPattern:
        pattern = self.patterns.get_by_id(pattern_id)
        if pattern is None:
            raise NotFoundException("Availability pattern not found", code="PATTERN_NOT_FOUND")
        if pattern.consultant_id != consultant_id:
            raise ForbiddenException("Pattern belongs to another consultant", code="FORBIDDEN")
        return pattern

    @BaseService.measure_operation("update_pattern")
    def update_pattern(
        self, consultant_id: str, pattern_id: str, changes: Dict[str, Any]
    ) -> WeeklyAvailabilityPattern:
        with self.transaction():
            pattern = self._owned_pattern(consultant_id, pattern_id)
            start = changes.get("start_time") or pattern.start_time
            end = changes.get("end_time") or pattern.end_time
            day = changes["day_of_week"] if changes.get("day_of_week") is not None else pattern.day_of_week
            _validate_window(day, start, end)
            active = changes["is_active"] if changes.get("is_active") is not None else pattern.is_active
            if active:
                self._check_overlap(
                    consultant_id,
                    pattern.session_type,
                    day,
                    start,
                    end,
                    ignore_id=pattern.id,
                )
            for key in ("day_of_week", "start_time", "end_time", "timezone", "is_active"):
                if key in changes and changes[key] is not None:
                    setattr(pattern, key, changes[key])
            self.patterns.flush()
        return pattern

    def delete_pattern(self, consultant_id: str, pattern_id: str) -> None:
        """Delete a template. Materialized slots and sessions are untouched."""
        with self.transaction():
            pattern = self._owned_pattern(consultant_id, pattern_id)
            self.patterns.delete(pattern.id)
        self.log_operation("pattern_deleted", consultant_id=consultant_id, pattern_id=pattern_id)

    @BaseService.measure_operation("replace_patterns")
    def replace_patterns(
        self, consultant_id: str, session_type: str, windows: Sequence[Dict[str, Any]]
    ) -> List[WeeklyAvailabilityPattern]:
        """Swap a session type's weekly template for ``windows`` in one transaction."""
        session_type = _validate_session_type(session_type)
        for window in windows:
            _validate_window(window["day_of_week"], window["start_time"], window["end_time"])
        ordered = sorted(windows, key=lambda w: (w["day_of_week"], w["start_time"]))
        for prev, nxt in zip(ordered, ordered[1:]):
            if prev["day_of_week"] == nxt["day_of_week"] and _windows_overlap(
                prev["start_time"], prev["end_time"], nxt["start_time"], nxt["end_time"]
            ):
                raise ConflictException(
                    "Submitted windows overlap",
                    code="PATTERN_OVERLAP",
                    details={"day_of_week": nxt["day_of_week"]},
                )
        with self.transaction():
            consultant = self._require_consultant(consultant_id)
            self.patterns.delete_for_type(consultant.id, session_type)
            created = [
                self.patterns.create(
                    consultant_id=consultant.id,
                    session_type=session_type,
                    day_of_week=w["day_of_week"],
                    start_time=w["start_time"],
                    end_time=w["end_time"],
                    timezone=w.get("timezone") or consultant.timezone,
                    is_active=True,
                )
                for w in ordered
            ]
        self.log_operation(
            "patterns_replaced",
            consultant_id=consultant.id,
            session_type=session_type,
            count=len(created),
        )
        return created

    # ------------------------------------------------------------------ slots

    @BaseService.measure_operation("generate_slots")
    def generate_slots(
        self,
        consultant_id: str,
        session_type: str,
        start_date: date,
        end_date: date,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Materialize free slot rows for every open pattern slot not yet stored."""
        session_type = _validate_session_type(session_type)
        with self.transaction():
            consultant = self._require_consultant(consultant_id)
            resolved = self._resolve(
                consultant,
                session_type,
                start_date,
                end_date,
                now=now or utc_now(),
                timezone=None,
                max_range_days=self.config.slot_generation_max_days,
            )
            existing = self.slots.existing_keys(consultant.id, session_type, start_date, end_date)
            new_rows = [
                AvailabilitySlot(
                    consultant_id=consultant.id,
                    session_type=session_type,
                    slot_date=slot.slot_date,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    timezone=slot.timezone,
                )
                for slot in resolved.slots
                if (slot.slot_date, slot.start_time) not in existing
            ]
            created = self.slots.add_free_slots(new_rows)
        skipped = len(resolved.slots) - created
        self.log_operation(
            "slots_generated",
            consultant_id=consultant.id,
            session_type=session_type,
            created=created,
            skipped=skipped,
        )
        return {"created": created, "skipped": skipped}

    def set_slot_blocked(self, consultant_id: str, slot_id: str, blocked: bool) -> AvailabilitySlot:
        with self.transaction():
            slot = self.slots.get_by_id(slot_id)
            if slot is None:
                raise NotFoundException("Slot not found", code="SLOT_NOT_FOUND")
            if slot.consultant_id != consultant_id:
                raise ForbiddenException("Slot belongs to another consultant", code="FORBIDDEN")
            if not self.slots.set_blocked(slot.id, blocked):
                raise ConflictException("A booked slot cannot be blocked", code="SLOT_BOOKED")
        return slot
