# backend/consultbook/services/availability_resolver.py
"""
Availability resolution.

``resolve_open_slots`` turns weekly patterns plus the concrete slot rows that
already exist into the open, bookable slots for a date range. It performs no
I/O and reads no clock: the caller passes ``now``. Identical inputs always
yield an identical, sorted result.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.timezone_utils import ensure_utc, format_hhmm, local_to_utc


@dataclass(frozen=True)
class PatternWindow:
    """One active weekly window (day_of_week: 0=Sunday .. 6=Saturday)."""

    day_of_week: int
    start_time: time
    end_time: time
    timezone: Optional[str] = None


@dataclass(frozen=True)
class SlotState:
    slot_date: date
    start_time: time
    is_booked: bool
    is_blocked: bool


@dataclass(frozen=True)
class OpenSlot:
    slot_date: date
    start_time: time
    end_time: time
    timezone: str
    starts_at: datetime

    def as_dict(self) -> Dict[str, str]:
        return {
            "date": self.slot_date.isoformat(),
            "start": format_hhmm(self.start_time),
            "end": format_hhmm(self.end_time),
            "timezone": self.timezone,
            "starts_at": self.starts_at.isoformat(),
        }


@dataclass(frozen=True)
class ResolvedAvailability:
    slots: Tuple[OpenSlot, ...]

    def by_date(self) -> "OrderedDict[str, List[OpenSlot]]":
        grouped: "OrderedDict[str, List[OpenSlot]]" = OrderedDict()
        for slot in self.slots:
            grouped.setdefault(slot.slot_date.isoformat(), []).append(slot)
        return grouped


def day_of_week_index(day: date) -> int:
    """Sunday-based index used by patterns (Python's weekday() is Monday-based)."""
    return (day.weekday() + 1) % 7


def expand_window(start: time, end: time, slot_minutes: int) -> List[Tuple[time, time]]:
    """Split [start, end) into consecutive slots; a short remainder is dropped."""
    anchor = date(2000, 1, 1)
    cursor = datetime.combine(anchor, start)
    limit = datetime.combine(anchor, end)
    step = timedelta(minutes=slot_minutes)
    pieces: List[Tuple[time, time]] = []
    while cursor + step <= limit:
        pieces.append((cursor.time(), (cursor + step).time()))
        cursor += step
    return pieces


def validate_range(start_date: date, end_date: date, max_range_days: int) -> None:
    if end_date < start_date:
        raise ValueError("end_date must not be before start_date")
    if (end_date - start_date).days + 1 > max_range_days:
        raise ValueError(f"Date range cannot exceed {max_range_days} days")


def resolve_open_slots(
    *,
    patterns: Sequence[PatternWindow],
    concrete_slots: Iterable[SlotState],
    start_date: date,
    end_date: date,
    now: datetime,
    timezone: str,
    slot_minutes: int,
    lead_minutes: int,
    max_range_days: int,
) -> ResolvedAvailability:
    validate_range(start_date, end_date, max_range_days)

    unavailable = {
        (row.slot_date, row.start_time)
        for row in concrete_slots
        if row.is_booked or row.is_blocked
    }
    earliest_start = ensure_utc(now) + timedelta(minutes=lead_minutes)

    by_day: Dict[int, List[PatternWindow]] = {}
    for window in patterns:
        by_day.setdefault(window.day_of_week, []).append(window)

    candidates: Dict[Tuple[date, time], OpenSlot] = {}
    day = start_date
    while day <= end_date:
        for window in by_day.get(day_of_week_index(day), []):
            tz_name = window.timezone or timezone
            for slot_start, slot_end in expand_window(window.start_time, window.end_time, slot_minutes):
                key = (day, slot_start)
                if key in unavailable:
                    continue
                starts_at = local_to_utc(day, slot_start, tz_name)
                if starts_at < earliest_start:
                    continue
                candidate = OpenSlot(day, slot_start, slot_end, tz_name, starts_at)
                existing = candidates.get(key)
                # Same date/start from overlapping patterns: keep one, deterministically.
                if existing is None or (candidate.end_time, candidate.timezone) < (
                    existing.end_time,
                    existing.timezone,
                ):
                    candidates[key] = candidate
        day += timedelta(days=1)

    ordered = sorted(candidates.values(), key=lambda s: (s.slot_date, s.start_time, s.end_time))
    return ResolvedAvailability(slots=tuple(ordered))
