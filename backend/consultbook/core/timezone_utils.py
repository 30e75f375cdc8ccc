"""
Timezone utilities.

Slots are stored as local wall-clock date + time in the timezone of the
pattern that produced them; comparisons against "now" happen in UTC.
"""

from datetime import date, datetime, time, timezone

import pytz


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as SQLite returns them) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_timezone(name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def local_to_utc(day: date, at: time, tz_name: str) -> datetime:
    """Convert a local wall-clock date/time in ``tz_name`` to an aware UTC datetime."""
    tz = get_timezone(tz_name)
    localized = tz.localize(datetime.combine(day, at))
    return localized.astimezone(timezone.utc)


def today_in(tz_name: str, now: datetime) -> date:
    return ensure_utc(now).astimezone(get_timezone(tz_name)).date()


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def parse_hhmm(value: str) -> time:
    """Parse "HH:MM" (24h) into a time, raising ValueError otherwise."""
    try:
        parsed = datetime.strptime(value, "%H:%M")
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM") from exc
    return parsed.time()
