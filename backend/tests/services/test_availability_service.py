"""Tests for AvailabilityService: open slots, pattern administration and slot rows."""

from datetime import time, timedelta

import pytest

from consultbook.core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from consultbook.models.availability import AvailabilitySlot, WeeklyAvailabilityPattern
from consultbook.services.availability_service import AvailabilityService


@pytest.fixture
def availability(session_factory, test_settings):
    return AvailabilityService(session_factory(), test_settings)


def test_open_slots_follow_the_weekly_pattern(availability, test_consultant, monday_pattern, next_monday, now):
    resolved = availability.get_available_slots(
        test_consultant.id, "PERSONAL", next_monday, next_monday + timedelta(days=6), now=now
    )

    assert [(s.slot_date, s.start_time) for s in resolved.slots] == [
        (next_monday, time(10, 0)),
        (next_monday, time(11, 0)),
    ]
    assert all(s.timezone == "Asia/Kolkata" for s in resolved.slots)


def test_reserved_slot_disappears(reserve, availability, test_consultant, next_monday, now):
    reserve(time(10, 0))

    resolved = availability.get_available_slots(
        test_consultant.id, "PERSONAL", next_monday, next_monday, now=now
    )
    assert [s.start_time for s in resolved.slots] == [time(11, 0)]


def test_other_session_type_has_no_slots(availability, test_consultant, monday_pattern, next_monday, now):
    resolved = availability.get_available_slots(
        test_consultant.id, "WEBINAR", next_monday, next_monday, now=now
    )
    assert resolved.slots == ()


def test_lookup_by_slug_defaults_the_window(availability, monday_pattern, test_settings, now):
    consultant, first, last, resolved = availability.get_available_slots_by_slug(
        "asha-rao", "PERSONAL", now=now
    )

    assert consultant.slug == "asha-rao"
    assert (last - first).days == test_settings.public_availability_days - 1
    assert all(first <= s.slot_date <= last for s in resolved.slots)


def test_unknown_slug_and_bad_inputs(availability, test_consultant, next_monday, now):
    with pytest.raises(NotFoundException):
        availability.get_available_slots_by_slug("nobody", "PERSONAL", now=now)
    with pytest.raises(ValidationException):
        availability.get_available_slots(test_consultant.id, "GROUP", next_monday, next_monday, now=now)
    with pytest.raises(ValidationException):
        availability.get_available_slots(
            test_consultant.id, "PERSONAL", next_monday, next_monday - timedelta(days=1), now=now
        )
    with pytest.raises(ValidationException) as exc_info:
        availability.get_available_slots(
            test_consultant.id, "PERSONAL", next_monday, next_monday, timezone="Mars/Base", now=now
        )
    assert exc_info.value.code == "INVALID_TIMEZONE"


def test_create_pattern_uses_consultant_timezone(availability, test_consultant, load):
    pattern = availability.create_pattern(
        test_consultant.id,
        {"session_type": "WEBINAR", "day_of_week": 3, "start_time": time(18, 0), "end_time": time(20, 0)},
    )

    stored = load(WeeklyAvailabilityPattern, pattern.id)
    assert stored.timezone == "Asia/Kolkata"
    assert stored.is_active is True


def test_overlapping_pattern_is_rejected(availability, test_consultant, monday_pattern):
    with pytest.raises(ConflictException) as exc_info:
        availability.create_pattern(
            test_consultant.id,
            {"session_type": "PERSONAL", "day_of_week": 1, "start_time": time(11, 0), "end_time": time(13, 0)},
        )
    assert exc_info.value.code == "PATTERN_OVERLAP"
    assert exc_info.value.details["conflicting_pattern_id"] == monday_pattern.id


def test_touching_windows_do_not_overlap(availability, test_consultant, monday_pattern):
    pattern = availability.create_pattern(
        test_consultant.id,
        {"session_type": "PERSONAL", "day_of_week": 1, "start_time": time(12, 0), "end_time": time(13, 0)},
    )
    assert pattern.id


@pytest.mark.parametrize(
    "window",
    [
        {"day_of_week": 7, "start_time": time(9, 0), "end_time": time(10, 0)},
        {"day_of_week": 2, "start_time": time(10, 0), "end_time": time(9, 0)},
    ],
)
def test_invalid_pattern_windows(availability, test_consultant, window):
    with pytest.raises(ValidationException):
        availability.create_pattern(test_consultant.id, {"session_type": "PERSONAL", **window})


def test_update_and_delete_pattern(availability, test_consultant, monday_pattern, load):
    availability.update_pattern(test_consultant.id, monday_pattern.id, {"end_time": time(13, 0)})
    assert load(WeeklyAvailabilityPattern, monday_pattern.id).end_time == time(13, 0)

    availability.delete_pattern(test_consultant.id, monday_pattern.id)
    assert load(WeeklyAvailabilityPattern, monday_pattern.id) is None


def test_pattern_of_another_consultant_is_forbidden(availability, monday_pattern):
    with pytest.raises(ForbiddenException):
        availability.update_pattern("01SOMEONEELSE", monday_pattern.id, {"end_time": time(13, 0)})


def test_replace_patterns_swaps_the_template(availability, test_consultant, monday_pattern, load_all):
    created = availability.replace_patterns(
        test_consultant.id,
        "PERSONAL",
        [
            {"day_of_week": 2, "start_time": time(9, 0), "end_time": time(10, 0)},
            {"day_of_week": 2, "start_time": time(14, 0), "end_time": time(16, 0)},
        ],
    )

    assert len(created) == 2
    remaining = load_all(WeeklyAvailabilityPattern, consultant_id=test_consultant.id, session_type="PERSONAL")
    assert sorted(p.start_time for p in remaining) == [time(9, 0), time(14, 0)]


def test_replace_patterns_rejects_overlap_and_keeps_old_template(
    availability, test_consultant, monday_pattern, load_all
):
    with pytest.raises(ConflictException):
        availability.replace_patterns(
            test_consultant.id,
            "PERSONAL",
            [
                {"day_of_week": 2, "start_time": time(9, 0), "end_time": time(11, 0)},
                {"day_of_week": 2, "start_time": time(10, 0), "end_time": time(12, 0)},
            ],
        )
    assert [p.id for p in load_all(WeeklyAvailabilityPattern, consultant_id=test_consultant.id)] == [
        monday_pattern.id
    ]


def test_generate_slots_is_idempotent(availability, test_consultant, monday_pattern, next_monday, load_all, now):
    first = availability.generate_slots(test_consultant.id, "PERSONAL", next_monday, next_monday, now=now)
    second = availability.generate_slots(test_consultant.id, "PERSONAL", next_monday, next_monday, now=now)

    assert first == {"created": 2, "skipped": 0}
    assert second == {"created": 0, "skipped": 2}
    assert len(load_all(AvailabilitySlot, consultant_id=test_consultant.id)) == 2


def test_blocked_slot_is_not_offered(availability, test_consultant, monday_pattern, next_monday, load_all, now):
    availability.generate_slots(test_consultant.id, "PERSONAL", next_monday, next_monday, now=now)
    ten = load_all(AvailabilitySlot, consultant_id=test_consultant.id, start_time=time(10, 0))[0]

    availability.set_slot_blocked(test_consultant.id, ten.id, True)

    resolved = availability.get_available_slots(
        test_consultant.id, "PERSONAL", next_monday, next_monday, now=now
    )
    assert [s.start_time for s in resolved.slots] == [time(11, 0)]


def test_booked_slot_cannot_be_blocked(reserve, availability, test_consultant):
    reservation = reserve()
    with pytest.raises(ConflictException) as exc_info:
        availability.set_slot_blocked(test_consultant.id, reservation.slot_id, True)
    assert exc_info.value.code == "SLOT_BOOKED"
