from datetime import date, datetime, timedelta, timezone

import pytest
import pytz
from equiduty_scheduling.availability import (
    BusyInterval,
    ScheduleIssue,
    add_exception,
    calculate_peak_concurrent,
    create_default_schedule,
    find_conflicts,
    get_available_time_slots,
    get_effective_time_blocks,
    get_week_time_blocks,
    is_time_range_available,
    migrate_legacy_availability,
    remove_exception,
    validate_business_hours,
    validate_exception,
    validate_schedule,
    validate_time_blocks,
)
from equiduty_scheduling.errors import (
    InvalidFormatError,
    ScheduleErrorKind,
    ScheduleExceptionNotFoundError,
    ValidationFailedError,
)
from equiduty_scheduling.schemas import (
    DayOfWeek,
    DaySchedule,
    ExceptionType,
    FacilityAvailabilitySchedule,
    LegacyAvailability,
    ScheduleException,
    TimeBlock,
    WeeklySchedule,
)


def block(start, end):
    return TimeBlock(start=start, end=end)


def schedule_with(days=None, exceptions=None, defaults=(("08:00", "20:00"),)):
    return FacilityAvailabilitySchedule(
        weekly_schedule=WeeklySchedule(
            default_time_blocks=[block(s, e) for s, e in defaults],
            days=days or {},
        ),
        exceptions=exceptions or [],
    )


# Resolution


def test_closed_exception_overrides_weekly_default():
    schedule = schedule_with(
        exceptions=[ScheduleException(date="2026-02-05", type=ExceptionType.CLOSED, reason="Farrier day")]
    )
    assert get_effective_time_blocks(schedule, date(2026, 2, 5)) == []
    assert get_effective_time_blocks(schedule, date(2026, 2, 6)) == [block("08:00", "20:00")]


def test_modified_exception_replaces_blocks():
    schedule = schedule_with(
        exceptions=[
            ScheduleException(
                date="2026-02-05",
                type=ExceptionType.MODIFIED,
                time_blocks=[block("10:00", "12:00")],
            )
        ]
    )
    assert get_effective_time_blocks(schedule, date(2026, 2, 5)) == [block("10:00", "12:00")]


def test_exception_beats_closed_day_override():
    schedule = schedule_with(
        days={DayOfWeek.THURSDAY: DaySchedule(available=False)},
        exceptions=[
            ScheduleException(date="2026-02-05", type="modified", time_blocks=[block("09:00", "11:00")])
        ],
    )
    assert get_effective_time_blocks(schedule, date(2026, 2, 5)) == [block("09:00", "11:00")]
    assert get_effective_time_blocks(schedule, date(2026, 2, 12)) == []


def test_available_day_with_empty_blocks_falls_back_to_default():
    schedule = schedule_with(days={DayOfWeek.THURSDAY: DaySchedule(available=True, time_blocks=[])})
    assert get_effective_time_blocks(schedule, date(2026, 2, 5)) == [block("08:00", "20:00")]


def test_unavailable_day_ignores_its_blocks():
    schedule = schedule_with(
        days={DayOfWeek.SATURDAY: DaySchedule(available=False, time_blocks=[block("10:00", "14:00")])}
    )
    assert get_effective_time_blocks(schedule, date(2026, 2, 7)) == []


def test_day_override_blocks_are_used():
    schedule = schedule_with(
        days={DayOfWeek.SUNDAY: DaySchedule(time_blocks=[block("10:00", "14:00")])}
    )
    assert get_effective_time_blocks(schedule, date(2026, 2, 8)) == [block("10:00", "14:00")]


def test_resolution_uses_the_datetime_wall_clock_date():
    schedule = schedule_with(exceptions=[ScheduleException(date="2026-02-05", type="closed")])
    assert get_effective_time_blocks(schedule, datetime(2026, 2, 5, 23, 59)) == []
    assert get_effective_time_blocks(schedule, datetime(2026, 2, 6, 0, 0)) != []


def test_effective_blocks_are_pure_and_idempotent():
    schedule = schedule_with(
        days={DayOfWeek.MONDAY: DaySchedule(time_blocks=[block("06:00", "09:00"), block("15:00", "18:00")])},
        exceptions=[ScheduleException(date="2026-02-05", type="closed")],
    )
    snapshot = schedule.model_dump()
    for offset in range(14):
        day = date(2026, 2, 1) + timedelta(days=offset)
        first = get_effective_time_blocks(schedule, day)
        second = get_effective_time_blocks(schedule, day)
        assert first == second
        first.clear()
        assert get_effective_time_blocks(schedule, day) == second
    assert schedule.model_dump() == snapshot


def test_week_time_blocks_covers_monday_to_sunday():
    schedule = schedule_with(days={DayOfWeek.SUNDAY: DaySchedule(available=False)})
    week = get_week_time_blocks(schedule, date(2026, 2, 5))
    assert list(week) == [date(2026, 2, 2) + timedelta(days=i) for i in range(7)]
    assert week[date(2026, 2, 8)] == []
    assert week[date(2026, 2, 2)] == [block("08:00", "20:00")]


def test_default_schedule_is_open_every_day():
    schedule = create_default_schedule()
    assert validate_schedule(schedule) == []
    for offset in range(7):
        assert get_effective_time_blocks(schedule, date(2026, 2, 2) + timedelta(days=offset)) == [
            block("08:00", "20:00")
        ]


# Range checks


def test_range_inside_single_block():
    blocks = [block("08:00", "12:00"), block("13:00", "17:00")]
    assert is_time_range_available(blocks, "10:00", "11:00")
    assert is_time_range_available(blocks, "08:00", "12:00")
    assert is_time_range_available(blocks, "13:00", "17:00")


def test_range_spanning_gap_is_unavailable():
    blocks = [block("08:00", "12:00"), block("13:00", "17:00")]
    assert not is_time_range_available(blocks, "11:30", "13:30")


def test_range_spanning_touching_blocks_is_unavailable():
    blocks = [block("08:00", "12:00"), block("12:00", "16:00")]
    assert not is_time_range_available(blocks, "11:00", "13:00")


@pytest.mark.parametrize("start,end", [("10:00", "10:00"), ("11:00", "10:00")])
def test_zero_or_negative_range_is_never_available(start, end):
    assert not is_time_range_available([block("00:00", "23:59")], start, end)


def test_range_check_rejects_malformed_times():
    with pytest.raises(InvalidFormatError):
        is_time_range_available([block("08:00", "12:00")], "9am", "10:00")


def test_range_check_skips_malformed_blocks():
    assert is_time_range_available([block("8", "x"), block("08:00", "12:00")], "09:00", "10:00")


def test_business_hours_check():
    schedule = schedule_with(exceptions=[ScheduleException(date="2026-02-05", type="closed")])
    assert validate_business_hours(schedule, datetime(2026, 2, 6, 9), datetime(2026, 2, 6, 10))
    assert not validate_business_hours(schedule, datetime(2026, 2, 6, 19), datetime(2026, 2, 6, 21))
    assert not validate_business_hours(schedule, datetime(2026, 2, 5, 9), datetime(2026, 2, 5, 10))
    assert not validate_business_hours(schedule, datetime(2026, 2, 6, 19), datetime(2026, 2, 7, 9))


# Block validation


def test_single_valid_block_has_no_errors():
    assert validate_time_blocks([block("08:00", "12:00")]) == []


def test_overlapping_blocks():
    errors = validate_time_blocks([block("08:00", "12:00"), block("11:00", "14:00")])
    assert ScheduleErrorKind.OVERLAPPING_BLOCKS in errors


def test_overlap_detected_regardless_of_input_order():
    errors = validate_time_blocks([block("11:00", "14:00"), block("08:00", "12:00")])
    assert errors == [ScheduleErrorKind.OVERLAPPING_BLOCKS]


def test_touching_blocks_do_not_overlap():
    assert validate_time_blocks([block("08:00", "12:00"), block("12:00", "14:00")]) == []


def test_validation_short_circuits_on_first_category():
    too_many = [block(f"{h:02d}:00", f"{h:02d}:30") for h in range(6)]
    too_many.append(block("bad", "worse"))
    assert validate_time_blocks(too_many) == [ScheduleErrorKind.TOO_MANY_BLOCKS]

    mixed = [block("8:00", "09:00"), block("12:00", "10:00")]
    assert validate_time_blocks(mixed) == [ScheduleErrorKind.INVALID_TIME_FORMAT]

    backwards_and_overlapping = [block("12:00", "10:00"), block("08:00", "11:00"), block("09:00", "13:00")]
    assert validate_time_blocks(backwards_and_overlapping) == [ScheduleErrorKind.FROM_BEFORE_TO]


def test_equal_from_and_to_is_rejected():
    assert validate_time_blocks([block("10:00", "10:00")]) == [ScheduleErrorKind.FROM_BEFORE_TO]


def test_max_blocks_is_configurable():
    blocks = [block("08:00", "09:00"), block("10:00", "11:00")]
    assert validate_time_blocks(blocks, max_blocks=1) == [ScheduleErrorKind.TOO_MANY_BLOCKS]


# Schedule validation


def _kinds(issues):
    return [issue.kind for issue in issues]


def test_valid_schedule_has_no_issues(weekly_schedule):
    assert validate_schedule(weekly_schedule) == []


def test_schedule_requires_default_blocks():
    schedule = schedule_with(defaults=())
    assert _kinds(validate_schedule(schedule)) == [ScheduleErrorKind.DEFAULT_BLOCKS_REQUIRED]


def test_schedule_requires_an_available_day():
    schedule = schedule_with(days={day: DaySchedule(available=False) for day in DayOfWeek})
    assert _kinds(validate_schedule(schedule)) == [ScheduleErrorKind.NO_AVAILABLE_DAYS]


def test_schedule_aggregates_every_problem():
    schedule = schedule_with(
        defaults=(("08:00", "12:00"), ("11:00", "13:00")),
        days={
            DayOfWeek.MONDAY: DaySchedule(time_blocks=[block("10:00", "09:00")]),
            DayOfWeek.TUESDAY: DaySchedule(available=False, time_blocks=[block("x", "y")]),
        },
        exceptions=[
            ScheduleException(date="2026-02-05", type="closed", time_blocks=[block("08:00", "09:00")]),
            ScheduleException(date="2026-02-05", type="modified", time_blocks=[block("08:00", "09:00")]),
            ScheduleException(date="05-02-2026", type="modified"),
        ],
    )
    issues = validate_schedule(schedule)
    assert _kinds(issues) == [
        ScheduleErrorKind.OVERLAPPING_BLOCKS,
        ScheduleErrorKind.FROM_BEFORE_TO,
        ScheduleErrorKind.CLOSED_EXCEPTION_HAS_BLOCKS,
        ScheduleErrorKind.DUPLICATE_EXCEPTION_DATE,
        ScheduleErrorKind.INVALID_DATE_FORMAT,
        ScheduleErrorKind.MODIFIED_EXCEPTION_REQUIRES_BLOCKS,
    ]
    monday_issue = issues[1]
    assert monday_issue.day == DayOfWeek.MONDAY
    assert monday_issue.message.startswith("Monday:")
    assert issues[2].date == "2026-02-05"


def test_schedule_exception_blocks_are_validated():
    schedule = schedule_with(
        exceptions=[
            ScheduleException(
                date="2026-02-05",
                type="modified",
                time_blocks=[block("08:00", "10:00"), block("09:00", "11:00")],
            )
        ]
    )
    issues = validate_schedule(schedule)
    assert issues == [
        ScheduleIssue(
            kind=ScheduleErrorKind.OVERLAPPING_BLOCKS,
            message="2026-02-05: Time blocks overlap",
            date="2026-02-05",
        )
    ]


def test_schedule_exception_count_is_bounded():
    start = date(2026, 1, 1)
    exceptions = [
        ScheduleException(date=(start + timedelta(days=i)).isoformat(), type="closed") for i in range(4)
    ]
    schedule = schedule_with(exceptions=exceptions)
    assert _kinds(validate_schedule(schedule, max_exceptions=3)) == [ScheduleErrorKind.TOO_MANY_EXCEPTIONS]
    assert validate_schedule(schedule) == []


def test_issue_serializes_for_ui():
    issue = ScheduleIssue(kind=ScheduleErrorKind.FROM_BEFORE_TO, message="Monday: bad", day=DayOfWeek.MONDAY)
    assert issue.to_dict() == {"kind": "from_before_to", "message": "Monday: bad", "day": "monday"}


# Single exceptions


def test_add_exception_appends_without_mutating(weekly_schedule):
    farrier = ScheduleException(date="2026-02-05", type="modified", time_blocks=[block("12:00", "16:00")])
    updated = add_exception(weekly_schedule, farrier)
    assert weekly_schedule.exceptions == []
    assert get_effective_time_blocks(updated, date(2026, 2, 5)) == [block("12:00", "16:00")]


def test_add_closed_exception_drops_blocks(weekly_schedule):
    closed = ScheduleException(date="2026-12-24", type="closed", time_blocks=[block("08:00", "12:00")])
    updated = add_exception(weekly_schedule, closed)
    assert updated.exceptions[0].time_blocks == []
    assert get_effective_time_blocks(updated, date(2026, 12, 24)) == []


def test_add_exception_rejects_duplicate_date(weekly_schedule):
    first = add_exception(weekly_schedule, ScheduleException(date="2026-02-05", type="closed"))
    with pytest.raises(ValidationFailedError) as exc_info:
        add_exception(first, ScheduleException(date="2026-02-05", type="closed"))
    assert _kinds(exc_info.value.issues) == [ScheduleErrorKind.DUPLICATE_EXCEPTION_DATE]


def test_add_exception_respects_the_exception_limit(weekly_schedule):
    schedule = add_exception(weekly_schedule, ScheduleException(date="2026-02-05", type="closed"))
    with pytest.raises(ValidationFailedError) as exc_info:
        add_exception(schedule, ScheduleException(date="2026-02-06", type="closed"), max_exceptions=1)
    assert _kinds(exc_info.value.issues) == [ScheduleErrorKind.TOO_MANY_EXCEPTIONS]


def test_exception_reason_length_is_bounded():
    ok = ScheduleException(date="2026-02-05", type="closed", reason="x" * 500)
    too_long = ok.model_copy(update={"reason": "x" * 501})
    assert validate_exception(ok) == []
    assert _kinds(validate_exception(too_long)) == [ScheduleErrorKind.REASON_TOO_LONG]


def test_modified_exception_needs_valid_blocks():
    empty = ScheduleException(date="2026-02-05", type="modified")
    bad_date = ScheduleException(date="2026-2-5", type="modified", time_blocks=[block("09:00", "08:00")])
    assert _kinds(validate_exception(empty)) == [ScheduleErrorKind.MODIFIED_EXCEPTION_REQUIRES_BLOCKS]
    assert _kinds(validate_exception(bad_date)) == [
        ScheduleErrorKind.INVALID_DATE_FORMAT,
        ScheduleErrorKind.FROM_BEFORE_TO,
    ]


def test_remove_exception_by_date_or_key():
    schedule = schedule_with(
        exceptions=[
            ScheduleException(date="2026-02-05", type="closed"),
            ScheduleException(date="2026-02-06", type="closed"),
        ]
    )
    assert [e.date for e in remove_exception(schedule, "2026-02-05").exceptions] == ["2026-02-06"]
    assert [e.date for e in remove_exception(schedule, date(2026, 2, 6)).exceptions] == ["2026-02-05"]
    assert len(schedule.exceptions) == 2


def test_remove_missing_exception_raises():
    with pytest.raises(ScheduleExceptionNotFoundError) as exc_info:
        remove_exception(schedule_with(), "2026-02-05")
    assert exc_info.value.details == {"date": "2026-02-05"}
    with pytest.raises(InvalidFormatError):
        remove_exception(schedule_with(), "05/02/2026")


# Legacy migration


def test_legacy_migration_uses_range_as_single_default():
    legacy = LegacyAvailability.model_validate(
        {
            "availableFrom": "07:00",
            "availableTo": "19:00",
            "daysAvailable": {
                "monday": True,
                "tuesday": True,
                "wednesday": False,
                "thursday": True,
                "friday": True,
                "saturday": True,
                "sunday": False,
            },
        }
    )
    schedule = migrate_legacy_availability(legacy)
    assert schedule.weekly_schedule.default_time_blocks == [block("07:00", "19:00")]
    assert schedule.exceptions == []
    assert all(day.time_blocks == [] for day in schedule.weekly_schedule.days.values())
    # Thursday inherits the default, Wednesday is closed.
    assert get_effective_time_blocks(schedule, date(2026, 2, 5)) == [block("07:00", "19:00")]
    assert get_effective_time_blocks(schedule, date(2026, 2, 4)) == []
    assert validate_schedule(schedule) == []


def test_legacy_migration_without_day_flags_opens_every_day():
    schedule = migrate_legacy_availability(LegacyAvailability())
    assert all(day.available for day in schedule.weekly_schedule.days.values())
    assert len(schedule.weekly_schedule.days) == 7


def test_legacy_migration_closes_unlisted_days():
    schedule = migrate_legacy_availability(LegacyAvailability(days_available={DayOfWeek.MONDAY: True}))
    days = schedule.weekly_schedule.days
    assert days[DayOfWeek.MONDAY].available
    assert not days[DayOfWeek.FRIDAY].available


# Slots and capacity


def test_available_time_slots_skip_busy_and_partial_slots():
    busy = [BusyInterval(start=datetime(2026, 2, 5, 9, 0), end=datetime(2026, 2, 5, 9, 30))]
    slots = get_available_time_slots(
        [block("08:00", "10:00"), block("13:00", "13:45")], date(2026, 2, 5), 30, busy
    )
    assert [(s.strftime("%H:%M"), e.strftime("%H:%M")) for s, e in slots] == [
        ("08:00", "08:30"),
        ("08:30", "09:00"),
        ("09:30", "10:00"),
        ("13:00", "13:30"),
    ]


def test_available_time_slots_in_facility_timezone():
    stockholm = pytz.timezone("Europe/Stockholm")
    # 07:00-07:30 UTC is 08:00-08:30 in Stockholm in February.
    busy = [
        BusyInterval(
            start=datetime(2026, 2, 5, 7, 0, tzinfo=timezone.utc),
            end=datetime(2026, 2, 5, 7, 30, tzinfo=timezone.utc),
        )
    ]
    slots = get_available_time_slots([block("08:00", "09:00")], date(2026, 2, 5), 30, busy, tzinfo=stockholm)
    assert len(slots) == 1
    start, end = slots[0]
    assert start.utcoffset() == timedelta(hours=1)
    assert start.astimezone(timezone.utc) == datetime(2026, 2, 5, 7, 30, tzinfo=timezone.utc)
    assert end - start == timedelta(minutes=30)


def test_available_time_slots_rejects_non_positive_length():
    with pytest.raises(ValueError):
        get_available_time_slots([block("08:00", "10:00")], date(2026, 2, 5), 0)


def test_find_conflicts_rounds_to_minutes_and_ignores_touching():
    busy = [
        BusyInterval(start=datetime(2026, 2, 5, 9, 0), end=datetime(2026, 2, 5, 10, 0), ref="a"),
        BusyInterval(start=datetime(2026, 2, 5, 10, 0, 30), end=datetime(2026, 2, 5, 11, 0), ref="b"),
    ]
    conflicts = find_conflicts(datetime(2026, 2, 5, 8, 0), datetime(2026, 2, 5, 10, 0, 45), busy)
    assert [c.ref for c in conflicts] == ["a"]
    assert find_conflicts(datetime(2026, 2, 5, 9, 0), datetime(2026, 2, 5, 9, 30), busy, exclude_ref="a") == []


def test_peak_concurrency_sweep():
    day = datetime(2026, 2, 5)
    busy = [
        BusyInterval(start=day.replace(hour=8), end=day.replace(hour=10), count=2),
        BusyInterval(start=day.replace(hour=9), end=day.replace(hour=11), count=1),
        BusyInterval(start=day.replace(hour=12), end=day.replace(hour=13), count=1),
    ]
    info = calculate_peak_concurrent(busy, max_capacity=4)
    assert info.peak_existing == 3
    assert info.remaining_capacity == 1


def test_peak_concurrency_counts_back_to_back_as_overlapping():
    day = datetime(2026, 2, 5)
    busy = [
        BusyInterval(start=day.replace(hour=8), end=day.replace(hour=9)),
        BusyInterval(start=day.replace(hour=9), end=day.replace(hour=10)),
    ]
    info = calculate_peak_concurrent(busy, max_capacity=1)
    assert info.peak_existing == 2
    assert info.remaining_capacity == 0
