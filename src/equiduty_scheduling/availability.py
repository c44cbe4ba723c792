"""
Facility availability resolver.

Pure functions over ``FacilityAvailabilitySchedule``:

- resolve the open time blocks for a date (exception > day override > weekly default)
- check whether a time range fits inside one open block
- validate time blocks and whole schedules, returning problems as data
- add or remove single dated exceptions
- upgrade legacy ``availableFrom/availableTo/daysAvailable`` documents

Date handling follows the caller's calendar: a ``date`` is used as-is and a
``datetime`` is reduced to its own wall-clock date. Callers holding UTC
instants convert with ``time_utils.to_facility_date`` first.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import ScheduleErrorKind, ScheduleExceptionNotFoundError, ValidationFailedError
from .schemas.availability import (
    DayOfWeek,
    DaySchedule,
    ExceptionType,
    FacilityAvailabilitySchedule,
    LegacyAvailability,
    ScheduleException,
    TimeBlock,
    WeeklySchedule,
)
from .time_utils import (
    DateLike,
    calendar_date,
    combine,
    format_date_key,
    format_hhmm,
    is_valid_date_key,
    is_valid_time,
    parse_date_key,
    round_to_minute,
    time_to_minutes,
    week_dates,
    weekday_name,
)

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIME = "08:00"
DEFAULT_CLOSE_TIME = "20:00"
MAX_TIME_BLOCKS = 5
MAX_SCHEDULE_EXCEPTIONS = 365
MAX_EXCEPTION_REASON_LENGTH = 500

OpenSlot = Tuple[datetime, datetime]

_ISSUE_MESSAGES: Dict[ScheduleErrorKind, str] = {
    ScheduleErrorKind.TOO_MANY_BLOCKS: "Too many time blocks",
    ScheduleErrorKind.INVALID_TIME_FORMAT: "Times must use HH:mm",
    ScheduleErrorKind.FROM_BEFORE_TO: "Start time must be before end time",
    ScheduleErrorKind.OVERLAPPING_BLOCKS: "Time blocks overlap",
    ScheduleErrorKind.DEFAULT_BLOCKS_REQUIRED: "At least one default time block is required",
    ScheduleErrorKind.NO_AVAILABLE_DAYS: "At least one day must be available",
    ScheduleErrorKind.TOO_MANY_EXCEPTIONS: "Too many schedule exceptions",
    ScheduleErrorKind.INVALID_DATE_FORMAT: "Exception date must use YYYY-MM-DD",
    ScheduleErrorKind.DUPLICATE_EXCEPTION_DATE: "Only one exception per date is allowed",
    ScheduleErrorKind.CLOSED_EXCEPTION_HAS_BLOCKS: "Closed days cannot have time blocks",
    ScheduleErrorKind.MODIFIED_EXCEPTION_REQUIRES_BLOCKS: "Modified hours need at least one time block",
    ScheduleErrorKind.REASON_TOO_LONG: f"Reason must be {MAX_EXCEPTION_REASON_LENGTH} characters or fewer",
}


@dataclass(frozen=True)
class ScheduleIssue:
    """One finding from ``validate_schedule``, tagged with where it was found."""

    kind: ScheduleErrorKind
    message: str
    day: Optional[DayOfWeek] = None
    date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.day is not None:
            payload["day"] = self.day.value
        if self.date is not None:
            payload["date"] = self.date
        return payload


@dataclass(frozen=True)
class BusyInterval:
    """An existing reservation or claim occupying ``count`` units of capacity."""

    start: datetime
    end: datetime
    count: int = 1
    ref: Optional[str] = None


@dataclass(frozen=True)
class CapacityInfo:
    peak_existing: int
    remaining_capacity: int


def _issue(
    kind: ScheduleErrorKind,
    *,
    prefix: str = "",
    day: Optional[DayOfWeek] = None,
    date_key: Optional[str] = None,
) -> ScheduleIssue:
    message = _ISSUE_MESSAGES[kind]
    if prefix:
        message = f"{prefix}: {message}"
    return ScheduleIssue(kind=kind, message=message, day=day, date=date_key)


def create_default_schedule() -> FacilityAvailabilitySchedule:
    """08:00-20:00 every day; used when a facility has no stored schedule."""
    return FacilityAvailabilitySchedule(
        weekly_schedule=WeeklySchedule(
            default_time_blocks=[TimeBlock(start=DEFAULT_OPEN_TIME, end=DEFAULT_CLOSE_TIME)],
            days={day: DaySchedule(available=True) for day in DayOfWeek},
        ),
        exceptions=[],
    )


def find_exception(
    schedule: FacilityAvailabilitySchedule, day: DateLike
) -> Optional[ScheduleException]:
    key = format_date_key(day)
    for exception in schedule.exceptions:
        if exception.date == key:
            return exception
    return None


def get_effective_time_blocks(
    schedule: FacilityAvailabilitySchedule, day: DateLike
) -> List[TimeBlock]:
    """
    Resolve the open blocks for ``day``.

    Priority: dated exception, then the weekday override, then the weekly
    default. An empty list means the facility is closed that day.
    """
    exception = find_exception(schedule, day)
    if exception is not None:
        if exception.type == ExceptionType.CLOSED:
            return []
        return list(exception.time_blocks)

    weekly = schedule.weekly_schedule
    override = weekly.days.get(DayOfWeek(weekday_name(day)))
    if override is not None:
        if not override.available:
            return []
        if override.time_blocks:
            return list(override.time_blocks)
    return list(weekly.default_time_blocks)


def get_week_time_blocks(
    schedule: FacilityAvailabilitySchedule, day: DateLike
) -> Dict[date, List[TimeBlock]]:
    """Effective blocks for each day of the Monday-based week containing ``day``."""
    return {current: get_effective_time_blocks(schedule, current) for current in week_dates(day)}


def is_time_range_available(blocks: Sequence[TimeBlock], start_time: str, end_time: str) -> bool:
    """
    True iff ``[start_time, end_time)`` sits entirely inside a single block.

    A range that spans two adjacent blocks, or has zero/negative length, is
    not available.
    """
    start = time_to_minutes(start_time)
    end = time_to_minutes(end_time)
    if end <= start:
        return False
    for block in blocks:
        if not (is_valid_time(block.start) and is_valid_time(block.end)):
            logger.warning("invalid_time_block_skipped from=%s to=%s", block.start, block.end)
            continue
        if time_to_minutes(block.start) <= start and end <= time_to_minutes(block.end):
            return True
    return False


def validate_business_hours(
    schedule: FacilityAvailabilitySchedule, start: datetime, end: datetime
) -> bool:
    """Whether a same-day ``start``-``end`` booking falls within open hours."""
    if calendar_date(start) != calendar_date(end):
        return False
    blocks = get_effective_time_blocks(schedule, start)
    if not blocks:
        return False
    return is_time_range_available(blocks, format_hhmm(start), format_hhmm(end))


def validate_time_blocks(
    blocks: Sequence[TimeBlock], max_blocks: int = MAX_TIME_BLOCKS
) -> List[ScheduleErrorKind]:
    """
    Validate one list of blocks, reporting only the first failing category.

    Order: too many blocks, bad format, from >= to, overlap (after sorting by
    start). Touching blocks ("08:00-12:00", "12:00-14:00") do not overlap.
    """
    if len(blocks) > max_blocks:
        return [ScheduleErrorKind.TOO_MANY_BLOCKS]
    if any(not is_valid_time(b.start) or not is_valid_time(b.end) for b in blocks):
        return [ScheduleErrorKind.INVALID_TIME_FORMAT]
    # Zero-padded HH:mm compares correctly as strings.
    if any(b.start >= b.end for b in blocks):
        return [ScheduleErrorKind.FROM_BEFORE_TO]
    ordered = sorted(blocks, key=lambda b: b.start)
    for previous, current in zip(ordered, ordered[1:]):
        if current.start < previous.end:
            return [ScheduleErrorKind.OVERLAPPING_BLOCKS]
    return []


def _day_is_available(weekly: WeeklySchedule, day: DayOfWeek) -> bool:
    override = weekly.days.get(day)
    return override is None or override.available


def validate_schedule(
    schedule: FacilityAvailabilitySchedule,
    *,
    max_blocks: int = MAX_TIME_BLOCKS,
    max_exceptions: int = MAX_SCHEDULE_EXCEPTIONS,
) -> List[ScheduleIssue]:
    """
    Validate a whole schedule and return every problem found.

    Unlike ``validate_time_blocks`` this does not stop at the first finding.
    """
    issues: List[ScheduleIssue] = []
    weekly = schedule.weekly_schedule

    if not weekly.default_time_blocks:
        issues.append(_issue(ScheduleErrorKind.DEFAULT_BLOCKS_REQUIRED))
    else:
        for kind in validate_time_blocks(weekly.default_time_blocks, max_blocks):
            issues.append(_issue(kind, prefix="Default hours"))

    if not any(_day_is_available(weekly, day) for day in DayOfWeek):
        issues.append(_issue(ScheduleErrorKind.NO_AVAILABLE_DAYS))

    for day in DayOfWeek:
        override = weekly.days.get(day)
        if override is None or not override.available or not override.time_blocks:
            continue
        for kind in validate_time_blocks(override.time_blocks, max_blocks):
            issues.append(_issue(kind, prefix=day.value.capitalize(), day=day))

    if len(schedule.exceptions) > max_exceptions:
        issues.append(_issue(ScheduleErrorKind.TOO_MANY_EXCEPTIONS))

    seen_dates = set()
    for exception in schedule.exceptions:
        key = exception.date
        if is_valid_date_key(key) and key in seen_dates:
            issues.append(_issue(ScheduleErrorKind.DUPLICATE_EXCEPTION_DATE, prefix=key, date_key=key))
        seen_dates.add(key)
        issues.extend(validate_exception(exception, max_blocks=max_blocks))

    if issues:
        logger.debug("schedule_validation_failed count=%d", len(issues))
    return issues


def validate_exception(
    exception: ScheduleException, *, max_blocks: int = MAX_TIME_BLOCKS
) -> List[ScheduleIssue]:
    """Problems with a single dated exception, independent of the schedule it joins."""
    key = exception.date
    issues: List[ScheduleIssue] = []
    if not is_valid_date_key(key):
        issues.append(_issue(ScheduleErrorKind.INVALID_DATE_FORMAT, prefix=str(key), date_key=key))

    if exception.type == ExceptionType.CLOSED:
        if exception.time_blocks:
            issues.append(_issue(ScheduleErrorKind.CLOSED_EXCEPTION_HAS_BLOCKS, prefix=key, date_key=key))
    elif not exception.time_blocks:
        issues.append(_issue(ScheduleErrorKind.MODIFIED_EXCEPTION_REQUIRES_BLOCKS, prefix=key, date_key=key))
    else:
        for kind in validate_time_blocks(exception.time_blocks, max_blocks):
            issues.append(_issue(kind, prefix=key, date_key=key))

    if exception.reason and len(exception.reason) > MAX_EXCEPTION_REASON_LENGTH:
        issues.append(_issue(ScheduleErrorKind.REASON_TOO_LONG, prefix=key, date_key=key))
    return issues


def normalize_exception(exception: ScheduleException) -> ScheduleException:
    """Closed days carry no blocks; any that were sent are dropped."""
    if exception.type == ExceptionType.CLOSED and exception.time_blocks:
        return exception.model_copy(update={"time_blocks": []})
    return exception


def add_exception(
    schedule: FacilityAvailabilitySchedule,
    exception: ScheduleException,
    *,
    max_blocks: int = MAX_TIME_BLOCKS,
    max_exceptions: int = MAX_SCHEDULE_EXCEPTIONS,
) -> FacilityAvailabilitySchedule:
    """
    Return a copy of ``schedule`` with ``exception`` appended.

    Raises:
        ValidationFailedError: if the exception is malformed, its date already
            has an exception, or the schedule is at ``max_exceptions``.
    """
    exception = normalize_exception(exception)
    issues = validate_exception(exception, max_blocks=max_blocks)
    key = exception.date
    if any(existing.date == key for existing in schedule.exceptions):
        issues.append(_issue(ScheduleErrorKind.DUPLICATE_EXCEPTION_DATE, prefix=key, date_key=key))
    if len(schedule.exceptions) >= max_exceptions:
        issues.append(_issue(ScheduleErrorKind.TOO_MANY_EXCEPTIONS))
    if issues:
        raise ValidationFailedError(issues)
    return schedule.model_copy(update={"exceptions": [*schedule.exceptions, exception]})


def remove_exception(
    schedule: FacilityAvailabilitySchedule, day: Union[DateLike, str]
) -> FacilityAvailabilitySchedule:
    """Return a copy of ``schedule`` without the exception for ``day``."""
    key = format_date_key(parse_date_key(day) if isinstance(day, str) else day)
    remaining = [exception for exception in schedule.exceptions if exception.date != key]
    if len(remaining) == len(schedule.exceptions):
        raise ScheduleExceptionNotFoundError(key)
    return schedule.model_copy(update={"exceptions": remaining})


def migrate_legacy_availability(legacy: LegacyAvailability) -> FacilityAvailabilitySchedule:
    """
    Upgrade a flat legacy availability document to the layered schedule.

    The legacy range becomes the only default block and each legacy day flag
    becomes an override without custom blocks, so open days inherit the
    default. An empty ``days_available`` map means every day is open; when
    the map is present, unlisted days are closed.
    """
    all_open = not legacy.days_available
    days = {
        day: DaySchedule(available=bool(legacy.days_available.get(day, all_open)), time_blocks=[])
        for day in DayOfWeek
    }
    logger.info(
        "legacy_availability_migrated from=%s to=%s open_days=%d",
        legacy.available_from,
        legacy.available_to,
        sum(1 for d in days.values() if d.available),
    )
    return FacilityAvailabilitySchedule(
        weekly_schedule=WeeklySchedule(
            default_time_blocks=[TimeBlock(start=legacy.available_from, end=legacy.available_to)],
            days=days,
        ),
        exceptions=[],
    )


def find_conflicts(
    start: datetime,
    end: datetime,
    busy: Iterable[BusyInterval],
    exclude_ref: Optional[str] = None,
) -> List[BusyInterval]:
    """Busy intervals overlapping ``[start, end)``, compared at minute precision."""
    start_rounded = round_to_minute(start)
    end_rounded = round_to_minute(end)
    conflicts = []
    for interval in busy:
        if exclude_ref is not None and interval.ref == exclude_ref:
            continue
        if start_rounded < round_to_minute(interval.end) and end_rounded > round_to_minute(interval.start):
            conflicts.append(interval)
    return conflicts


def calculate_peak_concurrent(busy: Iterable[BusyInterval], max_capacity: int) -> CapacityInfo:
    """
    Peak concurrent usage across ``busy`` via a start/end sweep.

    Display-only estimate; the backend performs the authoritative check on claim.
    """
    events: List[Tuple[datetime, int]] = []
    for interval in busy:
        if interval.count <= 0:
            continue
        events.append((interval.start, interval.count))
        events.append((interval.end, -interval.count))

    # Starts sort before ends at the same instant.
    events.sort(key=lambda event: (event[0], -event[1]))

    current = 0
    peak = 0
    for _, delta in events:
        current += delta
        peak = max(peak, current)
    return CapacityInfo(peak_existing=peak, remaining_capacity=max(0, max_capacity - peak))


def get_available_time_slots(
    blocks: Sequence[TimeBlock],
    day: DateLike,
    slot_minutes: int = 30,
    busy: Iterable[BusyInterval] = (),
    tzinfo: Any = None,
) -> List[OpenSlot]:
    """
    Fixed-length slots inside ``blocks`` on ``day`` that do not collide with ``busy``.

    Slots that would run past the end of their block are dropped.
    """
    if slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")
    busy = list(busy)
    target = calendar_date(day)
    step = timedelta(minutes=slot_minutes)
    slots: List[OpenSlot] = []
    for block in blocks:
        if not (is_valid_time(block.start) and is_valid_time(block.end)):
            logger.warning("invalid_time_block_skipped from=%s to=%s", block.start, block.end)
            continue
        block_start = combine(target, block.start, tzinfo)
        block_end = combine(target, block.end, tzinfo)
        cursor = block_start
        while cursor < block_end:
            slot_end = cursor + step
            if slot_end <= block_end and not find_conflicts(cursor, slot_end, busy):
                slots.append((cursor, slot_end))
            cursor = slot_end
    return slots
