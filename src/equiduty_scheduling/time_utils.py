"""
Time and date helpers shared by the availability resolver and selection engine.

"HH:mm" strings are the unit of facility schedules; dates cross the wire as
ISO 8601 strings or Firestore timestamp objects and are normalized here once.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import re
from typing import Any, List, Union

import pytz

from .errors import InvalidFormatError

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Index matches date.weekday(): Monday == 0.
DAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

DateLike = Union[date, datetime]


def is_valid_time(value: Any) -> bool:
    return isinstance(value, str) and TIME_PATTERN.fullmatch(value) is not None


def time_to_minutes(value: str) -> int:
    """
    Convert a validated "HH:mm" string to minutes since midnight.

    Raises:
        InvalidFormatError: if the string is not a valid "HH:mm" time.
    """
    if not is_valid_time(value):
        raise InvalidFormatError(value, "HH:mm")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def format_hhmm(value: Union[datetime, time]) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def combine(day: date, hhmm: str, tzinfo: Any = None) -> datetime:
    """
    Build a datetime at ``hhmm`` on ``day`` (naive unless ``tzinfo`` is given).

    pytz zones are applied with ``localize``.
    """
    minutes = time_to_minutes(hhmm)
    naive = datetime(day.year, day.month, day.day, minutes // 60, minutes % 60)
    if tzinfo is None:
        return naive
    if hasattr(tzinfo, "localize"):
        return tzinfo.localize(naive)
    return naive.replace(tzinfo=tzinfo)


def is_valid_date_key(value: Any) -> bool:
    if not isinstance(value, str) or DATE_KEY_PATTERN.fullmatch(value) is None:
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_date_key(value: str) -> date:
    if not is_valid_date_key(value):
        raise InvalidFormatError(value, "YYYY-MM-DD")
    return date.fromisoformat(value)


def calendar_date(value: DateLike) -> date:
    """Reduce a date or datetime to its own wall-clock calendar date."""
    if isinstance(value, datetime):
        return value.date()
    return value


def format_date_key(value: DateLike) -> str:
    return calendar_date(value).isoformat()


def weekday_name(value: DateLike) -> str:
    return DAY_NAMES[calendar_date(value).weekday()]


def week_start(value: DateLike) -> date:
    """Monday of the week containing ``value``."""
    day = calendar_date(value)
    return day - timedelta(days=day.weekday())


def week_dates(value: DateLike) -> List[date]:
    monday = week_start(value)
    return [monday + timedelta(days=offset) for offset in range(7)]


def date_range(start: DateLike, end: DateLike) -> List[date]:
    """Inclusive list of calendar dates from ``start`` to ``end``."""
    first, last = calendar_date(start), calendar_date(end)
    if last < first:
        return []
    return [first + timedelta(days=offset) for offset in range((last - first).days + 1)]


def resolve_timezone(timezone_name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(timezone_name)
    except pytz.UnknownTimeZoneError as exc:
        raise InvalidFormatError(timezone_name, "IANA timezone name") from exc


def to_facility_date(moment: datetime, timezone_name: str) -> date:
    """
    Calendar date of ``moment`` in the facility's timezone.

    Naive datetimes are treated as UTC.
    """
    facility_tz = resolve_timezone(timezone_name)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(facility_tz).date()


def round_to_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def _from_epoch(seconds: float, nanoseconds: int = 0) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=nanoseconds // 1000)


def parse_wire_datetime(value: Any) -> datetime:
    """
    Parse a date/time as the backend sends it.

    Accepts ISO 8601 strings (with or without fractional seconds, "Z" or an
    offset, or a bare "YYYY-MM-DD"), Firestore timestamp objects in both the
    ``{_seconds, _nanoseconds}`` and ``{type, seconds, nanoseconds}`` shapes,
    Unix seconds, and datetime/date instances. Naive results are assumed UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, bool):
        raise InvalidFormatError(value, "ISO 8601 datetime")
    elif isinstance(value, (int, float)):
        return _from_epoch(float(value))
    elif isinstance(value, dict):
        if "_seconds" in value:
            return _from_epoch(int(value["_seconds"]), int(value.get("_nanoseconds") or 0))
        if "seconds" in value:
            return _from_epoch(int(value["seconds"]), int(value.get("nanoseconds") or 0))
        raise InvalidFormatError(value, "Firestore timestamp")
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidFormatError(value, "ISO 8601 datetime") from exc
    else:
        raise InvalidFormatError(value, "ISO 8601 datetime")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_iso8601(value: datetime) -> str:
    """Emit UTC ISO 8601 with a trailing "Z"; naive values are assumed UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    timespec = "milliseconds" if value.microsecond else "seconds"
    return value.isoformat(timespec=timespec).replace("+00:00", "Z")
