"""
Facility availability schemas.

Layered schedule persisted on a facility: weekly default blocks, optional
per-weekday overrides, and dated exceptions. Field formats are deliberately
loose strings here; ``availability.validate_schedule`` reports problems as data
so an editing UI can show all of them at once.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import ConfigDict, Field

from .base import WireDateTime, WireModel


class DayOfWeek(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


class ExceptionType(str, Enum):
    CLOSED = "closed"
    MODIFIED = "modified"


class TimeBlock(WireModel):
    """Open window within a day, "HH:mm" to "HH:mm"."""

    model_config = ConfigDict(frozen=True)

    start: str = Field(alias="from")
    end: str = Field(alias="to")


class DaySchedule(WireModel):
    """Per-weekday override. Empty ``time_blocks`` means "use the weekly default"."""

    available: bool = True
    time_blocks: List[TimeBlock] = Field(default_factory=list)


class WeeklySchedule(WireModel):
    default_time_blocks: List[TimeBlock] = Field(default_factory=list)
    days: Dict[DayOfWeek, DaySchedule] = Field(default_factory=dict)


class ScheduleException(WireModel):
    """Dated override; ``date`` is a "YYYY-MM-DD" key in the facility's calendar."""

    date: str
    type: ExceptionType
    time_blocks: List[TimeBlock] = Field(default_factory=list)
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[WireDateTime] = None


class FacilityAvailabilitySchedule(WireModel):
    weekly_schedule: WeeklySchedule
    exceptions: List[ScheduleException] = Field(default_factory=list)


class LegacyAvailability(WireModel):
    """Pre-schedule flat shape still present on older facility documents."""

    available_from: str = "08:00"
    available_to: str = "20:00"
    days_available: Dict[DayOfWeek, bool] = Field(default_factory=dict)
