from .availability import (
    DayOfWeek,
    DaySchedule,
    ExceptionType,
    FacilityAvailabilitySchedule,
    LegacyAvailability,
    ScheduleException,
    TimeBlock,
    WeeklySchedule,
)
from .base import WireDateTime, WireModel
from .selection import (
    CompleteTurnResult,
    ComputedTurnOrder,
    CreateSelectionProcessInput,
    ScheduleSlot,
    SelectionAlgorithm,
    SelectionEntry,
    SelectionHistoryTurn,
    SelectionMember,
    SelectionProcess,
    SelectionProcessHistory,
    SelectionProcessStatus,
    SelectionProcessSummary,
    SelectionTurn,
    SelectionTurnStatus,
    SuggestedSlot,
    TurnOrderMetadata,
)

__all__ = [
    "CompleteTurnResult",
    "ComputedTurnOrder",
    "CreateSelectionProcessInput",
    "DayOfWeek",
    "DaySchedule",
    "ExceptionType",
    "FacilityAvailabilitySchedule",
    "LegacyAvailability",
    "ScheduleException",
    "ScheduleSlot",
    "SelectionAlgorithm",
    "SelectionEntry",
    "SelectionHistoryTurn",
    "SelectionMember",
    "SelectionProcess",
    "SelectionProcessHistory",
    "SelectionProcessStatus",
    "SelectionProcessSummary",
    "SelectionTurn",
    "SelectionTurnStatus",
    "SuggestedSlot",
    "TimeBlock",
    "TurnOrderMetadata",
    "WeeklySchedule",
    "WireDateTime",
    "WireModel",
]
