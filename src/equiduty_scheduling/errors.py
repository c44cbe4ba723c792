"""
Error taxonomy for the EquiDuty scheduling core.

Validation problems are returned as lists of ``ScheduleErrorKind`` values and
never raised from the validators themselves. Everything else surfaces as a
``SchedulingError`` subclass that carries a message, a stable code and a
details mapping the UI can render.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .availability import ScheduleIssue
    from .schemas.selection import SuggestedSlot


class ScheduleErrorKind(str, Enum):
    """Tags returned by the schedule and time-block validators."""

    TOO_MANY_BLOCKS = "too_many_blocks"
    INVALID_TIME_FORMAT = "invalid_time_format"
    FROM_BEFORE_TO = "from_before_to"
    OVERLAPPING_BLOCKS = "overlapping_blocks"
    DEFAULT_BLOCKS_REQUIRED = "default_blocks_required"
    NO_AVAILABLE_DAYS = "no_available_days"
    TOO_MANY_EXCEPTIONS = "too_many_exceptions"
    INVALID_DATE_FORMAT = "invalid_date_format"
    DUPLICATE_EXCEPTION_DATE = "duplicate_exception_date"
    CLOSED_EXCEPTION_HAS_BLOCKS = "closed_exception_has_blocks"
    MODIFIED_EXCEPTION_REQUIRES_BLOCKS = "modified_exception_requires_blocks"
    REASON_TOO_LONG = "reason_too_long"


class SchedulingError(Exception):
    """Base exception for all scheduling-core errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class InvalidFormatError(SchedulingError, ValueError):
    """Raised for malformed "HH:mm" times, date keys or wire timestamps."""

    def __init__(self, value: Any, expected: str) -> None:
        super().__init__(
            message=f"Invalid format {value!r}, expected {expected}",
            code="INVALID_FORMAT",
            details={"value": str(value), "expected": expected},
        )


class ValidationFailedError(SchedulingError):
    """Raised when a caller insists on submitting an invalid schedule."""

    def __init__(self, issues: Sequence["ScheduleIssue"]) -> None:
        self.issues = list(issues)
        super().__init__(
            message=f"Schedule failed validation with {len(self.issues)} issue(s)",
            code="VALIDATION_FAILED",
            details={"issues": [issue.to_dict() for issue in self.issues]},
        )


class ScheduleExceptionNotFoundError(SchedulingError, LookupError):
    """Raised when removing a schedule exception for a date that has none."""

    def __init__(self, date_key: str) -> None:
        super().__init__(
            message=f"No exception found for {date_key}",
            code="EXCEPTION_NOT_FOUND",
            details={"date": date_key},
        )


class InvalidTransitionError(SchedulingError):
    """Raised when a process or turn operation is not allowed in the current state."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if status is not None:
            details["status"] = status
        if operation is not None:
            details["operation"] = operation
        super().__init__(message=message, code="INVALID_TRANSITION", details=details)


class CapacityExceededError(SchedulingError):
    """Backend rejected a claim because the slot is full.

    Recoverable: the caller shows ``suggested_slots`` and lets the user retry.
    """

    def __init__(
        self,
        message: str,
        *,
        remaining_capacity: Optional[int] = None,
        suggested_slots: Optional[List["SuggestedSlot"]] = None,
    ) -> None:
        self.remaining_capacity = remaining_capacity
        self.suggested_slots = list(suggested_slots or [])
        super().__init__(
            message=message,
            code="CAPACITY_EXCEEDED",
            details={
                "remaining_capacity": remaining_capacity,
                "suggested_slots": [slot.to_wire() for slot in self.suggested_slots],
            },
        )


class BackendError(SchedulingError):
    """Base error for backend request failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message=message, details=details)


class NetworkError(BackendError):
    """Raised when the backend cannot be reached or the request timed out."""


class ServerError(BackendError):
    """Raised for 5xx responses."""


class BadRequestError(BackendError):
    """Raised for 400 and otherwise unmapped 4xx responses."""


class NotFoundError(BackendError):
    """Raised when a backend resource is not found."""


class UnauthorizedError(BackendError):
    """Raised when the backend rejects the bearer token."""


class ForbiddenError(BackendError):
    """Raised when the caller lacks permission for an action."""


class ConflictError(BackendError):
    """Raised for 409 responses that are not capacity conflicts."""
