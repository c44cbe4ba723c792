"""
Selection process ("rutinval") schemas.

Mirrors the backend's selection-process resource. Turn order and capacity are
server-arbitrated, so these models are snapshots of canonical state rather
than something the client edits in place.
"""

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from .base import WireDateTime, WireModel


class SelectionProcessStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SelectionProcessStatus.COMPLETED, SelectionProcessStatus.CANCELLED)


class SelectionTurnStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class SelectionAlgorithm(str, Enum):
    """How the turn order was computed; absent on legacy processes (manual)."""

    MANUAL = "manual"
    QUOTA_BASED = "quota_based"
    POINTS_BALANCE = "points_balance"
    FAIR_ROTATION = "fair_rotation"


class SelectionMember(WireModel):
    user_id: str
    user_name: str
    user_email: Optional[str] = None


class SelectionTurn(WireModel):
    user_id: str
    user_name: str
    user_email: Optional[str] = None
    order: int = Field(ge=1)
    status: SelectionTurnStatus = SelectionTurnStatus.PENDING
    selections_count: int = 0
    completed_at: Optional[WireDateTime] = None


class SelectionProcess(WireModel):
    id: str
    organization_id: Optional[str] = None
    stable_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    status: SelectionProcessStatus = SelectionProcessStatus.DRAFT
    selection_start_date: WireDateTime
    selection_end_date: WireDateTime
    algorithm: Optional[SelectionAlgorithm] = None
    quota_per_member: Optional[int] = None
    turns: List[SelectionTurn] = Field(default_factory=list)
    current_turn_index: int = -1
    current_turn_user_id: Optional[str] = None
    created_at: Optional[WireDateTime] = None
    started_at: Optional[WireDateTime] = None
    completed_at: Optional[WireDateTime] = None

    # Requesting-user context the backend attaches to detail responses.
    is_current_turn: bool = False
    can_manage: bool = False
    user_turn_order: Optional[int] = None
    turns_ahead: int = 0

    @property
    def effective_algorithm(self) -> SelectionAlgorithm:
        return self.algorithm or SelectionAlgorithm.MANUAL

    @property
    def active_turn(self) -> Optional[SelectionTurn]:
        for turn in self.turns:
            if turn.status == SelectionTurnStatus.ACTIVE:
                return turn
        return None


class SelectionProcessSummary(WireModel):
    id: str
    name: str
    status: SelectionProcessStatus
    selection_start_date: WireDateTime
    selection_end_date: WireDateTime
    total_members: int = 0
    completed_turns: int = 0
    current_turn_user_name: Optional[str] = None
    is_current_turn: bool = False
    created_at: Optional[WireDateTime] = None


class CompleteTurnResult(WireModel):
    success: bool = True
    next_turn_user_id: Optional[str] = None
    next_turn_user_name: Optional[str] = None
    process_completed: bool = False


class SelectionEntry(WireModel):
    """What a member picked during their turn."""

    id: str
    routine_instance_id: str
    selected_by: str
    selected_by_name: Optional[str] = None
    turn_order: int = 0
    routine_template_name: Optional[str] = None
    scheduled_date: WireDateTime
    selected_at: WireDateTime
    points_value: Optional[int] = None


class SelectionHistoryTurn(WireModel):
    user_id: str
    user_name: str
    order: int = Field(ge=1)
    selections_count: int = 0
    total_points_picked: float = 0


class SelectionProcessHistory(WireModel):
    """Final turn order of a completed process, the input to rotation algorithms."""

    process_id: str
    process_name: str = ""
    stable_id: Optional[str] = None
    algorithm: SelectionAlgorithm = SelectionAlgorithm.MANUAL
    final_turn_order: List[SelectionHistoryTurn] = Field(default_factory=list)
    completed_at: Optional[WireDateTime] = None


class TurnOrderMetadata(WireModel):
    quota_per_member: Optional[float] = None
    total_available_points: Optional[float] = None
    previous_process_id: Optional[str] = None
    previous_process_name: Optional[str] = None
    # Keyed by user id.
    member_points_map: Optional[Dict[str, float]] = None


class ComputedTurnOrder(WireModel):
    turns: List[SelectionMember] = Field(default_factory=list)
    algorithm: SelectionAlgorithm = SelectionAlgorithm.MANUAL
    metadata: TurnOrderMetadata = Field(default_factory=TurnOrderMetadata)


class CreateSelectionProcessInput(WireModel):
    organization_id: str
    stable_id: str
    name: str
    description: Optional[str] = None
    selection_start_date: date
    selection_end_date: date
    algorithm: Optional[SelectionAlgorithm] = None
    member_order: List[SelectionMember] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_period(self) -> "CreateSelectionProcessInput":
        if self.selection_start_date >= self.selection_end_date:
            raise ValueError("selection_start_date must be before selection_end_date")
        return self


class ScheduleSlot(WireModel):
    """
    A routine instance as a selection candidate.

    Routine-instance payloads carry ``scheduledDate``/``assignedTo``/
    ``assignedToName``/``templateName``; they are folded into the canonical
    ``time``/``assignee_id``/``assignee``/``title`` fields on the way in.
    """

    id: str
    title: str = ""
    time: WireDateTime
    scheduled_start_time: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee: Optional[str] = None
    status: Optional[str] = None
    points_value: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_routine_instance(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("title"):
            data["title"] = data.get("templateName") or data.get("name") or ""
        if data.get("time") is None:
            data["time"] = data.get("date") or data.get("scheduledDate")
        if data.get("assigneeId") is None and data.get("assignee_id") is None:
            data["assigneeId"] = data.get("assignedTo")
        if data.get("assignee") is None:
            data["assignee"] = data.get("assignedToName")
        for raw in ("templateName", "date", "scheduledDate", "assignedTo", "assignedToName"):
            data.pop(raw, None)
        return data

    @property
    def is_assigned(self) -> bool:
        return bool(self.assignee_id)


class SuggestedSlot(WireModel):
    start_time: WireDateTime
    end_time: WireDateTime
    remaining_capacity: int = 0


__all__ = [
    "CompleteTurnResult",
    "ComputedTurnOrder",
    "CreateSelectionProcessInput",
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
    "TurnOrderMetadata",
]

