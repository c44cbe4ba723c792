"""
Selection process ("rutinval") engine.

The module has two layers:

- Pure state-machine functions over ``SelectionProcess`` snapshots. They never
  mutate their input and raise ``InvalidTransitionError`` for illegal moves.
- ``SelectionProcessEngine``, which validates a request locally with those
  functions and then performs exactly one round trip to the backend. The
  backend stays authoritative for turn order and capacity, so the engine
  returns whatever the server reports and never patches state optimistically.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import CapacityExceededError, ForbiddenError, InvalidTransitionError
from .schemas import (
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
    TurnOrderMetadata,
)
from .time_utils import DateLike, calendar_date, format_iso8601, to_facility_date

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class TurnInfo:
    user_id: str
    user_name: str
    order: int
    status: SelectionTurnStatus
    turns_ahead: int
    is_current_turn: bool


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_status(process: SelectionProcess, status: SelectionProcessStatus, operation: str) -> None:
    if process.status != status:
        raise InvalidTransitionError(
            f"Cannot {operation.replace('_', ' ')} while the selection process is {process.status.value}",
            status=process.status.value,
            operation=operation,
        )


def _ordered_turns(process: SelectionProcess) -> List[SelectionTurn]:
    return sorted(process.turns, key=lambda turn: turn.order)


def _check_orders(turns: Sequence[SelectionTurn]) -> None:
    orders = [turn.order for turn in turns]
    if orders != list(range(1, len(turns) + 1)):
        raise InvalidTransitionError(f"Turn orders must be 1..{len(turns)} without gaps, got {orders}")


def _active_index(turns: Sequence[SelectionTurn]) -> Optional[int]:
    for index, turn in enumerate(turns):
        if turn.status == SelectionTurnStatus.ACTIVE:
            return index
    return None


def _to_instant(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _local_day(value: DateLike, timezone_name: Optional[str]) -> date:
    if timezone_name and isinstance(value, datetime):
        return to_facility_date(value, timezone_name)
    return calendar_date(value)


def create_turns_from_member_order(members: Iterable[SelectionMember]) -> List[SelectionTurn]:
    """Pending turns numbered 1..n in the given member order."""
    return [
        SelectionTurn(
            user_id=member.user_id,
            user_name=member.user_name,
            user_email=member.user_email,
            order=index,
        )
        for index, member in enumerate(members, start=1)
    ]


def _by_name(member: SelectionMember) -> Tuple[str, str]:
    return (member.user_name.casefold(), member.user_name)


def _follow_previous_order(members: Sequence[SelectionMember], user_ids: Sequence[str]) -> List[SelectionMember]:
    """Members in ``user_ids`` order; members not listed follow alphabetically."""
    remaining = {member.user_id: member for member in members}
    ordered = []
    for user_id in user_ids:
        member = remaining.pop(user_id, None)
        if member is not None:
            ordered.append(member)
    ordered.extend(sorted(remaining.values(), key=_by_name))
    return ordered


def compute_turn_order(
    algorithm: SelectionAlgorithm,
    members: Sequence[SelectionMember],
    *,
    history: Optional[SelectionProcessHistory] = None,
    points: Optional[Mapping[str, float]] = None,
    total_available_points: float = 0,
) -> ComputedTurnOrder:
    """
    Order ``members`` for a new process.

    - manual: the given order.
    - quota_based: the previous process' order reversed, or alphabetical
      without history. The available points are split evenly as each
      member's quota.
    - points_balance: fewest ``points`` first, ties alphabetical.
    - fair_rotation: the previous order shifted by one so the first member
      moves to the end, or alphabetical without history.

    Members missing from ``history`` are appended alphabetically and members
    no longer present are dropped.
    """
    metadata = TurnOrderMetadata()
    previous_ids: List[str] = []
    if history is not None and algorithm in (SelectionAlgorithm.QUOTA_BASED, SelectionAlgorithm.FAIR_ROTATION):
        previous_ids = [turn.user_id for turn in sorted(history.final_turn_order, key=lambda t: t.order)]
        metadata.previous_process_id = history.process_id
        metadata.previous_process_name = history.process_name

    if algorithm == SelectionAlgorithm.QUOTA_BASED:
        ordered = _follow_previous_order(members, previous_ids[::-1])
        metadata.total_available_points = total_available_points
        metadata.quota_per_member = round(total_available_points / len(members), 1) if members else 0
    elif algorithm == SelectionAlgorithm.POINTS_BALANCE:
        balance = {member.user_id: float((points or {}).get(member.user_id, 0)) for member in members}
        ordered = sorted(members, key=lambda member: (balance[member.user_id], *_by_name(member)))
        metadata.member_points_map = balance
    elif algorithm == SelectionAlgorithm.FAIR_ROTATION:
        ordered = _follow_previous_order(members, previous_ids[1:] + previous_ids[:1])
    else:
        ordered = list(members)

    return ComputedTurnOrder(turns=ordered, algorithm=algorithm, metadata=metadata)


def history_from_process(
    process: SelectionProcess, selections: Iterable[SelectionEntry] = ()
) -> SelectionProcessHistory:
    """Snapshot a completed process' final turn order for the next rotation."""
    if process.status != SelectionProcessStatus.COMPLETED:
        raise InvalidTransitionError(
            "Only a completed selection process has a final turn order",
            status=process.status.value,
            operation="history",
        )
    picked: Dict[str, float] = {}
    for entry in selections:
        picked[entry.selected_by] = picked.get(entry.selected_by, 0) + (entry.points_value or 0)
    return SelectionProcessHistory(
        process_id=process.id,
        process_name=process.name,
        stable_id=process.stable_id,
        algorithm=process.effective_algorithm,
        final_turn_order=[
            SelectionHistoryTurn(
                user_id=turn.user_id,
                user_name=turn.user_name,
                order=turn.order,
                selections_count=turn.selections_count,
                total_points_picked=picked.get(turn.user_id, 0),
            )
            for turn in _ordered_turns(process)
        ],
        completed_at=process.completed_at,
    )


def check_turn_invariants(process: SelectionProcess) -> None:
    """Raise ``InvalidTransitionError`` if the turn list is inconsistent with the process status."""
    turns = _ordered_turns(process)
    _check_orders(turns)
    active = [turn for turn in turns if turn.status == SelectionTurnStatus.ACTIVE]

    if process.status == SelectionProcessStatus.ACTIVE:
        if len(active) != 1:
            raise InvalidTransitionError(
                f"Active process must have exactly one active turn, found {len(active)}",
                status=process.status.value,
            )
        current = active[0]
        for turn in turns:
            if turn.order < current.order and turn.status != SelectionTurnStatus.COMPLETED:
                raise InvalidTransitionError(
                    f"Turn {turn.order} must be completed before turn {current.order} is active",
                    status=process.status.value,
                )
            if turn.order > current.order and turn.status != SelectionTurnStatus.PENDING:
                raise InvalidTransitionError(
                    f"Turn {turn.order} cannot be {turn.status.value} after the active turn",
                    status=process.status.value,
                )
        if process.current_turn_user_id and process.current_turn_user_id != current.user_id:
            raise InvalidTransitionError(
                "currentTurnUserId does not match the active turn", status=process.status.value
            )
    elif active:
        raise InvalidTransitionError(
            f"A {process.status.value} process cannot have an active turn", status=process.status.value
        )

    if process.status == SelectionProcessStatus.COMPLETED and any(
        turn.status != SelectionTurnStatus.COMPLETED for turn in turns
    ):
        raise InvalidTransitionError("Completed process has unfinished turns", status=process.status.value)


def start_process(process: SelectionProcess, now: Optional[datetime] = None) -> SelectionProcess:
    """Fix the turn order and activate turn 1."""
    _require_status(process, SelectionProcessStatus.DRAFT, "start")
    if not process.turns:
        raise InvalidTransitionError(
            "Cannot start a selection process without turns", status=process.status.value, operation="start"
        )
    ordered = _ordered_turns(process)
    _check_orders(ordered)
    turns = [
        turn.model_copy(
            update={
                "status": SelectionTurnStatus.ACTIVE if index == 0 else SelectionTurnStatus.PENDING,
                "completed_at": None,
            }
        )
        for index, turn in enumerate(ordered)
    ]
    return process.model_copy(
        update={
            "status": SelectionProcessStatus.ACTIVE,
            "turns": turns,
            "current_turn_index": 0,
            "current_turn_user_id": turns[0].user_id,
            "started_at": now or _now(),
        }
    )


def complete_turn(process: SelectionProcess, user_id: str, now: Optional[datetime] = None) -> SelectionProcess:
    """Complete ``user_id``'s active turn and hand over to the next one, or finish the process."""
    _require_status(process, SelectionProcessStatus.ACTIVE, "complete_turn")
    turns = _ordered_turns(process)
    index = _active_index(turns)
    if index is None or turns[index].user_id != user_id:
        raise InvalidTransitionError(
            "It is not this user's turn", status=process.status.value, operation="complete_turn"
        )

    moment = now or _now()
    updated = list(turns)
    updated[index] = turns[index].model_copy(
        update={"status": SelectionTurnStatus.COMPLETED, "completed_at": moment}
    )

    next_index = next(
        (i for i in range(index + 1, len(turns)) if turns[i].status == SelectionTurnStatus.PENDING),
        None,
    )
    if next_index is None:
        return process.model_copy(
            update={
                "turns": updated,
                "status": SelectionProcessStatus.COMPLETED,
                "current_turn_index": -1,
                "current_turn_user_id": None,
                "completed_at": moment,
            }
        )

    updated[next_index] = turns[next_index].model_copy(update={"status": SelectionTurnStatus.ACTIVE})
    return process.model_copy(
        update={
            "turns": updated,
            "current_turn_index": next_index,
            "current_turn_user_id": turns[next_index].user_id,
        }
    )


def cancel_process(process: SelectionProcess) -> SelectionProcess:
    _require_status(process, SelectionProcessStatus.ACTIVE, "cancel")
    return process.model_copy(
        update={
            "status": SelectionProcessStatus.CANCELLED,
            "current_turn_index": -1,
            "current_turn_user_id": None,
            "turns": [
                turn.model_copy(update={"status": SelectionTurnStatus.PENDING})
                if turn.status == SelectionTurnStatus.ACTIVE
                else turn
                for turn in process.turns
            ],
        }
    )


def ensure_deletable(process: SelectionProcess) -> None:
    if process.status != SelectionProcessStatus.DRAFT and not process.status.is_terminal:
        raise InvalidTransitionError(
            f"Cannot delete a {process.status.value} selection process; cancel it first",
            status=process.status.value,
            operation="delete",
        )


def changed_dates(
    process: SelectionProcess,
    new_start: Optional[DateLike] = None,
    new_end: Optional[DateLike] = None,
    today: Optional[date] = None,
) -> Dict[str, str]:
    """
    Wire payload holding only the window dates that actually change.

    An empty dict means there is nothing to send. When ``today`` is given,
    a changed date before it is rejected.
    """
    _require_status(process, SelectionProcessStatus.ACTIVE, "update_dates")

    changes: Dict[str, str] = {}
    start = process.selection_start_date
    end = process.selection_end_date
    if new_start is not None and _to_instant(new_start) != start:
        start = _to_instant(new_start)
        changes["selectionStartDate"] = format_iso8601(start)
    if new_end is not None and _to_instant(new_end) != end:
        end = _to_instant(new_end)
        changes["selectionEndDate"] = format_iso8601(end)

    if today is not None:
        if "selectionStartDate" in changes and calendar_date(start) < today:
            raise InvalidTransitionError("Start date cannot be in the past", operation="update_dates")
        if "selectionEndDate" in changes and calendar_date(end) < today:
            raise InvalidTransitionError("End date cannot be in the past", operation="update_dates")
    if start >= end:
        raise InvalidTransitionError("Start date must be before end date", operation="update_dates")
    return changes


def in_selection_window(
    process: SelectionProcess, slot: ScheduleSlot, timezone_name: Optional[str] = None
) -> bool:
    """Inclusive calendar-date comparison of the slot against the process window."""
    day = _local_day(slot.time, timezone_name)
    return (
        _local_day(process.selection_start_date, timezone_name)
        <= day
        <= _local_day(process.selection_end_date, timezone_name)
    )


def is_users_turn(process: SelectionProcess, user_id: str) -> bool:
    if process.status != SelectionProcessStatus.ACTIVE:
        return False
    turn = process.active_turn
    return turn is not None and turn.user_id == user_id


def is_selectable(
    process: SelectionProcess,
    user_id: str,
    slot: ScheduleSlot,
    timezone_name: Optional[str] = None,
) -> bool:
    return (
        is_users_turn(process, user_id)
        and not slot.is_assigned
        and in_selection_window(process, slot, timezone_name)
    )


def selectable_slots(
    process: SelectionProcess,
    user_id: str,
    slots: Iterable[ScheduleSlot],
    timezone_name: Optional[str] = None,
) -> List[ScheduleSlot]:
    if not is_users_turn(process, user_id):
        return []
    return [slot for slot in slots if is_selectable(process, user_id, slot, timezone_name)]


def _turn_info(turns: Sequence[SelectionTurn], turn: SelectionTurn, process: SelectionProcess) -> TurnInfo:
    ahead = sum(
        1 for other in turns if other.order < turn.order and other.status != SelectionTurnStatus.COMPLETED
    )
    return TurnInfo(
        user_id=turn.user_id,
        user_name=turn.user_name,
        order=turn.order,
        status=turn.status,
        turns_ahead=ahead,
        is_current_turn=(
            process.status == SelectionProcessStatus.ACTIVE and turn.status == SelectionTurnStatus.ACTIVE
        ),
    )


def get_current_turn_info(process: SelectionProcess) -> Optional[TurnInfo]:
    if process.status != SelectionProcessStatus.ACTIVE:
        return None
    turns = _ordered_turns(process)
    index = _active_index(turns)
    if index is None:
        return None
    return _turn_info(turns, turns[index], process)


def get_user_turn_info(process: SelectionProcess, user_id: str) -> Optional[TurnInfo]:
    turns = _ordered_turns(process)
    for turn in turns:
        if turn.user_id == user_id:
            return _turn_info(turns, turn, process)
    return None


def _require_admin(can_manage: bool, operation: str) -> None:
    if not can_manage:
        logger.warning("selection_admin_required operation=%s", operation)
        raise ForbiddenError(f"Administrator permission required to {operation.replace('_', ' ')}")


class SelectionProcessEngine:
    """Validates selection operations locally, then defers to the backend of record."""

    def __init__(self, client: Any, *, timezone_name: Optional[str] = None) -> None:
        self.client = client
        if timezone_name is None:
            timezone_name = getattr(getattr(client, "settings", None), "facility_timezone", None)
        self.timezone_name = timezone_name

    async def get_process(self, process_id: str) -> SelectionProcess:
        return await self.client.get_process(process_id)

    async def list_processes(
        self,
        stable_id: Optional[str] = None,
        status: Optional[SelectionProcessStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[SelectionProcessSummary]:
        return await self.client.list_processes(
            stable_id=stable_id,
            status=status.value if status is not None else None,
            limit=limit,
            offset=offset,
        )

    async def create_process(
        self, payload: CreateSelectionProcessInput, *, can_manage: bool
    ) -> SelectionProcess:
        _require_admin(can_manage, "create")
        if not payload.member_order:
            raise InvalidTransitionError("A selection process needs at least one member", operation="create")
        process = await self.client.create_process(payload)
        logger.info("selection_process_created process_id=%s members=%d", process.id, len(payload.member_order))
        return process

    async def compute_turn_order(
        self,
        stable_id: str,
        algorithm: SelectionAlgorithm,
        members: Sequence[SelectionMember],
        start: date,
        end: date,
        *,
        can_manage: bool,
    ) -> ComputedTurnOrder:
        """
        Preview the turn order for a new process.

        Manual order is computed locally. The other algorithms need stable
        history and points that only the backend holds.
        """
        _require_admin(can_manage, "compute_turn_order")
        if algorithm == SelectionAlgorithm.MANUAL:
            return compute_turn_order(algorithm, members)
        result = await self.client.compute_turn_order(
            stable_id, algorithm, [member.user_id for member in members], start, end
        )
        logger.info(
            "selection_turn_order_computed stable_id=%s algorithm=%s members=%d",
            stable_id,
            algorithm.value,
            len(result.turns),
        )
        return result

    async def start_process(self, process: SelectionProcess, *, can_manage: bool) -> SelectionProcess:
        _require_admin(can_manage, "start")
        start_process(process)
        result = await self.client.start_process(process.id)
        logger.info("selection_process_started process_id=%s", process.id)
        return result

    async def select_slot(
        self,
        process: SelectionProcess,
        user_id: str,
        slot: ScheduleSlot,
        user_name: Optional[str] = None,
    ) -> ScheduleSlot:
        """
        Claim ``slot`` for ``user_id`` during their turn.

        Raises ``InvalidTransitionError`` without contacting the backend when
        the claim cannot be valid, and ``CapacityExceededError`` when the
        backend rejects it as full. A rejected claim is never retried here.
        """
        _require_status(process, SelectionProcessStatus.ACTIVE, "select_slot")
        turn = process.active_turn
        if turn is None or turn.user_id != user_id:
            raise InvalidTransitionError(
                "It is not this user's turn", status=process.status.value, operation="select_slot"
            )
        if slot.is_assigned:
            raise InvalidTransitionError(f"Slot {slot.id} is already assigned", operation="select_slot")
        if not in_selection_window(process, slot, self.timezone_name):
            raise InvalidTransitionError(
                f"Slot {slot.id} is outside the selection window", operation="select_slot"
            )

        try:
            claimed = await self.client.assign_routine_instance(slot.id, user_id, user_name or turn.user_name)
        except CapacityExceededError as exc:
            logger.info(
                "selection_claim_capacity_exceeded process_id=%s slot_id=%s remaining=%s suggestions=%d",
                process.id,
                slot.id,
                exc.remaining_capacity,
                len(exc.suggested_slots),
            )
            raise
        logger.info("selection_slot_claimed process_id=%s slot_id=%s user_id=%s", process.id, slot.id, user_id)
        return claimed

    async def complete_turn(self, process: SelectionProcess, user_id: str) -> CompleteTurnResult:
        complete_turn(process, user_id)
        result = await self.client.complete_turn(process.id)
        logger.info(
            "selection_turn_completed process_id=%s user_id=%s process_completed=%s",
            process.id,
            user_id,
            result.process_completed,
        )
        return result

    async def update_dates(
        self,
        process: SelectionProcess,
        new_start: Optional[DateLike] = None,
        new_end: Optional[DateLike] = None,
        *,
        can_manage: bool,
        today: Optional[date] = None,
    ) -> SelectionProcess:
        _require_admin(can_manage, "update_dates")
        changes = changed_dates(process, new_start, new_end, today=today)
        if not changes:
            logger.debug("selection_dates_unchanged process_id=%s", process.id)
            return process
        return await self.client.update_process_dates(process.id, changes)

    async def cancel_process(
        self, process: SelectionProcess, *, can_manage: bool, reason: Optional[str] = None
    ) -> SelectionProcess:
        _require_admin(can_manage, "cancel")
        cancel_process(process)
        result = await self.client.cancel_process(process.id, reason=reason)
        logger.info("selection_process_cancelled process_id=%s", process.id)
        return result

    async def delete_process(self, process: SelectionProcess, *, can_manage: bool) -> None:
        _require_admin(can_manage, "delete")
        ensure_deletable(process)
        await self.client.delete_process(process.id)
        logger.info("selection_process_deleted process_id=%s", process.id)

    async def get_available_slots(
        self, process: SelectionProcess, user_id: Optional[str] = None
    ) -> List[ScheduleSlot]:
        """
        Unassigned routine instances inside the window.

        With ``user_id`` the list is further limited to what that user may
        claim right now, which is empty outside their turn.
        """
        if not process.stable_id:
            return []
        slots = await self.client.list_routine_instances(
            process.stable_id,
            _local_day(process.selection_start_date, self.timezone_name),
            _local_day(process.selection_end_date, self.timezone_name),
        )
        if user_id is not None:
            return selectable_slots(process, user_id, slots, self.timezone_name)
        return [
            slot
            for slot in slots
            if not slot.is_assigned and in_selection_window(process, slot, self.timezone_name)
        ]

    async def get_selections(self, process_id: str) -> List[SelectionEntry]:
        return await self.client.get_selections(process_id)
