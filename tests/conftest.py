from datetime import datetime, timezone

import pytest
from equiduty_scheduling.config import Settings
from equiduty_scheduling.schemas import (
    DayOfWeek,
    DaySchedule,
    FacilityAvailabilitySchedule,
    ScheduleSlot,
    SelectionProcess,
    SelectionTurn,
    TimeBlock,
    WeeklySchedule,
)

API = "https://api.equiduty.test/api/v1"


@pytest.fixture
def settings(monkeypatch):
    for key in ("EQUIDUTY_API_BASE_URL", "EQUIDUTY_LOG_LEVEL", "EQUIDUTY_FACILITY_TIMEZONE"):
        monkeypatch.delenv(key, raising=False)
    return Settings(api_base_url="https://api.equiduty.test", _env_file=None)


@pytest.fixture
def weekly_schedule():
    return FacilityAvailabilitySchedule(
        weekly_schedule=WeeklySchedule(
            default_time_blocks=[TimeBlock(start="08:00", end="20:00")],
            days={day: DaySchedule(available=True) for day in DayOfWeek},
        )
    )


def make_process(status="draft", turn_statuses=("pending", "pending"), **overrides):
    names = ["A", "B", "C", "D"]
    turns = [
        SelectionTurn(user_id=names[i], user_name=f"User {names[i]}", order=i + 1, status=turn_status)
        for i, turn_status in enumerate(turn_statuses)
    ]
    active = next((t for t in turns if t.status.value == "active"), None)
    data = {
        "id": "proc-1",
        "organization_id": "org-1",
        "stable_id": "stable-1",
        "name": "February rutinval",
        "status": status,
        "selection_start_date": datetime(2026, 2, 1, tzinfo=timezone.utc),
        "selection_end_date": datetime(2026, 2, 28, tzinfo=timezone.utc),
        "turns": turns,
        "current_turn_user_id": active.user_id if active else None,
    }
    data.update(overrides)
    return SelectionProcess(**data)


def make_slot(slot_id="slot-1", when=datetime(2026, 2, 10, 7, 0, tzinfo=timezone.utc), assignee_id=None):
    return ScheduleSlot(id=slot_id, title="Morning feed", time=when, assignee_id=assignee_id)
