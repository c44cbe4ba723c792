"""HTTP client for the EquiDuty backend scheduling endpoints."""

from __future__ import annotations

from datetime import date, datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

import httpx

from .availability import (
    BusyInterval,
    OpenSlot,
    create_default_schedule,
    get_available_time_slots,
    get_effective_time_blocks,
    migrate_legacy_availability,
    normalize_exception,
    validate_exception,
    validate_schedule,
)
from .cache import ClientCaches
from .config import Settings
from .errors import (
    BackendError,
    BadRequestError,
    CapacityExceededError,
    ConflictError,
    ForbiddenError,
    NetworkError,
    NotFoundError,
    ServerError,
    UnauthorizedError,
    ValidationFailedError,
)
from .schemas import (
    CompleteTurnResult,
    ComputedTurnOrder,
    CreateSelectionProcessInput,
    FacilityAvailabilitySchedule,
    LegacyAvailability,
    ScheduleException,
    ScheduleSlot,
    SelectionAlgorithm,
    SelectionEntry,
    SelectionProcess,
    SelectionProcessSummary,
    SuggestedSlot,
    TimeBlock,
)
from .time_utils import date_range, format_date_key, format_iso8601, parse_date_key, resolve_timezone

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]

CAPACITY_EXCEEDED_ERROR = "Capacity Exceeded"
_LEGACY_AVAILABILITY_KEYS = ("availableFrom", "availableTo", "daysAvailable")


def _start_of_day_utc(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


def _is_capacity_conflict(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    return (
        body.get("error") == CAPACITY_EXCEEDED_ERROR
        or "remainingCapacity" in body
        or "suggestedSlots" in body
    )


def _capacity_error(body: Dict[str, Any]) -> CapacityExceededError:
    suggestions = []
    for raw in body.get("suggestedSlots") or []:
        try:
            suggestions.append(SuggestedSlot.model_validate(raw))
        except ValueError:
            logger.warning("suggested_slot_unparseable slot=%r", raw)
    remaining = body.get("remainingCapacity")
    return CapacityExceededError(
        _error_message(body, "Slot is at capacity"),
        remaining_capacity=int(remaining) if isinstance(remaining, (int, float)) else None,
        suggested_slots=suggestions,
    )


class SchedulingClient:
    """HTTP client for the EquiDuty backend API."""

    def __init__(
        self,
        settings: Settings,
        token_provider: Optional[TokenProvider] = None,
        http: Optional[httpx.AsyncClient] = None,
        caches: Optional[ClientCaches] = None,
        organization_id: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.token_provider = token_provider
        self.caches = caches or ClientCaches.from_settings(settings)
        # Organization whose permission/subscription caches a 401/403 invalidates.
        self.organization_id = organization_id
        self.http = http or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=httpx.Timeout(
                connect=settings.request_timeout_connect,
                read=settings.request_timeout_read,
                write=settings.request_timeout_write,
                pool=settings.request_timeout_pool,
            ),
        )

    async def __aenter__(self) -> "SchedulingClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    def _url(self, path: str) -> str:
        return f"{self.settings.api_prefix}{path}"

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float | httpx.Timeout] = None,
    ) -> Any:
        request_headers: Dict[str, str] = {"Accept": "application/json"}
        if self.token_provider is not None:
            token = await self.token_provider()
            if token:
                request_headers["Authorization"] = f"Bearer {token}"
        if headers:
            request_headers.update(headers)
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        url = self._url(path)
        request_kwargs: Dict[str, Any] = {"params": params or None, "json": json, "headers": request_headers}
        if timeout is not None:
            request_kwargs["timeout"] = timeout
        try:
            response = await self.http.request(method, url, **request_kwargs)
        except httpx.TimeoutException as exc:
            if isinstance(timeout, (int, float)):
                timeout_value: Optional[float] = float(timeout)
            elif isinstance(timeout, httpx.Timeout):
                timeout_value = timeout.read
            else:
                timeout_value = self.http.timeout.read
            if timeout_value is not None:
                message = f"backend_timeout: Request to {path} timed out after {timeout_value}s"
            else:
                message = f"backend_timeout: Request to {path} timed out"
            raise NetworkError(message) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"backend_connection_failed: {exc}") from exc

        status = response.status_code
        if status == 204 or not response.content:
            if status >= 400:
                self._raise_for_status(status, None, path)
            return None

        try:
            body = response.json()
        except ValueError:
            body = {"status_code": status, "text": response.text}

        if status >= 400:
            self._raise_for_status(status, body, path)
        return body

    def _raise_for_status(self, status: int, body: Any, path: str) -> None:
        details = body if isinstance(body, dict) else {}
        if status in {401, 403}:
            self.caches.invalidate_organization(self.organization_id)
            logger.warning("backend_auth_rejected status=%s path=%s", status, path)
            error_cls = UnauthorizedError if status == 401 else ForbiddenError
            raise error_cls(
                _error_message(body, "backend_auth_failed"), status_code=status, details=details
            )
        if status == 404:
            raise NotFoundError(_error_message(body, "backend_not_found"), status_code=status, details=details)
        if status == 409:
            if _is_capacity_conflict(body):
                raise _capacity_error(details)
            raise ConflictError(_error_message(body, "backend_conflict"), status_code=status, details=details)
        if status >= 500:
            raise ServerError(_error_message(body, f"backend_error_{status}"), status_code=status, details=details)
        raise BadRequestError(_error_message(body, f"backend_error_{status}"), status_code=status, details=details)

    # Selection processes

    async def list_processes(
        self,
        stable_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[SelectionProcessSummary]:
        body = await self.call(
            "GET",
            "/selection-processes",
            params={"stableId": stable_id, "status": status, "limit": limit, "offset": offset},
        )
        return [SelectionProcessSummary.model_validate(item) for item in (body or {}).get("selectionProcesses", [])]

    async def get_process(self, process_id: str) -> SelectionProcess:
        body = await self.call("GET", f"/selection-processes/{process_id}")
        return SelectionProcess.model_validate(body)

    async def create_process(self, payload: CreateSelectionProcessInput) -> SelectionProcess:
        data = payload.to_wire()
        data["selectionStartDate"] = format_iso8601(_start_of_day_utc(payload.selection_start_date))
        data["selectionEndDate"] = format_iso8601(_start_of_day_utc(payload.selection_end_date))
        body = await self.call("POST", "/selection-processes", json=data)
        return SelectionProcess.model_validate(body)

    async def delete_process(self, process_id: str) -> None:
        await self.call("DELETE", f"/selection-processes/{process_id}")

    async def start_process(self, process_id: str) -> SelectionProcess:
        body = await self.call("POST", f"/selection-processes/{process_id}/start")
        return SelectionProcess.model_validate(body)

    async def complete_turn(self, process_id: str) -> CompleteTurnResult:
        body = await self.call("POST", f"/selection-processes/{process_id}/complete-turn")
        return CompleteTurnResult.model_validate(body or {})

    async def cancel_process(self, process_id: str, reason: Optional[str] = None) -> SelectionProcess:
        payload = {"reason": reason} if reason else {}
        body = await self.call("POST", f"/selection-processes/{process_id}/cancel", json=payload)
        return SelectionProcess.model_validate(body)

    async def update_process_dates(self, process_id: str, changes: Dict[str, str]) -> SelectionProcess:
        body = await self.call("PATCH", f"/selection-processes/{process_id}/dates", json=changes)
        return SelectionProcess.model_validate(body)

    async def get_selections(self, process_id: str) -> List[SelectionEntry]:
        body = await self.call("GET", f"/selection-processes/{process_id}/selections")
        return [SelectionEntry.model_validate(item) for item in (body or {}).get("selections", [])]

    async def compute_turn_order(
        self,
        stable_id: str,
        algorithm: SelectionAlgorithm,
        member_ids: Sequence[str],
        start: date,
        end: date,
    ) -> ComputedTurnOrder:
        body = await self.call(
            "POST",
            "/selection-processes/compute-order",
            json={
                "stableId": stable_id,
                "algorithm": algorithm.value,
                "memberIds": list(member_ids),
                "selectionStartDate": format_iso8601(_start_of_day_utc(start)),
                "selectionEndDate": format_iso8601(_start_of_day_utc(end)),
            },
        )
        return ComputedTurnOrder.model_validate(body or {})

    # Routine instances

    async def list_routine_instances(self, stable_id: str, start: date, end: date) -> List[ScheduleSlot]:
        body = await self.call(
            "GET",
            f"/routines/instances/stable/{stable_id}",
            params={"startDate": format_date_key(start), "endDate": format_date_key(end)},
        )
        return [ScheduleSlot.model_validate(item) for item in (body or {}).get("routineInstances", [])]

    async def assign_routine_instance(self, instance_id: str, user_id: str, user_name: str) -> ScheduleSlot:
        body = await self.call(
            "POST",
            f"/routines/instances/{instance_id}/assign",
            json={"assignedTo": user_id, "assignedToName": user_name},
        )
        instance = body.get("instance", body) if isinstance(body, dict) else body
        return ScheduleSlot.model_validate(instance)

    # Facilities

    async def get_facility(self, facility_id: str) -> Dict[str, Any]:
        return await self.call("GET", f"/facilities/{facility_id}")

    async def get_facility_schedule(self, facility_id: str) -> FacilityAvailabilitySchedule:
        """Stored schedule, upgraded from legacy fields or defaulted when absent."""
        facility = await self.get_facility(facility_id) or {}
        stored = facility.get("availabilitySchedule")
        if stored:
            return FacilityAvailabilitySchedule.model_validate(stored)
        if any(key in facility for key in _LEGACY_AVAILABILITY_KEYS):
            return migrate_legacy_availability(LegacyAvailability.model_validate(facility))
        return create_default_schedule()

    async def update_facility_schedule(
        self, facility_id: str, schedule: FacilityAvailabilitySchedule
    ) -> Dict[str, Any]:
        issues = validate_schedule(
            schedule,
            max_blocks=self.settings.max_time_blocks,
            max_exceptions=self.settings.max_schedule_exceptions,
        )
        if issues:
            raise ValidationFailedError(issues)
        return await self.call(
            "PATCH",
            f"/facilities/{facility_id}",
            json={"availabilitySchedule": schedule.to_wire()},
        )

    async def add_schedule_exception(
        self, facility_id: str, exception: ScheduleException
    ) -> ScheduleException:
        """Add one dated exception; a date that already has one comes back as ``ConflictError``."""
        exception = normalize_exception(exception)
        issues = validate_exception(exception, max_blocks=self.settings.max_time_blocks)
        if issues:
            raise ValidationFailedError(issues)
        payload = exception.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            include={"date", "type", "time_blocks", "reason"},
        )
        body = await self.call("POST", f"/facilities/{facility_id}/exceptions", json=payload)
        stored = (body or {}).get("exception")
        return ScheduleException.model_validate(stored) if stored else exception

    async def remove_schedule_exception(self, facility_id: str, day: Union[date, str]) -> None:
        key = format_date_key(parse_date_key(day) if isinstance(day, str) else day)
        await self.call("DELETE", f"/facilities/{facility_id}/exceptions/{key}")

    async def get_available_blocks(self, facility_id: str, day: date) -> List[TimeBlock]:
        body = await self.call(
            "GET",
            f"/facilities/{facility_id}/available-slots",
            params={"date": format_date_key(day)},
        )
        return [TimeBlock.model_validate(block) for block in (body or {}).get("timeBlocks", [])]

    async def get_open_slots(
        self,
        facility_id: str,
        start: date,
        end: Optional[date] = None,
        *,
        busy: Iterable[BusyInterval] = (),
        slot_minutes: Optional[int] = None,
    ) -> Dict[date, List[OpenSlot]]:
        """
        Free fixed-length slots per day from ``start`` to ``end`` inclusive.

        Slot times are aware in ``Settings.facility_timezone`` when it is set
        and naive facility-local times otherwise; ``busy`` must match.
        """
        schedule = await self.get_facility_schedule(facility_id)
        tz = resolve_timezone(self.settings.facility_timezone) if self.settings.facility_timezone else None
        length = slot_minutes or self.settings.default_slot_minutes
        busy = list(busy)
        return {
            day: get_available_time_slots(get_effective_time_blocks(schedule, day), day, length, busy, tzinfo=tz)
            for day in date_range(start, end or start)
        }

    # Organization context

    async def list_stables(self, organization_id: str) -> List[Dict[str, Any]]:
        body = await self.call("GET", f"/organizations/{organization_id}/stables")
        return list((body or {}).get("stables", []))

    async def get_my_permissions(self, organization_id: str) -> Dict[str, Any]:
        cached = self.caches.permissions.get(organization_id)
        if cached is not None:
            return cached
        try:
            body = await self.call("GET", f"/organizations/{organization_id}/permissions/my")
        except (UnauthorizedError, ForbiddenError):
            raise
        except BackendError as exc:
            logger.warning(
                "permissions_refresh_failed organization_id=%s error=%s", organization_id, exc.message
            )
            return self.caches.permissions.get(organization_id, allow_stale=True) or {}
        permissions = body or {}
        self.caches.permissions.set(organization_id, permissions)
        return permissions

    async def get_subscription(self, organization_id: str) -> Dict[str, Any]:
        cached = self.caches.subscriptions.get(organization_id)
        if cached is not None:
            return cached
        body = await self.call("GET", f"/subscriptions/organizations/{organization_id}/subscription")
        subscription = body or {}
        self.caches.subscriptions.set(organization_id, subscription)
        return subscription

    async def check_features(self, organization_id: str, features: Sequence[str]) -> Dict[str, bool]:
        """Feature flags for ``organization_id``; unknown or failed checks read as disabled."""
        key = f"{organization_id}:{','.join(sorted(features))}"
        cached = self.caches.feature_toggles.get(key)
        if cached is not None:
            return cached
        try:
            body = await self.call(
                "POST",
                "/feature-toggles/check",
                json={"features": list(features)},
                headers={"X-Organization-Id": organization_id},
            )
        except (UnauthorizedError, ForbiddenError):
            raise
        except BackendError as exc:
            logger.warning("feature_toggle_check_failed organization_id=%s error=%s", organization_id, exc.message)
            stale = self.caches.feature_toggles.get(key, allow_stale=True)
            return stale if stale is not None else {feature: False for feature in features}

        results = ((body or {}).get("data") or {}).get("features") or {}
        flags = {}
        for feature in features:
            result = results.get(feature)
            if isinstance(result, dict):
                flags[feature] = bool(result.get("enabled"))
            else:
                flags[feature] = bool(result)
        self.caches.feature_toggles.set(key, flags)
        return flags
