import asyncio

import pytest
from equiduty_scheduling.context import load_organization_context
from equiduty_scheduling.errors import NetworkError, ServerError


class FakeClient:
    def __init__(self, failing=()) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.failing = set(failing)

    async def _branch(self, name, args, result):
        self.calls.append((name, args, {}))
        await asyncio.sleep(0)
        if name in self.failing:
            raise ServerError(f"{name} unavailable", status_code=503)
        return result

    async def list_stables(self, organization_id):
        return await self._branch("list_stables", (organization_id,), [{"id": "stable-1"}])

    async def get_my_permissions(self, organization_id):
        return await self._branch(
            "get_my_permissions",
            (organization_id,),
            {"permissions": {"manage_selection_processes": True}, "isOrgOwner": False},
        )

    async def get_subscription(self, organization_id):
        return await self._branch("get_subscription", (organization_id,), {"tier": "pro"})

    async def check_features(self, organization_id, features):
        return await self._branch("check_features", (organization_id, tuple(features)), {f: True for f in features})


@pytest.mark.asyncio
async def test_loads_all_branches():
    client = FakeClient()
    context = await load_organization_context(client, "org-1", features=["selectionProcesses"])

    assert context.complete
    assert context.stables == [{"id": "stable-1"}]
    assert context.subscription == {"tier": "pro"}
    assert context.feature_flags == {"selectionProcesses": True}
    assert context.can("manage_selection_processes")
    assert not context.can("delete_organization")
    assert {name for name, _, _ in client.calls} == {
        "list_stables",
        "get_my_permissions",
        "get_subscription",
        "check_features",
    }


@pytest.mark.asyncio
async def test_failed_branch_does_not_sink_siblings():
    client = FakeClient(failing={"get_subscription", "list_stables"})
    context = await load_organization_context(client, "org-1")

    assert not context.complete
    assert set(context.failures) == {"subscription", "stables"}
    assert context.stables == []
    assert context.subscription == {}
    assert context.permissions["permissions"]["manage_selection_processes"] is True
    assert context.feature_flags == {}


@pytest.mark.asyncio
async def test_feature_branch_is_skipped_without_features():
    client = FakeClient()
    await load_organization_context(client, "org-1")
    assert "check_features" not in {name for name, _, _ in client.calls}


@pytest.mark.asyncio
async def test_network_errors_are_isolated():
    class Flaky(FakeClient):
        async def get_my_permissions(self, organization_id):
            raise NetworkError("backend_connection_failed: reset")

    context = await load_organization_context(Flaky(), "org-1")
    assert context.failures == {"permissions": "backend_connection_failed: reset"}
    assert context.permissions == {}
    assert not context.can("anything")


@pytest.mark.asyncio
async def test_cancelled_branch_keeps_sibling_results():
    class Interrupted(FakeClient):
        async def get_my_permissions(self, organization_id):
            raise asyncio.CancelledError()

    context = await load_organization_context(Interrupted(), "org-1")
    assert context.stables == [{"id": "stable-1"}]
    assert context.subscription == {"tier": "pro"}
    assert context.permissions == {}
    assert context.failures == {"permissions": "CancelledError"}
