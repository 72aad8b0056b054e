from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from schediq_sync.fetch import ApiError, FetchCoordinator
from schediq_sync.mirror import PersistenceMirror
from schediq_sync.models import AppState, ResourceKind
from schediq_sync.store import SyncStore
from schediq_sync.tasks import TaskRuleError

BASE = "https://api.test/api"

TEAMS = [{"id": "A", "name": "Alpha"}, {"id": "B", "name": "Beta"}]


class FakeCoordinator:
    """In-memory stand-in keyed by (method, path); no retries."""

    def __init__(self):
        self.calls: list[tuple[str, str, Any]] = []
        self.responses: dict[tuple[str, str], Any] = {}
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def try_acquire(self, kind: str) -> bool:
        if kind in self._in_flight:
            return False
        self._in_flight.add(kind)
        return True

    def release(self, kind: str) -> None:
        self._in_flight.discard(kind)

    def url_for(self, *segments: Any) -> str:
        return "/".join(str(segment) for segment in segments)

    async def call(self, method: str, url: str, payload: Any = None) -> Any:
        self.calls.append((method, url, payload))
        await asyncio.sleep(0)
        response = self.responses.get((method, url))
        if isinstance(response, Exception):
            raise response
        return response

    def get_health(self) -> dict[str, Any]:
        return {"fake": True}

    async def aclose(self) -> None:
        pass


def _store(tmp_path: Path, coordinator=None) -> tuple[SyncStore, FakeCoordinator]:
    coordinator = coordinator or FakeCoordinator()
    return SyncStore(coordinator, PersistenceMirror(tmp_path)), coordinator


def test_load_rehydrates_from_mirror(tmp_path: Path):
    PersistenceMirror(tmp_path).save(AppState(teams=TEAMS), {"t1": {"feasible": True}})
    store, _ = _store(tmp_path)

    store.load()
    state, cache = store.get_snapshot()

    assert state.teams == TEAMS
    assert cache == {"t1": {"feasible": True}}


def test_snapshot_is_detached(tmp_path: Path):
    PersistenceMirror(tmp_path).save(AppState(teams=TEAMS), {})
    store, _ = _store(tmp_path)
    store.load()

    state, _ = store.get_snapshot()
    state.teams.clear()

    assert store.get_snapshot()[0].teams == TEAMS


def test_refresh_replaces_collection_persists_and_notifies(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "teams")] = {"data": {"teams": TEAMS}}
    seen: list[tuple[AppState, dict]] = []
    store.subscribe(lambda state, cache: seen.append((state, cache)))

    asyncio.run(store.refresh_one("teams"))

    assert store.get_snapshot()[0].teams == TEAMS
    assert PersistenceMirror(tmp_path).load_state().teams == TEAMS
    assert len(seen) == 1
    assert seen[0][0].teams == TEAMS
    assert store.is_syncing is False


def test_refresh_replaces_wholesale(tmp_path: Path):
    PersistenceMirror(tmp_path).save(AppState(teams=TEAMS), {})
    store, api = _store(tmp_path)
    store.load()
    api.responses[("GET", "teams")] = [TEAMS[1]]

    asyncio.run(store.refresh_one(ResourceKind.TEAMS))

    assert store.get_snapshot()[0].teams == [TEAMS[1]]


def test_unsubscribe_is_idempotent(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "teams")] = TEAMS
    seen: list[AppState] = []
    unsubscribe = store.subscribe(lambda state, cache: seen.append(state))

    unsubscribe()
    unsubscribe()
    asyncio.run(store.refresh_one("teams"))

    assert seen == []


def test_failing_observer_does_not_block_others(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "teams")] = TEAMS
    seen: list[AppState] = []

    def broken(state, cache):
        raise RuntimeError("render failed")

    store.subscribe(broken)
    store.subscribe(lambda state, cache: seen.append(state))
    asyncio.run(store.refresh_one("teams"))

    assert len(seen) == 1


def test_concurrent_duplicate_refresh_makes_one_request(tmp_path: Path):
    calls = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"tasks": [{"id": "t1"}]})

    coordinator = FetchCoordinator(base_url=BASE, transport=httpx.MockTransport(handler))
    store, _ = _store(tmp_path, coordinator)

    async def scenario():
        try:
            await asyncio.gather(store.refresh_one("tasks"), store.refresh_one("tasks"))
        finally:
            await store.aclose()

    asyncio.run(scenario())

    assert calls["count"] == 1
    assert store.get_snapshot()[0].tasks == [{"id": "t1"}]


def test_refresh_recovers_on_retry(tmp_path: Path):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, json={"message": "warming up"})
        return httpx.Response(200, json=[{"id": "t1"}])

    coordinator = FetchCoordinator(base_url=BASE, transport=httpx.MockTransport(handler))
    store, _ = _store(tmp_path, coordinator)

    async def scenario():
        try:
            await store.refresh_one("tasks")
        finally:
            await store.aclose()

    asyncio.run(scenario())

    assert calls["count"] == 2
    assert store.get_snapshot()[0].tasks == [{"id": "t1"}]
    assert store.last_error is None


def test_double_failure_keeps_prior_data_and_records_error(tmp_path: Path):
    calls = {"count": 0}
    PersistenceMirror(tmp_path).save(AppState(tasks=[{"id": "old"}]), {})

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500, json={"error": "boom"})

    coordinator = FetchCoordinator(base_url=BASE, transport=httpx.MockTransport(handler))
    store, _ = _store(tmp_path, coordinator)
    store.load()

    async def scenario():
        try:
            await store.refresh_one("tasks")
        finally:
            await store.aclose()

    asyncio.run(scenario())

    assert calls["count"] == 2
    assert store.get_snapshot()[0].tasks == [{"id": "old"}]
    assert store.last_error == "Tasks: boom"


def test_refresh_all_isolates_failures(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "teams")] = ApiError("network_error", "offline")
    api.responses[("GET", "team-members")] = [{"id": "m1", "team_id": "A"}]
    api.responses[("GET", "modules")] = {"modules": [{"id": "mod"}]}
    api.responses[("GET", "tasks")] = {"data": [{"id": "t1"}]}

    asyncio.run(store.refresh_all())
    state, _ = store.get_snapshot()

    assert state.teams == []
    assert state.members == [{"id": "m1", "team_id": "A"}]
    assert state.modules == [{"id": "mod", "owners": []}]
    assert state.tasks == [{"id": "t1"}]
    assert store.get_health()["errorsByKind"] == {"teams": "Teams: offline"}

    api.responses[("GET", "teams")] = TEAMS
    asyncio.run(store.refresh_one("teams"))
    assert store.last_error is None
    assert store.get_health()["errorsByKind"] == {}


def test_successful_write_clears_last_error(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "tasks")] = ApiError("http_error", "boom")
    asyncio.run(store.refresh_one("tasks"))
    assert store.last_error == "Tasks: boom"

    api.responses[("POST", "teams")] = {"id": "C"}
    api.responses[("GET", "teams")] = TEAMS
    asyncio.run(store.create("teams", {"name": "Gamma"}))

    assert store.last_error is None
    assert store.get_health()["errorsByKind"] == {"tasks": "Tasks: boom"}


def test_successful_analysis_clears_last_error(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "modules")] = ApiError("network_error", "offline")
    api.responses[("POST", "tasks/t1/analyze")] = {"feasible": True}

    asyncio.run(store.refresh_one("modules"))
    asyncio.run(store.analyze("t1"))

    assert store.last_error is None


def test_personnel_label_in_error(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "team-members")] = ApiError("http_error", "Server 500: Internal Server Error")

    asyncio.run(store.refresh_one("members"))

    assert store.last_error == "Personnel: Server 500: Internal Server Error"


def test_create_sanitizes_then_refetches(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("POST", "teams")] = {"id": "C"}
    api.responses[("GET", "teams")] = TEAMS + [{"id": "C", "name": "Gamma"}]

    result = asyncio.run(store.create("teams", {"id": "local", "created_at": "now", "name": "Gamma"}))

    assert result == {"id": "C"}
    assert api.calls[0] == ("POST", "teams", {"name": "Gamma"})
    assert api.calls[1] == ("GET", "teams", None)
    assert store.find("teams", "C") == {"id": "C", "name": "Gamma"}


def test_create_failure_propagates_without_local_change(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("POST", "teams")] = ApiError("http_error", "duplicate")

    with pytest.raises(ApiError):
        asyncio.run(store.create("teams", {"name": "Alpha"}))

    assert store.get_snapshot()[0].teams == []
    assert store.last_error is None
    assert [c[0] for c in api.calls] == ["POST"]


def test_update_team_uses_put_with_id(tmp_path: Path):
    store, api = _store(tmp_path)

    asyncio.run(store.update("teams", "A", {"id": "A", "created_at": "t", "name": "Alpha 2"}))

    assert api.calls[0] == ("PUT", "teams/A", {"name": "Alpha 2", "id": "A"})
    assert api.calls[1] == ("GET", "teams", None)


def test_update_member_uses_put(tmp_path: Path):
    store, api = _store(tmp_path)

    asyncio.run(store.update("members", "m1", {"capacity_hours_per_week": 30}))

    assert api.calls[0] == ("PUT", "team-members/m1", {"capacity_hours_per_week": 30, "id": "m1"})
    assert api.calls[1] == ("GET", "team-members", None)


def test_module_write_normalizes_owners(tmp_path: Path):
    PersistenceMirror(tmp_path).save(AppState(teams=TEAMS), {})
    store, api = _store(tmp_path)
    store.load()
    module = {
        "id": "mod-1",
        "name": "Billing",
        "description": "",
        "owners": [
            {"team_id": "A", "member_id": "m1", "role": "PRIMARY"},
            {"team_id": "A", "member_id": "m1", "role": "SECONDARY"},
            {"team_id": "Z", "member_id": "m2", "role": "PRIMARY"},
        ],
    }

    asyncio.run(store.update("modules", "mod-1", module))

    method, url, payload = api.calls[0]
    assert (method, url) == ("PATCH", "modules/mod-1")
    assert payload == {
        "name": "Billing",
        "description": "",
        "module_owners": [{"team_id": "A", "member_id": "m1", "role": "PRIMARY"}],
    }


def test_partial_module_update_keeps_name_and_owners(tmp_path: Path):
    owners = [{"team_id": "A", "member_id": "m1", "role": "PRIMARY"}]
    module = {"id": "mod-1", "name": "Billing", "description": "old", "module_owners": owners}
    PersistenceMirror(tmp_path).save(AppState(teams=TEAMS, modules=[{**module, "owners": owners}]), {})
    store, api = _store(tmp_path)
    store.load()
    api.responses[("GET", "modules")] = [module]

    asyncio.run(store.update("modules", "mod-1", {"description": "new"}))
    asyncio.run(store.update("modules", "mod-1", {"module_owners": []}))

    assert api.calls[0] == ("PATCH", "modules/mod-1", {"name": "Billing", "description": "new", "module_owners": owners})
    assert api.calls[2] == ("PATCH", "modules/mod-1", {"name": "Billing", "description": "old", "module_owners": []})


def _task(**overrides) -> dict[str, Any]:
    task = {
        "id": "t1",
        "title": "Launch",
        "module_id": "mod-1",
        "teams_involved": ["A"],
        "team_work": {"A": {"effort_hours": 8, "depends_on": []}},
        "status": "PLANNING",
    }
    task.update(overrides)
    return task


def test_create_task_defaults_to_planning(tmp_path: Path):
    store, api = _store(tmp_path)
    draft = _task()
    del draft["status"]

    asyncio.run(store.create("tasks", draft))

    assert api.calls[0][2]["status"] == "PLANNING"
    assert "id" not in api.calls[0][2]


def test_create_task_rejects_committed_and_invalid(tmp_path: Path):
    store, api = _store(tmp_path)

    with pytest.raises(TaskRuleError):
        asyncio.run(store.create("tasks", _task(status="COMMITTED")))
    with pytest.raises(TaskRuleError) as exc_info:
        asyncio.run(store.create("tasks", _task(teams_involved=["A", "B"])))

    assert exc_info.value.code == "invalid_task"
    assert api.calls == []


def test_update_task_strips_status(tmp_path: Path):
    store, api = _store(tmp_path)

    asyncio.run(store.update("tasks", "t1", {"title": "Renamed", "status": "COMPLETED"}))

    assert api.calls[0] == ("PATCH", "tasks/t1", {"title": "Renamed"})


def test_committed_task_team_fields_are_locked(tmp_path: Path):
    PersistenceMirror(tmp_path).save(AppState(tasks=[_task(status="COMMITTED")]), {})
    store, api = _store(tmp_path)
    store.load()

    with pytest.raises(TaskRuleError) as exc_info:
        asyncio.run(
            store.update(
                "tasks",
                "t1",
                {"team_work": {"A": {"effort_hours": 40, "depends_on": []}}},
            )
        )
    assert exc_info.value.code == "task_locked"
    assert api.calls == []

    asyncio.run(store.update("tasks", "t1", {**_task(status="COMMITTED"), "title": "Renamed"}))
    assert api.calls[0][0] == "PATCH"


def test_set_status_uppercases_and_refetches(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("GET", "tasks")] = [_task(status="ON_HOLD")]

    asyncio.run(store.set_status("t1", "on_hold"))

    assert api.calls[0] == ("PATCH", "tasks/t1/status", {"status": "ON_HOLD"})
    assert store.find("tasks", "t1")["status"] == "ON_HOLD"


def test_set_status_refuses_committed(tmp_path: Path):
    store, api = _store(tmp_path)

    with pytest.raises(TaskRuleError):
        asyncio.run(store.set_status("t1", "COMMITTED"))

    assert api.calls == []


def test_analyze_overwrites_cache_entry(tmp_path: Path):
    store, api = _store(tmp_path)
    seen: list[dict] = []
    store.subscribe(lambda state, cache: seen.append(cache))

    api.responses[("POST", "tasks/t1/analyze")] = {"feasible": False, "conflicts": [{"member_id": "m1"}]}
    asyncio.run(store.analyze("t1"))
    api.responses[("POST", "tasks/t1/analyze")] = {"feasible": True, "plan": {"A": {"effort_hours": 8}}}
    result = asyncio.run(store.analyze("t1"))

    assert result == {"feasible": True, "plan": {"A": {"effort_hours": 8}}}
    assert store.get_snapshot()[1] == {"t1": result}
    assert PersistenceMirror(tmp_path).load_cache() == {"t1": result}
    assert len(seen) == 2


def test_analyze_failure_propagates(tmp_path: Path):
    store, api = _store(tmp_path)
    api.responses[("POST", "tasks/t1/analyze")] = ApiError("http_error", "engine offline")

    with pytest.raises(ApiError):
        asyncio.run(store.analyze("t1"))

    assert store.last_error is None
    assert store.get_snapshot()[1] == {}


def test_commit_sends_plan_and_force_then_refetches(tmp_path: Path):
    store, api = _store(tmp_path)
    plan = {"A": {"team_id": "A", "effort_hours": 8}}

    asyncio.run(store.commit("t1", plan, force=True))

    assert api.calls[0] == ("POST", "tasks/t1/commit", {"plan": plan, "force": True})
    assert api.calls[1] == ("GET", "tasks", None)


def test_commit_falls_back_to_analysed_then_derived_plan(tmp_path: Path):
    PersistenceMirror(tmp_path).save(
        AppState(tasks=[_task(), _task(id="t2")]),
        {"t1": {"feasible": True, "plan": {"A": {"member_id": "m1"}}}},
    )
    store, api = _store(tmp_path)
    store.load()
    api.responses[("GET", "tasks")] = [_task(), _task(id="t2")]

    asyncio.run(store.commit("t1"))
    asyncio.run(store.commit("t2"))

    assert api.calls[0][2] == {"plan": {"A": {"member_id": "m1"}}, "force": False}
    assert api.calls[2][2] == {
        "plan": {"A": {"team_id": "A", "effort_hours": 8, "owner_type": "primary"}},
        "force": False,
    }


def test_clear_storage_resets_everything(tmp_path: Path):
    PersistenceMirror(tmp_path).save(AppState(teams=TEAMS), {"t1": {}})
    store, _ = _store(tmp_path)
    store.load()
    seen: list[AppState] = []
    store.subscribe(lambda state, cache: seen.append(state))

    store.clear_storage()

    assert store.get_snapshot() == (AppState(), {})
    assert seen == [AppState()]
    assert not (tmp_path / "schediq_resource_manager_data.json").exists()


def test_health_reports_counts(tmp_path: Path):
    PersistenceMirror(tmp_path).save(AppState(teams=TEAMS), {})
    store, _ = _store(tmp_path)
    store.load()

    health = store.get_health()

    assert health["counts"]["teams"] == 2
    assert health["isSyncing"] is False
    assert health["api"] == {"fake": True}
    json.dumps(health)
