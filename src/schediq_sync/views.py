"""
Navigation-driven refresh policy and per-view read models.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from .models import AppState, ResourceKind, TaskStatus
from .ownership import normalize_owners
from .store import SyncStore
from .tasks import total_effort_hours

logger = logging.getLogger(__name__)


class View(str, Enum):
    DASHBOARD = "dashboard"
    TEAMS = "teams"
    MEMBERS = "members"
    MODULES = "modules"
    TASKS = "tasks"


VIEW_KINDS: dict[View, ResourceKind | None] = {
    View.DASHBOARD: None,
    View.TEAMS: ResourceKind.TEAMS,
    View.MEMBERS: ResourceKind.MEMBERS,
    View.MODULES: ResourceKind.MODULES,
    View.TASKS: ResourceKind.TASKS,
}


def _matches(query: str | None, *fields: Any) -> bool:
    if not query:
        return True
    needle = query.lower()
    for value in fields:
        if isinstance(value, list):
            if any(needle in str(item).lower() for item in value):
                return True
        elif value and needle in str(value).lower():
            return True
    return False


def _by_id(records: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    return {str(record.get("id")): record for record in records}


def overburdened_members(state: AppState, cache: dict[str, Any]) -> list[dict[str, Any]]:
    """Members named in conflicts of infeasible analyses, first overload wins."""
    members = _by_id(state.members)
    seen: dict[str, dict[str, Any]] = {}
    for result in cache.values():
        if not isinstance(result, dict) or result.get("feasible") is not False:
            continue
        for conflict in result.get("conflicts") or []:
            member_id = str((conflict or {}).get("member_id"))
            member = members.get(member_id)
            if member is None or member_id in seen:
                continue
            seen[member_id] = {**member, "overload": conflict.get("overload_hours")}
    return list(seen.values())


def dashboard(state: AppState, cache: dict[str, Any]) -> dict[str, Any]:
    status_counts = {status.value: 0 for status in TaskStatus}
    for task in state.tasks:
        status = str(task.get("status") or "").upper()
        if status in status_counts:
            status_counts[status] += 1

    return {
        "totalTeams": len(state.teams),
        "activePersonnel": sum(1 for member in state.members if member.get("is_active")),
        "modules": len(state.modules),
        "tasks": len(state.tasks),
        "tasksByStatus": status_counts,
        "overburdenedPersonnel": overburdened_members(state, cache),
    }


def teams_view(state: AppState) -> list[dict[str, Any]]:
    counts: dict[str, int] = {}
    for member in state.members:
        team_id = str(member.get("team_id"))
        counts[team_id] = counts.get(team_id, 0) + 1
    return [{**team, "memberCount": counts.get(str(team.get("id")), 0)} for team in state.teams]


def members_view(state: AppState, query: str | None = None) -> list[dict[str, Any]]:
    teams = _by_id(state.teams)
    return [
        {**member, "teamName": teams.get(str(member.get("team_id")), {}).get("name")}
        for member in state.members
        if _matches(query, member.get("name"), member.get("email"), member.get("skill_sets"))
    ]


def modules_view(state: AppState) -> list[dict[str, Any]]:
    members = _by_id(state.members)
    rows = []
    for module in state.modules:
        owners = []
        for entry in normalize_owners(module.get("owners"), state.teams):
            owners.append(
                {**entry.to_dict(), "memberName": members.get(entry.member_id, {}).get("name")}
            )
        rows.append({**module, "owners": owners})
    return rows


def tasks_view(state: AppState, cache: dict[str, Any], query: str | None = None) -> list[dict[str, Any]]:
    rows = []
    for task in state.tasks:
        if not _matches(query, task.get("title")):
            continue
        task_id = str(task.get("id"))
        rows.append(
            {
                **task,
                "totalEffortHours": total_effort_hours(task),
                "assignments": [
                    a for a in state.assignments if str(a.get("task_id")) == task_id
                ],
                "analysis": cache.get(task_id),
            }
        )
    return rows


class ViewRouter:
    """Triggers the refresh a view needs when it is opened."""

    def __init__(self, store: SyncStore):
        self._store = store
        self._last_fetched_view: View | None = None

    @property
    def last_fetched_view(self) -> View | None:
        return self._last_fetched_view

    async def navigate(self, view: View | str) -> None:
        view = View(view)
        # Re-opening the same view only refetches while an error is showing.
        if view is self._last_fetched_view and self._store.last_error is None:
            logger.debug("View %s already loaded, skipping refresh", view.value)
            return

        self._last_fetched_view = view
        kind = VIEW_KINDS[view]
        if kind is None:
            await self._store.refresh_all()
        else:
            await self._store.refresh_one(kind)

    async def open(self, view: View | str, query: str | None = None) -> Any:
        view = View(view)
        await self.navigate(view)
        return self.render(view, query=query)

    def render(self, view: View | str, query: str | None = None) -> Any:
        state, cache = self._store.get_snapshot()
        view = View(view)
        if view is View.DASHBOARD:
            return {**dashboard(state, cache), "sync": self.sync_status()}
        if view is View.TEAMS:
            return teams_view(state)
        if view is View.MEMBERS:
            return members_view(state, query)
        if view is View.MODULES:
            return modules_view(state)
        return tasks_view(state, cache, query)

    def sync_status(self) -> dict[str, Any]:
        return {"isSyncing": self._store.is_syncing, "lastError": self._store.last_error}
