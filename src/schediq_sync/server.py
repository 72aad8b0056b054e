"""
MCP server exposing the synchronized resource views and mutations as tools.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from .fetch import FetchCoordinator
from .mirror import PersistenceMirror
from .models import ResourceKind, Role
from .ownership import set_primary, toggle_secondary
from .store import SyncStore
from .views import View, ViewRouter

logger = logging.getLogger(__name__)

INSTRUCTIONS = (
    "SchedIQ resource planner. "
    "Read tools serve the locally mirrored snapshot of teams, personnel, modules "
    "and tasks, refreshing the collection a view needs when it is opened. "
    "Write tools forward to the resource API and then re-fetch the written "
    "collection, so results always reflect the server."
)


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def create_server(store: SyncStore, router: ViewRouter | None = None) -> FastMCP:
    """Build the MCP server around an explicitly constructed store."""
    router = router or ViewRouter(store)

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[None]:
        store.load()
        await store.refresh_all()
        if store.last_error:
            logger.warning("Starting with partial data: %s", store.last_error)
        try:
            yield
        finally:
            await store.aclose()

    mcp = FastMCP("SchedIQ Sync", instructions=INSTRUCTIONS, lifespan=lifespan)

    @mcp.tool()
    async def get_dashboard() -> dict[str, Any]:
        """Overview counts, task status breakdown, overburdened personnel and sync status."""
        return await router.open(View.DASHBOARD)

    @mcp.tool()
    async def list_teams() -> list[dict[str, Any]]:
        """List teams with their member counts."""
        return await router.open(View.TEAMS)

    @mcp.tool()
    async def list_members(query: str | None = None) -> list[dict[str, Any]]:
        """List personnel, optionally filtered by name, email or skill substring.

        Args:
            query: Case-insensitive substring matched against name, email and skills.
        """
        return await router.open(View.MEMBERS, query=query)

    @mcp.tool()
    async def list_modules() -> list[dict[str, Any]]:
        """List modules with normalized per-team owners."""
        return await router.open(View.MODULES)

    @mcp.tool()
    async def list_tasks(query: str | None = None) -> list[dict[str, Any]]:
        """List tasks with total effort, assignments and the cached analysis.

        Args:
            query: Case-insensitive substring matched against task titles.
        """
        return await router.open(View.TASKS, query=query)

    @mcp.tool()
    async def refresh(kind: str | None = None) -> dict[str, Any]:
        """Force a refresh of one collection (teams, members, modules, tasks) or all."""
        if kind:
            await store.refresh_one(kind)
        else:
            await store.refresh_all()
        return store.get_health()

    @mcp.tool()
    async def create_team(name: str, description: str = "") -> Any:
        """Create a team."""
        return await store.create(ResourceKind.TEAMS, {"name": name, "description": description})

    @mcp.tool()
    async def update_team(id: str, name: str | None = None, description: str | None = None) -> Any:
        """Update a team's name or description."""
        current = store.find(ResourceKind.TEAMS, id) or {}
        changes = _drop_none({"name": name, "description": description})
        return await store.update(ResourceKind.TEAMS, id, {**current, **changes})

    @mcp.tool()
    async def create_member(member: dict[str, Any]) -> Any:
        """Create a team member from a record (name, email, team_id, skill_sets, ...)."""
        return await store.create(ResourceKind.MEMBERS, member)

    @mcp.tool()
    async def update_member(id: str, changes: dict[str, Any]) -> Any:
        """Update fields of a team member."""
        current = store.find(ResourceKind.MEMBERS, id) or {}
        return await store.update(ResourceKind.MEMBERS, id, {**current, **changes})

    @mcp.tool()
    async def create_module(
        name: str, description: str = "", owners: list[dict[str, Any]] | None = None
    ) -> Any:
        """Create a module; owners are {team_id, member_id, role} records."""
        return await store.create(
            ResourceKind.MODULES,
            {"name": name, "description": description, "owners": owners or []},
        )

    @mcp.tool()
    async def update_module(
        id: str,
        name: str | None = None,
        description: str | None = None,
        owners: list[dict[str, Any]] | None = None,
    ) -> Any:
        """Update a module; omitted fields keep their current values."""
        changes = _drop_none({"name": name, "description": description, "owners": owners})
        return await store.update(ResourceKind.MODULES, id, changes)

    @mcp.tool()
    async def assign_module_owner(
        module_id: str, team_id: str, member_id: str | None, role: str = "PRIMARY"
    ) -> Any:
        """Set a team's PRIMARY owner (member_id=None clears it) or toggle a SECONDARY owner."""
        module = store.find(ResourceKind.MODULES, module_id)
        if module is None:
            raise ValueError(f"unknown module '{module_id}'")
        if Role(role.upper()) is Role.PRIMARY:
            owners = set_primary(module.get("owners"), team_id, member_id)
        else:
            if not member_id:
                raise ValueError("member_id is required for SECONDARY owners")
            owners = toggle_secondary(module.get("owners"), team_id, member_id)
        module["owners"] = [entry.to_dict() for entry in owners]
        return await store.update(ResourceKind.MODULES, module_id, module)

    @mcp.tool()
    async def create_task(task: dict[str, Any]) -> Any:
        """Create a task in PLANNING (title, module_id, teams_involved, team_work, ...)."""
        return await store.create(ResourceKind.TASKS, task)

    @mcp.tool()
    async def update_task(id: str, changes: dict[str, Any]) -> Any:
        """Update task metadata; status changes go through set_task_status."""
        return await store.update(ResourceKind.TASKS, id, changes)

    @mcp.tool()
    async def set_task_status(id: str, status: str) -> Any:
        """Set a task to PLANNING, ON_HOLD, COMPLETED or CANCELLED."""
        return await store.set_status(id, status)

    @mcp.tool()
    async def analyze_task(id: str) -> Any:
        """Run the feasibility analysis for a task and cache the result."""
        return await store.analyze(id)

    @mcp.tool()
    async def commit_task(id: str, force: bool = False, plan: dict[str, Any] | None = None) -> Any:
        """Commit a task's staffing plan (defaults to the analysed plan)."""
        return await store.commit(id, plan=plan, force=force)

    @mcp.tool()
    async def get_sync_status() -> dict[str, Any]:
        """Return syncing flag, last error and API health."""
        return store.get_health()

    @mcp.tool()
    async def clear_local_storage() -> dict[str, Any]:
        """Delete the local mirror and analysis cache."""
        store.clear_storage()
        return store.get_health()

    return mcp


def build_store() -> SyncStore:
    return SyncStore(FetchCoordinator(), PersistenceMirror())


def main() -> None:
    logging.basicConfig(
        level=os.getenv("SCHEDIQ_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_server(build_store()).run()
