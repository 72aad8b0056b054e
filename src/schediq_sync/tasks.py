"""
Task lifecycle rules: the status state machine and team-work editing.

A task reaches COMMITTED only as a side effect of a successful commit call.
Direct status edits may target every other state. Once committed, the set of
participating teams and their per-team effort and dependencies are frozen.
"""

from __future__ import annotations

import copy
from typing import Any

from .models import TaskStatus

DIRECT_STATUS_TARGETS = frozenset(
    {TaskStatus.PLANNING, TaskStatus.ON_HOLD, TaskStatus.COMPLETED, TaskStatus.CANCELLED}
)
LOCKED_FIELDS = ("teams_involved", "team_work")
DEFAULT_EFFORT_HOURS = 8


class TaskRuleError(ValueError):
    """Raised when a task write would break a lifecycle or team-work rule."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def parse_status(value: Any) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(str(value or "").strip().upper())
    except ValueError:
        raise TaskRuleError("invalid_status", f"unknown task status '{value}'") from None


def is_committed(task: dict[str, Any] | None) -> bool:
    if not task:
        return False
    return str(task.get("status") or "").upper() == TaskStatus.COMMITTED.value


def check_direct_status(target: Any) -> TaskStatus:
    """Validate a status written through the dedicated status endpoint."""
    status = parse_status(target)
    if status not in DIRECT_STATUS_TARGETS:
        raise TaskRuleError(
            "commit_required",
            "tasks become COMMITTED only through a commit, not a status edit",
        )
    return status


def check_locked_fields(task: dict[str, Any] | None, patch: dict[str, Any]) -> None:
    """Reject changes to team participation on a committed task."""
    if not is_committed(task):
        return
    for key in LOCKED_FIELDS:
        if key in patch and patch[key] != task.get(key):
            raise TaskRuleError(
                "task_locked",
                f"'{key}' cannot change while the task is COMMITTED",
            )


def _team_work(draft: dict[str, Any]) -> dict[str, dict[str, Any]]:
    team_work = draft.get("team_work")
    return team_work if isinstance(team_work, dict) else {}


def validate_task(draft: dict[str, Any]) -> list[str]:
    """Return every problem found in a task draft; empty when it is valid."""
    problems: list[str] = []
    if not draft.get("module_id"):
        problems.append("a module is required")

    teams = [str(team_id) for team_id in draft.get("teams_involved") or []]
    if not teams:
        problems.append("at least one team must be involved")
    if len(set(teams)) != len(teams):
        problems.append("teams_involved lists a team more than once")

    team_work = _team_work(draft)
    if set(teams) != {str(key) for key in team_work}:
        problems.append("teams_involved and team_work must name the same teams")

    for team_id, work in team_work.items():
        work = work if isinstance(work, dict) else {}
        effort = work.get("effort_hours", 0)
        if not isinstance(effort, (int, float)) or isinstance(effort, bool) or effort < 0:
            problems.append(f"team {team_id}: effort_hours must be a non-negative number")
        for dep in work.get("depends_on") or []:
            if str(dep) == str(team_id):
                problems.append(f"team {team_id} cannot depend on itself")
            elif str(dep) not in teams:
                problems.append(f"team {team_id} depends on non-participant {dep}")
    return problems


def toggle_team(draft: dict[str, Any], team_id: str) -> dict[str, Any]:
    """Add a team with default effort, or remove it and every edge to it."""
    nxt = copy.deepcopy(draft)
    teams = list(nxt.get("teams_involved") or [])
    team_work = dict(_team_work(nxt))

    if team_id not in teams:
        teams.append(team_id)
        team_work[team_id] = {"effort_hours": DEFAULT_EFFORT_HOURS, "depends_on": []}
    else:
        teams = [t for t in teams if t != team_id]
        team_work.pop(team_id, None)
        for work in team_work.values():
            if work.get("depends_on"):
                work["depends_on"] = [dep for dep in work["depends_on"] if dep != team_id]

    nxt["teams_involved"] = teams
    nxt["team_work"] = team_work
    return nxt


def toggle_dependency(draft: dict[str, Any], team_id: str, depends_on: str) -> dict[str, Any]:
    nxt = copy.deepcopy(draft)
    team_work = _team_work(nxt)
    if team_id == depends_on or team_id not in team_work or depends_on not in team_work:
        return nxt

    work = team_work[team_id]
    deps = list(work.get("depends_on") or [])
    if depends_on in deps:
        deps.remove(depends_on)
    else:
        deps.append(depends_on)
    work["depends_on"] = deps
    return nxt


def total_effort_hours(task: dict[str, Any]) -> float:
    total = 0.0
    for work in _team_work(task).values():
        if isinstance(work, dict):
            total += work.get("effort_hours") or 0
    return total


def build_fallback_plan(task: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Commit plan derived from the task itself when no analysis plan exists."""
    return {
        team_id: {
            "team_id": team_id,
            "effort_hours": (work or {}).get("effort_hours") or 0,
            "owner_type": "primary",
        }
        for team_id, work in _team_work(task).items()
    }
