"""
Shared value types for the resource synchronization layer.

Records themselves stay plain JSON dictionaries, since the remote service owns
their shape. The types here name the fixed value sets and carry the state
container that the store, the mirror and the views pass around.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResourceKind(str, Enum):
    """Top-level collections that can be refreshed independently."""

    TEAMS = "teams"
    MEMBERS = "members"
    MODULES = "modules"
    TASKS = "tasks"

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]

    @property
    def path(self) -> str:
        return _KIND_PATHS[self]


_KIND_LABELS = {
    ResourceKind.TEAMS: "Teams",
    ResourceKind.MEMBERS: "Personnel",
    ResourceKind.MODULES: "Modules",
    ResourceKind.TASKS: "Tasks",
}

_KIND_PATHS = {
    ResourceKind.TEAMS: "teams",
    ResourceKind.MEMBERS: "team-members",
    ResourceKind.MODULES: "modules",
    ResourceKind.TASKS: "tasks",
}


class Role(str, Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)


class ExperienceLevel(str, Enum):
    JUNIOR = "Junior"
    MID_SENIOR = "Mid-Senior"
    SENIOR = "Senior"
    LEAD = "Lead"

    @property
    def rank(self) -> int:
        return list(ExperienceLevel).index(self)


class TaskStatus(str, Enum):
    PLANNING = "PLANNING"
    COMMITTED = "COMMITTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ON_HOLD = "ON_HOLD"


@dataclass(frozen=True)
class OwnershipEntry:
    """One (team, member, role) claim on a module."""

    team_id: str
    member_id: str
    role: Role

    def to_dict(self) -> dict[str, str]:
        return {
            "team_id": self.team_id,
            "member_id": self.member_id,
            "role": self.role.value,
        }


def _as_record_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


@dataclass
class AppState:
    """Authoritative snapshot of every remote collection."""

    teams: list[dict[str, Any]] = field(default_factory=list)
    members: list[dict[str, Any]] = field(default_factory=list)
    modules: list[dict[str, Any]] = field(default_factory=list)
    tasks: list[dict[str, Any]] = field(default_factory=list)
    assignments: list[dict[str, Any]] = field(default_factory=list)

    def collection(self, kind: ResourceKind) -> list[dict[str, Any]]:
        return getattr(self, kind.value)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "teams": self.teams,
            "members": self.members,
            "modules": self.modules,
            "tasks": self.tasks,
            "assignments": self.assignments,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> AppState:
        """Build a state from persisted JSON, ignoring malformed sections."""
        if not isinstance(raw, dict):
            return cls()
        return cls(
            teams=_as_record_list(raw.get("teams")),
            members=_as_record_list(raw.get("members")),
            modules=_as_record_list(raw.get("modules")),
            tasks=_as_record_list(raw.get("tasks")),
            assignments=_as_record_list(raw.get("assignments")),
        )
