"""
Process-wide synchronization store.

Holds the authoritative snapshot of every remote collection plus the analysis
cache, keeps the durable mirror in step with it and notifies observers after
each committed change. The remote service stays the source of truth: writes are
never applied locally, they are followed by a re-fetch of the written kind.

Everything runs on one event loop. State changes happen between awaits, so
observers only ever see complete snapshots.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from . import codec, tasks
from .fetch import FetchCoordinator
from .mirror import PersistenceMirror
from .models import AppState, ResourceKind, TaskStatus

logger = logging.getLogger(__name__)

Observer = Callable[[AppState, dict[str, Any]], None]

UPDATE_METHODS = {
    ResourceKind.TEAMS: "PUT",
    ResourceKind.MEMBERS: "PUT",
    ResourceKind.MODULES: "PATCH",
    ResourceKind.TASKS: "PATCH",
}


@dataclass
class SyncHealth:
    """Outcome of background refreshes."""

    last_error: str | None = None
    # kind -> "<Label>: <message>" until that kind refreshes again
    errors: dict[str, str] = field(default_factory=dict)
    last_error_at: float | None = None
    failure_count: int = 0
    last_success_at: float | None = None


class SyncStore:
    def __init__(self, coordinator: FetchCoordinator, mirror: PersistenceMirror):
        self._coordinator = coordinator
        self._mirror = mirror
        self._state = AppState()
        self._analysis_cache: dict[str, Any] = {}
        self._observers: list[Observer] = []
        self._health = SyncHealth()
        self._syncing = 0

    def load(self) -> None:
        """Rehydrate state and analysis cache from the mirror."""
        self._state = self._mirror.load_state()
        self._analysis_cache = self._mirror.load_cache()
        logger.info(
            "Loaded mirror from %s (%d teams, %d members, %d modules, %d tasks)",
            self._mirror.data_dir,
            len(self._state.teams),
            len(self._state.members),
            len(self._state.modules),
            len(self._state.tasks),
        )

    @property
    def is_syncing(self) -> bool:
        return self._syncing > 0

    @property
    def last_error(self) -> str | None:
        """Latest refresh failure, cleared by any successful change."""
        return self._health.last_error

    def get_snapshot(self) -> tuple[AppState, dict[str, Any]]:
        return copy.deepcopy(self._state), copy.deepcopy(self._analysis_cache)

    def find(self, kind: ResourceKind | str, record_id: str) -> dict[str, Any] | None:
        for record in self._state.collection(ResourceKind(kind)):
            if str(record.get("id")) == str(record_id):
                return copy.deepcopy(record)
        return None

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _commit(
        self,
        collections: dict[ResourceKind, list[dict[str, Any]]] | None = None,
        cache_updates: dict[str, Any] | None = None,
    ) -> None:
        for kind, records in (collections or {}).items():
            setattr(self._state, kind.value, records)
            self._health.errors.pop(kind.value, None)
        if cache_updates:
            self._analysis_cache = {**self._analysis_cache, **cache_updates}

        self._health.last_error = None
        self._health.last_success_at = time.time()

        try:
            self._mirror.save(self._state, self._analysis_cache)
        except OSError as exc:
            logger.warning("Mirror write failed, keeping in-memory state: %s", exc)
        self._notify()

    def _notify(self) -> None:
        for observer in list(self._observers):
            state, cache = self.get_snapshot()
            try:
                observer(state, cache)
            except Exception:
                logger.exception("Store observer %r failed", observer)

    def _set_error(self, kind: ResourceKind, message: str) -> None:
        self._health.errors[kind.value] = message
        self._health.last_error = message
        self._health.last_error_at = time.time()
        self._health.failure_count += 1
        logger.warning("Refresh failed: %s", message)

    async def refresh_one(self, kind: ResourceKind | str) -> None:
        """Replace one collection with the server's copy; never raises."""
        kind = ResourceKind(kind)
        if not self._coordinator.try_acquire(kind.value):
            logger.debug("Refresh of %s already in flight, skipping", kind.value)
            return

        self._syncing += 1
        try:
            body = await self._coordinator.call("GET", self._coordinator.url_for(kind.path))
            self._commit({kind: codec.decode_collection(kind, body)})
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            self._set_error(kind, f"{kind.label}: {message}")
        finally:
            self._syncing -= 1
            self._coordinator.release(kind.value)

    async def refresh_all(self) -> None:
        self._syncing += 1
        try:
            await asyncio.gather(
                *(self.refresh_one(kind) for kind in ResourceKind),
                return_exceptions=True,
            )
        finally:
            self._syncing -= 1

    def _prepare_create(self, kind: ResourceKind, draft: dict[str, Any]) -> dict[str, Any]:
        if kind is ResourceKind.MODULES:
            return codec.normalize_ownership_for_write(draft, self._state.teams)

        payload = codec.sanitize_for_write(draft)
        if kind is ResourceKind.TASKS:
            status = tasks.parse_status(payload.get("status") or TaskStatus.PLANNING)
            if status is TaskStatus.COMMITTED:
                raise tasks.TaskRuleError(
                    "commit_required", "a new task cannot start out COMMITTED"
                )
            payload["status"] = status.value
            problems = tasks.validate_task(payload)
            if problems:
                raise tasks.TaskRuleError("invalid_task", "; ".join(problems))
        return payload

    def _prepare_update(
        self, kind: ResourceKind, record_id: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        if kind is ResourceKind.MODULES:
            # the write payload is the full module, so fill it from the known record
            merged = self.find(kind, record_id) or {}
            if "owners" in patch or "module_owners" in patch:
                merged.pop("owners", None)
                merged.pop("module_owners", None)
            merged.update(patch)
            return codec.normalize_ownership_for_write(merged, self._state.teams)

        payload = codec.sanitize_for_write(patch)
        if kind is ResourceKind.TASKS:
            # status only moves through set_status / commit
            payload.pop("status", None)
            current = self.find(kind, record_id)
            tasks.check_locked_fields(current, payload)
            if any(key in payload for key in ("module_id", *tasks.LOCKED_FIELDS)):
                problems = tasks.validate_task({**(current or {}), **payload})
                if problems:
                    raise tasks.TaskRuleError("invalid_task", "; ".join(problems))
            return payload

        return {**payload, "id": record_id}

    async def create(self, kind: ResourceKind | str, draft: dict[str, Any]) -> Any:
        kind = ResourceKind(kind)
        payload = self._prepare_create(kind, draft)
        result = await self._coordinator.call("POST", self._coordinator.url_for(kind.path), payload)
        await self.refresh_one(kind)
        return result

    async def update(self, kind: ResourceKind | str, record_id: str, patch: dict[str, Any]) -> Any:
        kind = ResourceKind(kind)
        payload = self._prepare_update(kind, record_id, patch)
        result = await self._coordinator.call(
            UPDATE_METHODS[kind],
            self._coordinator.url_for(kind.path, record_id),
            payload,
        )
        await self.refresh_one(kind)
        return result

    async def set_status(self, task_id: str, status: TaskStatus | str) -> Any:
        target = tasks.check_direct_status(status)
        result = await self._coordinator.call(
            "PATCH",
            self._coordinator.url_for(ResourceKind.TASKS.path, task_id, "status"),
            {"status": target.value},
        )
        await self.refresh_one(ResourceKind.TASKS)
        return result

    async def analyze(self, task_id: str) -> Any:
        """Run the remote feasibility analysis for one task and cache the result."""
        result = await self._coordinator.call(
            "POST", self._coordinator.url_for(ResourceKind.TASKS.path, task_id, "analyze")
        )
        if result is not None:
            self._commit(cache_updates={str(task_id): result})
        return result

    def resolve_plan(self, task_id: str, plan: dict[str, Any] | None = None) -> dict[str, Any]:
        """Pick the plan to commit: explicit, else analysed, else derived from the task."""
        if plan:
            return plan
        cached = self._analysis_cache.get(str(task_id))
        if isinstance(cached, dict) and cached.get("plan"):
            return cached["plan"]
        return tasks.build_fallback_plan(self.find(ResourceKind.TASKS, task_id) or {})

    async def commit(self, task_id: str, plan: dict[str, Any] | None = None, force: bool = False) -> Any:
        body = {"plan": self.resolve_plan(task_id, plan), "force": bool(force)}
        result = await self._coordinator.call(
            "POST",
            self._coordinator.url_for(ResourceKind.TASKS.path, task_id, "commit"),
            body,
        )
        await self.refresh_one(ResourceKind.TASKS)
        return result

    def clear_storage(self) -> None:
        """Forget everything, on disk and in memory."""
        self._mirror.clear()
        self._state = AppState()
        self._analysis_cache = {}
        self._health = SyncHealth()
        self._notify()

    def get_health(self) -> dict[str, Any]:
        return {
            "isSyncing": self.is_syncing,
            "lastError": self.last_error,
            "errorsByKind": dict(self._health.errors),
            "lastErrorAt": self._health.last_error_at,
            "failureCount": self._health.failure_count,
            "lastSuccessAt": self._health.last_success_at,
            "counts": {
                key: len(records) for key, records in self._state.to_dict().items()
            },
            "analysisCacheSize": len(self._analysis_cache),
            "api": self._coordinator.get_health(),
        }

    async def aclose(self) -> None:
        await self._coordinator.aclose()
