"""
Durable on-disk mirror of the store state and the analysis cache.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .models import AppState

logger = logging.getLogger(__name__)

STORAGE_KEY = "schediq_resource_manager_data"
CACHE_KEY = "schediq_analysis_cache"
DEFAULT_DATA_DIR = "~/.schediq"


class PersistenceMirror:
    """Two independent JSON entries, rewritten after every committed mutation."""

    def __init__(self, data_dir: str | os.PathLike[str] | None = None):
        raw_dir = data_dir or os.getenv("SCHEDIQ_DATA_DIR", DEFAULT_DATA_DIR)
        self._data_dir = Path(raw_dir).expanduser()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _path(self, key: str) -> Path:
        return self._data_dir / f"{key}.json"

    def read(self, key: str, default: Any) -> Any:
        path = self._path(key)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return default
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable mirror entry %s: %s", path, exc)
            return default

    def write(self, key: str, value: Any) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._data_dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(value, handle)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load_state(self) -> AppState:
        return AppState.from_dict(self.read(STORAGE_KEY, {}))

    def load_cache(self) -> dict[str, Any]:
        cache = self.read(CACHE_KEY, {})
        if not isinstance(cache, dict):
            logger.warning("Ignoring analysis cache with unexpected shape")
            return {}
        return cache

    def save(self, state: AppState, cache: dict[str, Any]) -> None:
        self.write(STORAGE_KEY, state.to_dict())
        self.write(CACHE_KEY, cache)

    def clear(self) -> None:
        for key in (STORAGE_KEY, CACHE_KEY):
            self._path(key).unlink(missing_ok=True)
