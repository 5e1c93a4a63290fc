"""Persisted key/value state for the exposure engine.

The sync cursor, the notified-id ledger, the exposure result set and the diary
are all stored as JSON-serializable values under fixed keys.  Writes are
synchronous: ``set()`` returns only after the value is durable, so a crash
right after a sync pass cannot lose a just-computed match.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger("notifyme.exposure.storage")

# Keys shared by the components that persist through a StateStore
LAST_SYNC_KEY = "ch.notify-me.exposure.lastSync"
NOTIFIED_IDS_KEY = "ch.notify-me.exposure.notifiedIds"
EXPOSURES_KEY = "ch.notify-me.exposure.events"
DIARY_KEY = "ch.notify-me.diary.checkIns"
FIRST_RUN_KEY = "ch.notify-me.isFirstRun"


class StateStore(ABC):
    """Minimal durable key/value store."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return a deep copy of the stored value, or ``default``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store ``value`` (JSON-serializable) durably."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""


class InMemoryStore(StateStore):
    """Process-local store, used in tests and for ephemeral sessions."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class JsonFileStore(StateStore):
    """Single JSON document on disk, rewritten atomically on every change.

    Usage::

        store = JsonFileStore(Path("~/.notifyme/state.json").expanduser())
        store.set(LAST_SYNC_KEY, 1700000000000)
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data = self._read()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Corrupt state file {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"State file {self._path} must contain a JSON object")
        logger.debug("Loaded %d state keys from %s", len(data), self._path)
        return data

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()
