"""Durable key/value storage for tracker state.

Two keys are used by the pipeline: ``samples`` (owned by SampleStore) and
``retry_state`` (owned by SyncScheduler).  Values must be JSON-serializable.

``JsonFileStore`` keeps all entries in one JSON document and rewrites it
atomically (temp file + ``os.replace``) on every mutation.  An unreadable
document is logged and treated as empty, and a failed write is logged while
the entries keep being served from memory; neither is fatal.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

from gpsrelay.tracking.errors import StorageCorrupted

logger = logging.getLogger("gpsrelay.tracking.storage")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store; used in tests and for throwaway trackers."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        # Round-trip through JSON so values behave exactly as they would on disk
        self._data: dict[str, Any] = json.loads(json.dumps(initial or {}))
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            value = self._data.get(key)
            return json.loads(json.dumps(value)) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        encoded = json.loads(json.dumps(value))
        with self._lock:
            self._data[key] = encoded

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStore:
    """Key/value entries persisted in a single JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._write()

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._write()

    def _write(self) -> None:
        # Entries stay in memory on failure; the next mutation rewrites the whole document
        try:
            self._flush()
        except OSError:
            logger.exception("Could not write tracker state to %s", self._path)

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise StorageCorrupted(f"expected a JSON object, got {type(data).__name__}")
        except (OSError, ValueError, StorageCorrupted) as exc:
            logger.warning(
                "Tracker state at %s is unreadable (%s); starting empty", self._path, exc
            )
            return {}
        return data

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, separators=(",", ":"))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
