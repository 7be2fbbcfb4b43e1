"""
Key/value stores for ASR Bench Lab.

Settings, snapshot history and dataset metadata cache entries are kept
as JSON-serializable values under string keys. :class:`FileKeyValueStore`
persists them to a single JSON document on disk; :class:`MemoryKeyValueStore`
keeps them in process (tests, throwaway sessions).
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


class KeyValueStore(ABC):
    """Async string-keyed store of JSON-compatible values."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under *key*, or ``None``."""
        ...  # pragma: no cover

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store *value* under *key*, replacing any previous value."""
        ...  # pragma: no cover

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key* if present."""
        ...  # pragma: no cover

    async def close(self) -> None:
        """Release backend resources."""


class MemoryKeyValueStore(KeyValueStore):
    """In-process store; values are JSON round-tripped to detach them."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileKeyValueStore(KeyValueStore):
    """Store backed by one JSON document, rewritten atomically on change.

    Args:
        path: Location of the JSON document (parent dirs are created).
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("kv_store_unreadable", path=str(self.path), error=str(exc))
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".kv-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _set_sync(self, key: str, value: Any) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _delete_sync(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data)

    # ── key/value (file access in worker threads, one writer at a time) ──

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._set_sync, key, value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete_sync, key)
