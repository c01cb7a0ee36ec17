"""Key-value backend protocol and its file-backed and in-memory implementations."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from tabsnooze.errors import BackendError

logger = logging.getLogger(__name__)

Keys = str | list[str] | None


def _key_list(keys: Keys) -> list[str] | None:
    if keys is None:
        return None
    if isinstance(keys, str):
        return [keys]
    return list(keys)


@runtime_checkable
class KeyValueBackend(Protocol):
    """Protocol the persistent store must implement."""

    async def get(self, keys: Keys = None) -> dict[str, Any]:
        """Return the requested keys (all keys when *keys* is None). Missing keys are omitted."""
        ...

    async def set(self, values: dict[str, Any]) -> None: ...

    async def remove(self, keys: Keys) -> None: ...

    async def get_bytes_in_use(self, keys: Keys = None) -> int:
        """Approximate size in bytes; 0 means unsupported."""
        ...


class MemoryBackend:
    """Dict-backed store. Values are deep-copied in and out like a real serializer would."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, keys: Keys = None) -> dict[str, Any]:
        wanted = _key_list(keys)
        if wanted is None:
            return copy.deepcopy(self._data)
        return {k: copy.deepcopy(self._data[k]) for k in wanted if k in self._data}

    async def set(self, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self._data[key] = copy.deepcopy(value)

    async def remove(self, keys: Keys) -> None:
        for key in _key_list(keys) or []:
            self._data.pop(key, None)

    async def get_bytes_in_use(self, keys: Keys = None) -> int:
        return 0


class JsonFileBackend:
    """All keys live in a single JSON document, replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise BackendError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise BackendError(f"{self.path} does not contain a JSON object")
        return data

    def _dump(self, data: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        except OSError as e:
            raise BackendError(f"Failed to write {self.path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            Path(tmp).unlink(missing_ok=True)
            raise BackendError(f"Failed to write {self.path}: {e}") from e

    async def get(self, keys: Keys = None) -> dict[str, Any]:
        async with self._lock:
            data = self._load()
        wanted = _key_list(keys)
        if wanted is None:
            return data
        return {k: data[k] for k in wanted if k in data}

    async def set(self, values: dict[str, Any]) -> None:
        async with self._lock:
            data = self._load()
            data.update(values)
            self._dump(data)

    async def remove(self, keys: Keys) -> None:
        async with self._lock:
            data = self._load()
            for key in _key_list(keys) or []:
                data.pop(key, None)
            self._dump(data)

    async def get_bytes_in_use(self, keys: Keys = None) -> int:
        wanted = _key_list(keys)
        if wanted is None:
            try:
                return self.path.stat().st_size
            except OSError:
                return 0
        data = await self.get(wanted)
        return sum(len(json.dumps({k: v}, ensure_ascii=False).encode()) for k, v in data.items())


class SessionStore:
    """Wrapper around an optional ephemeral backend. Every call degrades to a no-op."""

    def __init__(self, backend: KeyValueBackend | None = None) -> None:
        self._backend = backend

    @property
    def available(self) -> bool:
        return self._backend is not None

    async def get(self, keys: Keys = None) -> dict[str, Any]:
        if self._backend is None:
            return {}
        try:
            return await self._backend.get(keys)
        except Exception as e:
            logger.warning("Session get failed: %s", e)
            return {}

    async def set(self, values: dict[str, Any]) -> None:
        if self._backend is None:
            return
        try:
            await self._backend.set(values)
        except Exception as e:
            logger.warning("Session set failed: %s", e)

    async def remove(self, keys: Keys) -> None:
        if self._backend is None:
            return
        try:
            await self._backend.remove(keys)
        except Exception as e:
            logger.warning("Session remove failed: %s", e)
