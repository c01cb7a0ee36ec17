"""Debounced, validated snapshots of the store with bounded retention."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Awaitable, Callable

from tabsnooze.storage.backend import KeyValueBackend
from tabsnooze.storage.validation import validate_container

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "snoozedTabs_backup_"
BACKUP_COUNT = 3
BACKUP_DEBOUNCE_SECONDS = 2.0


def backup_timestamp(key: str) -> int:
    try:
        return int(key[len(BACKUP_PREFIX):])
    except ValueError:
        return -1


def sorted_backup_keys(keys) -> list[str]:
    """Backup keys among *keys*, newest first."""
    return sorted(
        (k for k in keys if k.startswith(BACKUP_PREFIX)),
        key=backup_timestamp,
        reverse=True,
    )


class BackupManager:
    """Snapshot the container once writes have been quiet for ``debounce`` seconds.

    Each ``schedule()`` call cancels the pending timer and arms a new one, so
    only the last write in a burst is snapshotted. Failures are logged and
    never reach the write path.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        debounce: float = BACKUP_DEBOUNCE_SECONDS,
        keep: int = BACKUP_COUNT,
        after_snapshot: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._backend = backend
        self.debounce = debounce
        self.keep = max(1, keep)
        self._after_snapshot = after_snapshot
        self._timer: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._latest: dict | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule(self, container: dict) -> None:
        """(Re)start the debounce timer for *container*."""
        self._latest = copy.deepcopy(container)
        self.cancel()
        self._timer = asyncio.ensure_future(self._fire_later())

    def cancel(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def flush(self) -> None:
        """Wait for a snapshot in progress, then take the pending one now, if any."""
        if self._inflight is not None and not self._inflight.done():
            await self._inflight
        if not self.pending:
            return
        self.cancel()
        await self._run()

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.debounce)
        # Past this point a newer schedule() must not cancel a half-written snapshot.
        self._timer = None
        self._inflight = asyncio.current_task()
        try:
            await self._run()
        finally:
            if self._inflight is asyncio.current_task():
                self._inflight = None

    async def _run(self) -> None:
        data, self._latest = self._latest, None
        if data is None:
            return
        await self.snapshot(data)
        if self._after_snapshot is not None:
            try:
                await self._after_snapshot()
            except Exception as e:
                logger.warning("Post-backup hook failed: %s", e)

    async def snapshot(self, container: dict) -> str | None:
        """Store *container* as a new backup and prune old ones. Returns the new key."""
        result = validate_container(container)
        if not result.valid:
            logger.warning("Backup skipped due to invalid data: %s", result.errors)
            return None

        try:
            existing = sorted_backup_keys((await self._backend.get(None)).keys())
            stamp = int(time.time() * 1000)
            if existing:
                stamp = max(stamp, backup_timestamp(existing[0]) + 1)
            key = f"{BACKUP_PREFIX}{stamp}"
            await self._backend.set({key: container})

            stale = existing[self.keep - 1:]
            if stale:
                await self._backend.remove(stale)
            logger.debug("Backup %s written, pruned %d", key, len(stale))
            return key
        except Exception as e:
            logger.warning("Backup rotation failed: %s", e)
            return None

    async def list_backups(self) -> list[str]:
        return sorted_backup_keys((await self._backend.get(None)).keys())
