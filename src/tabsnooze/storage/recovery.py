"""Backup selection when the primary store fails validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tabsnooze.errors import CorruptionError
from tabsnooze.storage.backend import KeyValueBackend
from tabsnooze.storage.backup import sorted_backup_keys
from tabsnooze.storage.schema import CURRENT_SCHEMA_VERSION, empty_container
from tabsnooze.storage.validation import sanitize, validate_container

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    recovered: bool
    item_count: int = 0
    sanitized: bool = False
    source_key: str | None = None

    def raise_if_lost(self) -> None:
        if not self.recovered:
            raise CorruptionError("Primary store was corrupt and no backup held any items")


def _has_shape(data) -> bool:
    return isinstance(data, dict) and data.get("items") is not None and data.get("schedule") is not None


class RecoveryService:
    """Restore the primary container from the best available backup.

    Pass 1 takes the newest backup that validates unmodified. Pass 2
    sanitizes every backup and keeps the one with the most surviving items,
    preferring the newer on ties. If nothing survives, the primary is reset
    to an empty container.
    """

    def __init__(self, backend: KeyValueBackend, primary_key: str) -> None:
        self._backend = backend
        self._primary_key = primary_key

    async def recover(self) -> RecoveryResult:
        everything = await self._backend.get(None)
        keys = sorted_backup_keys(everything.keys())

        for key in keys:
            data = everything[key]
            if _has_shape(data) and validate_container(data).valid:
                restored = {**data, "version": CURRENT_SCHEMA_VERSION}
                await self._backend.set({self._primary_key: restored})
                count = len(restored["items"])
                logger.warning("Recovered %d items from backup %s", count, key)
                return RecoveryResult(recovered=True, item_count=count, source_key=key)

        best: dict | None = None
        best_key: str | None = None
        best_count = -1
        for key in keys:
            data = everything[key]
            if not _has_shape(data):
                continue
            candidate = sanitize(data)
            count = len(candidate["items"])
            # Strictly greater keeps the newer backup on ties.
            if count > best_count:
                best, best_key, best_count = candidate, key, count

        if best is not None and best_count > 0:
            await self._backend.set(
                {self._primary_key: {**best, "version": CURRENT_SCHEMA_VERSION}}
            )
            logger.warning(
                "No fully valid backup; recovered %d items from sanitized backup %s",
                best_count,
                best_key,
            )
            return RecoveryResult(
                recovered=True, item_count=best_count, sanitized=True, source_key=best_key
            )

        logger.error("No usable backup found; resetting store to empty")
        await self._backend.set({self._primary_key: empty_container()})
        return RecoveryResult(recovered=False, item_count=0)
