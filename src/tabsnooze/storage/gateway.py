"""Storage gateway: the single owner of the snooze container.

Every read-modify-write goes through ``mutate()``, which holds one
``asyncio.Lock`` for the whole cycle. Reads outside it always hit the
backend again instead of caching.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from tabsnooze.errors import FutureSchemaError
from tabsnooze.storage.backend import KeyValueBackend, SessionStore
from tabsnooze.storage.backup import BACKUP_COUNT, BACKUP_DEBOUNCE_SECONDS, BackupManager
from tabsnooze.storage.recovery import RecoveryResult, RecoveryService
from tabsnooze.storage.schema import (
    CURRENT_SCHEMA_VERSION,
    detect_version,
    empty_container,
    ensure_valid,
    run_migrations,
    time_key,
)
from tabsnooze.storage.validation import is_restorable_url, sanitize, validate_container
from tabsnooze.surfaces.base import Notification

if TYPE_CHECKING:
    from tabsnooze.surfaces.base import NotificationService, RestorationSurface

logger = logging.getLogger(__name__)

PRIMARY_KEY = "snoooze_v2"
LEGACY_KEY = "snoozedTabs"
LEGACY_BACKUP_KEY = "snoozedTabs_legacy_backup"
PENDING_RECOVERY_KEY = "pendingRecoveryNotification"

STORAGE_LIMIT = 10 * 1024 * 1024
WARNING_THRESHOLD = 0.8 * STORAGE_LIMIT
CLEAR_THRESHOLD = 0.7 * STORAGE_LIMIT
WARNING_THROTTLE_MS = 24 * 60 * 60 * 1000

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


def _to_ms(pop_time: int | float | datetime) -> int:
    if isinstance(pop_time, datetime):
        return int(pop_time.timestamp() * 1000)
    return int(pop_time)


def _new_id() -> str:
    return str(uuid.uuid4())


def _is_plain_dict(value: Any) -> bool:
    return isinstance(value, dict)


def _add_to_schedule(container: dict, pop_time: int | float, item_id: str) -> None:
    container["schedule"].setdefault(time_key(pop_time), []).append(item_id)


def _drop_from_schedule(container: dict, pop_time: Any, item_id: str) -> None:
    try:
        key = time_key(pop_time)
    except (TypeError, ValueError, OverflowError):
        return
    bucket = container["schedule"].get(key)
    if not isinstance(bucket, list):
        return
    remaining = [i for i in bucket if i != item_id]
    if remaining:
        container["schedule"][key] = remaining
    else:
        del container["schedule"][key]


def _remove_item(container: dict, item_id: str) -> bool:
    item = container["items"].pop(item_id, None)
    if item is None:
        return False
    _drop_from_schedule(container, item.get("popTime"), item_id)
    return True


@dataclass
class TabInput:
    """A snooze request: the tab to defer."""

    url: str
    title: str | None = None
    favicon: str | None = None
    index: int | None = None


@dataclass
class ImportResult:
    success: bool
    added_count: int = 0
    error: str | None = None


class StorageGateway:
    """Normalized access to the backing store plus all mutating operations."""

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        session: SessionStore | None = None,
        notifier: NotificationService | None = None,
        backup_count: int = BACKUP_COUNT,
        backup_debounce: float = BACKUP_DEBOUNCE_SECONDS,
    ) -> None:
        self.backend = backend
        self.session = session or SessionStore()
        self.notifier = notifier
        self._lock = asyncio.Lock()
        self.backups = BackupManager(
            backend,
            debounce=backup_debounce,
            keep=backup_count,
            after_snapshot=self.check_storage_size,
        )
        self.recovery = RecoveryService(backend, PRIMARY_KEY)

    # ── Raw access ────────────────────────────────────────────

    async def read(self) -> dict:
        """Fetch the container, coercing a malformed shape. Raises only on backend failure."""
        res = await self.backend.get(PRIMARY_KEY)
        data = res.get(PRIMARY_KEY)
        if not _is_plain_dict(data):
            return empty_container()
        return {
            "version": data.get("version") or CURRENT_SCHEMA_VERSION,
            "items": data["items"] if _is_plain_dict(data.get("items")) else {},
            "schedule": data["schedule"] if _is_plain_dict(data.get("schedule")) else {},
        }

    async def write(self, container: dict) -> None:
        """Persist *container* and arm the backup debounce."""
        await self.backend.set({PRIMARY_KEY: container})
        self.backups.schedule(container)

    async def mutate(self, fn: Callable[[dict], T], label: str = "mutation") -> T:
        """Run ``fn(container)`` as one serialized read-modify-write cycle.

        ``fn`` edits the container in place. A failure is logged here and
        re-raised to this caller only; the lock is released either way so
        later queued mutations still run.
        """
        async with self._lock:
            try:
                container = await self.read()
                result = fn(container)
                await self.write(container)
                return result
            except Exception as e:
                logger.error("Storage %s failed: %s", label, e)
                raise

    # ── Queries ───────────────────────────────────────────────

    async def get_validated(self) -> dict:
        """Read the container; sanitize and persist it first if it fails validation."""
        container = await self.read()
        if validate_container(container).valid:
            return container

        async with self._lock:
            container = await self.read()
            result = validate_container(container)
            if result.valid:
                return container
            logger.warning("Validation errors during read, sanitizing and persisting: %s", result.errors)
            container = {**sanitize(container), "version": CURRENT_SCHEMA_VERSION}
            await self.write(container)
            return container

    async def export(self) -> dict:
        return await self.get_validated()

    async def list_items(self) -> list[dict]:
        container = await self.get_validated()
        return sorted(container["items"].values(), key=lambda item: item["popTime"])

    # ── Mutations ─────────────────────────────────────────────

    async def snooze(
        self,
        tab: TabInput,
        pop_time: int | float | datetime,
        group_id: str | None = None,
    ) -> str | None:
        """Schedule *tab* to reopen at *pop_time*. Returns the new item id, or None if skipped."""
        if not is_restorable_url(tab.url):
            logger.warning("Skipping invalid/restricted URL: %s", tab.url)
            return None

        pop_ms = _to_ms(pop_time)

        def add(container: dict) -> str:
            item_id = _new_id()
            while item_id in container["items"]:
                item_id = _new_id()
            container["items"][item_id] = {
                "id": item_id,
                "url": tab.url,
                "title": tab.title,
                "favicon": tab.favicon,
                "creationTime": now_ms(),
                "popTime": pop_ms,
                "groupId": group_id,
                "index": tab.index,
            }
            _add_to_schedule(container, pop_ms, item_id)
            return item_id

        return await self.mutate(add, "snooze")

    async def remove_item(self, item_id: str) -> bool:
        return await self.mutate(lambda c: _remove_item(c, item_id), "remove item")

    async def remove_group(self, group_id: str) -> int:
        def remove(container: dict) -> int:
            ids = [i for i, item in container["items"].items() if item.get("groupId") == group_id]
            for item_id in ids:
                _remove_item(container, item_id)
            return len(ids)

        return await self.mutate(remove, "remove group")

    async def remove_restored(self, item_ids: list[str]) -> int:
        """Drop items that were reopened successfully."""
        def remove(container: dict) -> int:
            return sum(1 for item_id in item_ids if _remove_item(container, item_id))

        return await self.mutate(remove, "post-restore cleanup")

    async def reschedule(self, item_ids: list[str], new_pop_time: int) -> int:
        """Move *item_ids* to *new_pop_time*, leaving their old buckets."""
        def move(container: dict) -> int:
            moved = 0
            for item_id in item_ids:
                item = container["items"].get(item_id)
                if item is None:
                    continue
                _drop_from_schedule(container, item.get("popTime"), item_id)
                item["popTime"] = new_pop_time
                _add_to_schedule(container, new_pop_time, item_id)
                moved += 1
            return moved

        return await self.mutate(move, "failure reschedule")

    def _prepare_payload(self, raw: Any) -> dict | None:
        """Migrate and repair an import payload. None means nothing recognizable."""
        version = detect_version(raw)
        if version is None:
            return None
        if version > CURRENT_SCHEMA_VERSION:
            raise FutureSchemaError(version, CURRENT_SCHEMA_VERSION)

        data = run_migrations(raw, version, CURRENT_SCHEMA_VERSION)
        data = {**data, "version": CURRENT_SCHEMA_VERSION}
        result = validate_container(data)
        if not result.valid:
            logger.warning("Import data validation errors, sanitizing: %s", result.errors)
            data = {**sanitize(data), "version": CURRENT_SCHEMA_VERSION}
        return data

    async def import_items(self, raw: Any) -> ImportResult:
        """Merge a v1 or v2 payload into the store, reassigning colliding ids."""
        if not isinstance(raw, dict):
            return ImportResult(False, error="Invalid data structure")

        try:
            payload = self._prepare_payload(raw)
        except FutureSchemaError as e:
            return ImportResult(False, error=str(e))

        if payload is None or not payload["items"]:
            return ImportResult(True, added_count=0)

        incoming = payload["items"]

        def merge(container: dict) -> int:
            for original_id, item in incoming.items():
                final_id = original_id
                while final_id in container["items"]:
                    final_id = _new_id()
                container["items"][final_id] = {**item, "id": final_id}
                _add_to_schedule(container, item["popTime"], final_id)
            container["version"] = CURRENT_SCHEMA_VERSION
            return len(incoming)

        try:
            added = await self.mutate(merge, "import")
        except Exception as e:
            return ImportResult(False, error=str(e))
        return ImportResult(True, added_count=added)

    async def replace_all(self, raw: Any) -> None:
        """Overwrite the store with *raw* after migrating it. Rejects future versions."""
        version = detect_version(raw)
        if version is not None and version > CURRENT_SCHEMA_VERSION:
            raise FutureSchemaError(version, CURRENT_SCHEMA_VERSION)

        if version is None:
            data = empty_container()
        else:
            data = run_migrations(raw, version, CURRENT_SCHEMA_VERSION)
            data = {**data, "version": data.get("version") or CURRENT_SCHEMA_VERSION}

        async with self._lock:
            await self.backend.set({PRIMARY_KEY: data})

    # ── Manual restore ────────────────────────────────────────

    async def restore_group(self, group_id: str, surface: RestorationSurface) -> bool:
        """Reopen a whole window group now; remove it only if every entry opened."""
        container = await self.read()
        members = [item for item in container["items"].values() if item.get("groupId") == group_id]
        if not members:
            return False

        members.sort(key=lambda item: item.get("index") or 0)
        urls = [item["url"] for item in members]
        handle = await surface.create_surface(urls, True)
        if handle is not None and not handle.entries:
            try:
                handle = await surface.refresh_surface(handle.id)
            except Exception as e:
                logger.debug("Refreshing surface failed: %s", e)

        if handle is not None and len(handle.entries) == len(urls):
            await self.remove_group(group_id)
            return True
        logger.warning("Partial restore detected for manual group restore %s", group_id)
        return False

    # ── Startup & housekeeping ────────────────────────────────

    async def recover(self) -> RecoveryResult:
        async with self._lock:
            return await self.recovery.recover()

    async def init_storage(self) -> dict:
        """Startup path: recover if corrupt, migrate, repair, retire the legacy key."""
        everything = await self.backend.get(None)
        primary = everything.get(PRIMARY_KEY)
        legacy = everything.get(LEGACY_KEY)

        if primary is not None and not validate_container(primary).valid:
            result = await self.recover()
            await self.session.set({PENDING_RECOVERY_KEY: result.item_count})
            await self._notify_recovery(result)
            primary = (await self.backend.get(PRIMARY_KEY)).get(PRIMARY_KEY)

        async with self._lock:
            container = ensure_valid(primary, legacy)
            await self.backend.set({PRIMARY_KEY: container})

            if legacy and not primary:
                logger.info("Detected legacy data, moving it to %s", LEGACY_BACKUP_KEY)
                await self.backend.set({LEGACY_BACKUP_KEY: legacy})
                await self.backend.remove(LEGACY_KEY)

        await self.check_storage_size()
        return container

    async def _notify_recovery(self, result: RecoveryResult) -> None:
        if self.notifier is None:
            return
        if result.recovered:
            message = f"Recovered {result.item_count} snoozed tabs from backup."
        else:
            message = "Snoozed tabs were corrupted and could not be recovered."
        try:
            await self.notifier.create(
                "storage-recovery",
                Notification(title="Snoozed tabs storage repaired", message=message, priority=1),
            )
        except Exception as e:
            logger.warning("Recovery notification failed: %s", e)

    async def check_storage_size(self) -> None:
        """Raise a throttled warning when the store nears its size limit. Never raises."""
        try:
            bytes_used = await self.backend.get_bytes_in_use(None)
            state = await self.backend.get(["sizeWarningActive", "lastSizeWarningAt"])
            was_active = bool(state.get("sizeWarningActive", False))

            if bytes_used == 0:
                if was_active:
                    await self.backend.set({"sizeWarningActive": False})
                return

            should_be_active = was_active
            if bytes_used > WARNING_THRESHOLD:
                should_be_active = True
            elif bytes_used < CLEAR_THRESHOLD:
                should_be_active = False

            if should_be_active != was_active:
                await self.backend.set({"sizeWarningActive": should_be_active})

            if should_be_active and not was_active:
                last_warning = state.get("lastSizeWarningAt")
                now = now_ms()
                if not last_warning or now - last_warning > WARNING_THROTTLE_MS:
                    if self.notifier is not None:
                        await self.notifier.create(
                            "storage-warning",
                            Notification(
                                title="Snooze storage is almost full",
                                message="Open the snoozed list to delete or restore old tabs.",
                                priority=1,
                            ),
                        )
                    await self.backend.set({"lastSizeWarningAt": now})
        except Exception as e:
            logger.warning("Storage size check failed: %s", e)

    async def close(self) -> None:
        await self.backups.flush()
