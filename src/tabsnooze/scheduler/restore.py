"""Restoration of due items.

One pass:
1. Collect ids whose schedule key is in the past
2. Reopen window groups, one new surface per group, all-or-nothing
3. Reopen solo items one by one into the last focused surface
4. Remove what reopened; push what failed five minutes out and notify
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from tabsnooze.errors import PermanentRestoreFailure, TransientRestoreError
from tabsnooze.surfaces.base import Notification

if TYPE_CHECKING:
    from tabsnooze.storage.gateway import StorageGateway
    from tabsnooze.surfaces.base import NotificationService, RestorationSurface, SurfaceHandle

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 0.2
RESCHEDULE_DELAY_MS = 5 * 60 * 1000

FAILED_TABS_KEY = "failedRestoreTabs"
FAILED_NOTIFICATION_ID = "restore-failed"

T = TypeVar("T")


class PassState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class RetryResult(Generic[T]):
    success: bool
    result: T | None = None
    error: BaseException | None = None


@dataclass
class PopCheckResult:
    """Outcome of one pass. ``count`` is the number of items that were due."""

    count: int = 0
    restored: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = MAX_ATTEMPTS,
    delay: float = RETRY_DELAY_SECONDS,
) -> RetryResult[T]:
    """Call *fn* up to *attempts* times, sleeping *delay* seconds between tries."""
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return RetryResult(True, result=await fn())
        except Exception as e:
            last_error = e if isinstance(e, TransientRestoreError) else TransientRestoreError(str(e))
            logger.debug("Attempt %d/%d failed: %s", attempt, attempts, e)
            if attempt < attempts:
                await asyncio.sleep(delay)
    return RetryResult(
        False,
        error=PermanentRestoreFailure(f"Gave up after {attempts} attempts", last_error),
    )


def collect_due(container: dict, now: int) -> list[dict]:
    """Items whose schedule key is earlier than *now*, oldest bucket first."""
    keyed: list[tuple[int, Any]] = []
    for key, ids in container["schedule"].items():
        try:
            keyed.append((int(key), ids))
        except (TypeError, ValueError):
            continue

    due: list[dict] = []
    seen: set[str] = set()
    for when, ids in sorted(keyed, key=lambda pair: pair[0]):
        if when >= now or not isinstance(ids, list):
            continue
        for item_id in ids:
            item = container["items"].get(item_id) if isinstance(item_id, str) else None
            if item is None or item_id in seen:
                continue
            seen.add(item_id)
            due.append(item)
    return due


async def _always_online() -> bool:
    return True


class RestorationScheduler:
    """Reopen due items through a restoration surface."""

    def __init__(
        self,
        gateway: StorageGateway,
        surface: RestorationSurface,
        notifier: NotificationService | None = None,
        *,
        is_online: Callable[[], Awaitable[bool]] | None = None,
        clock: Callable[[], float] = time.time,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        reschedule_delay_ms: int = RESCHEDULE_DELAY_MS,
    ) -> None:
        self.gateway = gateway
        self.surface = surface
        self.notifier = notifier
        self._is_online = is_online or _always_online
        self._clock = clock
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.reschedule_delay_ms = reschedule_delay_ms
        self._state = PassState.IDLE

    @property
    def state(self) -> PassState:
        return self._state

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def pop_check(self) -> PopCheckResult:
        """Run one pass. Skips without touching storage when busy or offline."""
        if self._state is PassState.RUNNING:
            logger.debug("Restoration pass already running, skipping")
            return PopCheckResult()
        if not await self._is_online():
            logger.debug("Offline, skipping restoration pass")
            return PopCheckResult()

        self._state = PassState.RUNNING
        try:
            container = await self.gateway.read()
            due = collect_due(container, self._now_ms())
            if not due:
                return PopCheckResult()

            logger.info("Restoring %d due items", len(due))
            restored, failed = await self._restore(due)
            await self._finish(restored, failed)
            return PopCheckResult(
                count=len(due),
                restored=[item["id"] for item in restored],
                failed=[item["id"] for item in failed],
            )
        finally:
            self._state = PassState.IDLE

    async def _restore(self, due: list[dict]) -> tuple[list[dict], list[dict]]:
        groups: dict[str, list[dict]] = {}
        solo: list[dict] = []
        for item in due:
            if item.get("groupId"):
                groups.setdefault(item["groupId"], []).append(item)
            else:
                solo.append(item)

        restored: list[dict] = []
        failed: list[dict] = []

        for group_id, members in groups.items():
            members.sort(key=lambda item: item.get("index") or 0)
            outcome = await with_retry(
                lambda: self._open_group([m["url"] for m in members]),
                self.max_attempts,
                self.retry_delay,
            )
            if outcome.success:
                restored.extend(members)
            else:
                logger.warning(
                    "Failed to restore group %s after %d attempts: %s",
                    group_id,
                    self.max_attempts,
                    outcome.error.last_error if outcome.error else None,
                )
                failed.extend(members)

        if solo:
            target = await self._pick_target()
            if target is None:
                logger.warning("No surface available for %d items", len(solo))
                failed.extend(solo)
            else:
                for item in solo:
                    outcome = await with_retry(
                        lambda: self.surface.add_entry_to_surface(target.id, item["url"]),
                        self.max_attempts,
                        self.retry_delay,
                    )
                    if outcome.success:
                        restored.append(item)
                    else:
                        logger.warning("Failed to restore %s: %s", item["url"], outcome.error)
                        failed.append(item)

        return restored, failed

    async def _open_group(self, urls: list[str]) -> SurfaceHandle:
        """Open one surface holding exactly *urls*; tear it down on a partial result."""
        handle = await self.surface.create_surface(urls, True)
        created_id = handle.id if handle is not None else None
        if handle is not None and not handle.entries:
            try:
                handle = await self.surface.refresh_surface(handle.id)
            except Exception as e:
                logger.debug("Refreshing surface %s failed: %s", created_id, e)

        got = len(handle.entries) if handle is not None else 0
        if handle is None or got != len(urls):
            if created_id is not None:
                try:
                    await self.surface.close_surface(created_id)
                except Exception as e:
                    logger.debug("Closing partial surface %s failed: %s", created_id, e)
            raise TransientRestoreError(f"Partial restore: expected {len(urls)} entries, got {got}")
        return handle

    async def _pick_target(self) -> SurfaceHandle | None:
        try:
            target = await self.surface.get_last_focused_surface()
            if target is not None:
                return target
        except Exception as e:
            logger.debug("No last focused surface: %s", e)
        try:
            return await self.surface.create_surface([], True)
        except Exception as e:
            logger.warning("Could not create a surface: %s", e)
            return None

    async def _finish(self, restored: list[dict], failed: list[dict]) -> None:
        if restored:
            try:
                await self.gateway.remove_restored([item["id"] for item in restored])
            except Exception as e:
                logger.error("Failed to clean up storage after restore: %s", e)

        if failed:
            await self._handle_failed(failed)

    async def _handle_failed(self, failed: list[dict]) -> None:
        new_pop_time = self._now_ms() + self.reschedule_delay_ms
        try:
            await self.gateway.reschedule([item["id"] for item in failed], new_pop_time)
        except Exception as e:
            logger.error("Failed to reschedule failed items: %s", e)

        await self.gateway.session.set({
            FAILED_TABS_KEY: [
                {
                    "id": item["id"],
                    "url": item["url"],
                    "title": item.get("title"),
                    "favicon": item.get("favicon"),
                }
                for item in failed
            ]
        })

        if self.notifier is None:
            return
        count = len(failed)
        word = "tab" if count == 1 else "tabs"
        minutes = self.reschedule_delay_ms // 60000
        try:
            await self.notifier.create(
                FAILED_NOTIFICATION_ID,
                Notification(
                    title=f"Failed to restore {count} {word}",
                    message=f"Click to view details. {word.capitalize()} will be retried in {minutes} minutes.",
                    priority=2,
                ),
            )
        except Exception as e:
            logger.warning("Restore failure notification failed: %s", e)
