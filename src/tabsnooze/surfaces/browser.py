"""Surface and notifier backed by the local desktop browser."""

from __future__ import annotations

import asyncio
import itertools
import logging
import webbrowser

from tabsnooze.errors import TransientRestoreError
from tabsnooze.surfaces.base import Notification, SurfaceEntry, SurfaceHandle

logger = logging.getLogger(__name__)


class WebBrowserSurface:
    """Opens restored items through the ``webbrowser`` module.

    The module cannot report window ids, so surfaces are tracked locally:
    one handle per ``create_surface`` call, holding the entries the browser
    accepted.
    """

    def __init__(self, browser: webbrowser.BaseBrowser | None = None) -> None:
        self._browser = browser
        self._surfaces: dict[str, SurfaceHandle] = {}
        self._last_focused: str | None = None
        self._ids = itertools.count(1)

    def _controller(self) -> webbrowser.BaseBrowser:
        if self._browser is None:
            self._browser = webbrowser.get()
        return self._browser

    async def _open(self, url: str, new: int) -> bool:
        loop = asyncio.get_event_loop()
        controller = self._controller()
        return await loop.run_in_executor(None, lambda: controller.open(url, new=new, autoraise=False))

    async def create_surface(self, urls: list[str], focus: bool = True) -> SurfaceHandle | None:
        handle = SurfaceHandle(id=f"surface-{next(self._ids)}")
        for position, url in enumerate(urls):
            # First url gets a new window, the rest join it as tabs.
            if await self._open(url, new=1 if position == 0 else 2):
                handle.entries.append(SurfaceEntry(id=f"{handle.id}:{len(handle.entries)}", url=url))
        self._surfaces[handle.id] = handle
        if focus:
            self._last_focused = handle.id
        logger.debug("Opened %s with %d/%d entries", handle.id, len(handle.entries), len(urls))
        return handle

    async def refresh_surface(self, surface_id: str) -> SurfaceHandle | None:
        return self._surfaces.get(surface_id)

    async def close_surface(self, surface_id: str) -> None:
        # Browser windows cannot be closed through webbrowser; forget the handle.
        self._surfaces.pop(surface_id, None)
        if self._last_focused == surface_id:
            self._last_focused = None

    async def get_last_focused_surface(self) -> SurfaceHandle | None:
        if self._last_focused is None:
            return None
        return self._surfaces.get(self._last_focused)

    async def add_entry_to_surface(self, surface_id: str, url: str) -> None:
        handle = self._surfaces.get(surface_id)
        if handle is None:
            raise TransientRestoreError(f"Unknown surface {surface_id}")
        if not await self._open(url, new=2):
            raise TransientRestoreError(f"Browser refused to open {url}")
        handle.entries.append(SurfaceEntry(id=f"{handle.id}:{len(handle.entries)}", url=url))

    async def close_entry(self, entry_id: str) -> None:
        surface_id = entry_id.split(":", 1)[0]
        handle = self._surfaces.get(surface_id)
        if handle is not None:
            handle.entries = [e for e in handle.entries if e.id != entry_id]


class LogNotifier:
    """Notification sink that writes to the log."""

    async def create(self, notification_id: str, notification: Notification) -> None:
        level = logging.WARNING if notification.priority >= 1 else logging.INFO
        logger.log(level, "[%s] %s: %s", notification_id, notification.title, notification.message)
