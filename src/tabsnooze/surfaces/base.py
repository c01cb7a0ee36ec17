"""Restoration surface and notification protocols and shared types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass
class SurfaceEntry:
    """One opened entry (tab) inside a surface."""

    id: str
    url: str


@dataclass
class SurfaceHandle:
    """A surface (window) and the entries it currently holds."""

    id: str
    entries: list[SurfaceEntry] = field(default_factory=list)


@dataclass
class Notification:
    title: str
    message: str
    type: str = "basic"
    priority: int = 0


@runtime_checkable
class RestorationSurface(Protocol):
    """Protocol for whatever can reopen snoozed items."""

    async def create_surface(self, urls: list[str], focus: bool = True) -> SurfaceHandle | None:
        """Open a new surface pre-seeded with *urls*."""
        ...

    async def refresh_surface(self, surface_id: str) -> SurfaceHandle | None: ...

    async def close_surface(self, surface_id: str) -> None: ...

    async def get_last_focused_surface(self) -> SurfaceHandle | None: ...

    async def add_entry_to_surface(self, surface_id: str, url: str) -> None: ...

    async def close_entry(self, entry_id: str) -> None: ...


@runtime_checkable
class NotificationService(Protocol):
    async def create(self, notification_id: str, notification: Notification) -> None: ...
