"""Periodic restoration checks using pure asyncio."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tabsnooze.config import SnoozeConfig
    from tabsnooze.scheduler.restore import RestorationScheduler

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs a restoration pass every ``check_interval`` seconds."""

    def __init__(self, restorer: RestorationScheduler, config: SnoozeConfig) -> None:
        self._restorer = restorer
        self._interval = config.scheduler.check_interval

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run passes until shutdown_event is set. The first pass runs immediately."""
        logger.info("Scheduler started (interval=%ds)", self._interval)

        while not shutdown_event.is_set():
            await self._tick()
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
                break  # shutdown requested
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped.")

    async def _tick(self) -> None:
        try:
            result = await self._restorer.pop_check()
            if result.count:
                logger.info(
                    "Pass done: %d due, %d restored, %d rescheduled",
                    result.count,
                    len(result.restored),
                    len(result.failed),
                )
        except Exception as e:
            logger.error("Restoration pass failed: %s", e)
