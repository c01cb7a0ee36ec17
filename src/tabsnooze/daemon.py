"""Daemon process: always-on restoration of snoozed tabs.

Usage: python -m tabsnooze serve

Manages:
- Startup storage check (recovery, migration, repair)
- Periodic restoration passes
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import sys
from collections.abc import Awaitable, Callable

from tabsnooze.config import SnoozeConfig, load_config
from tabsnooze.scheduler.jobs import Scheduler
from tabsnooze.scheduler.restore import RestorationScheduler
from tabsnooze.storage.backend import JsonFileBackend, MemoryBackend, SessionStore
from tabsnooze.storage.gateway import StorageGateway
from tabsnooze.surfaces.browser import LogNotifier, WebBrowserSurface

logger = logging.getLogger(__name__)


def connectivity_probe(host: str, port: int, timeout: float = 1.0) -> Callable[[], Awaitable[bool]]:
    """Return a coroutine function reporting whether *host*:*port* accepts a TCP connection."""

    def connect() -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    async def probe() -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, connect)

    return probe


def build_gateway(config: SnoozeConfig) -> StorageGateway:
    return StorageGateway(
        JsonFileBackend(config.storage.data_file),
        session=SessionStore(MemoryBackend()),
        notifier=LogNotifier(),
        backup_count=config.storage.backup_count,
        backup_debounce=config.storage.backup_debounce,
    )


def build_restorer(config: SnoozeConfig, gateway: StorageGateway) -> RestorationScheduler:
    sched = config.scheduler
    return RestorationScheduler(
        gateway,
        WebBrowserSurface(),
        gateway.notifier,
        is_online=connectivity_probe(sched.connectivity_host, sched.connectivity_port),
        max_attempts=sched.max_attempts,
        retry_delay=sched.retry_delay,
        reschedule_delay_ms=sched.reschedule_minutes * 60 * 1000,
    )


class SnoozeDaemon:
    """Always-on daemon process."""

    def __init__(self, config: SnoozeConfig | None = None) -> None:
        self.config = config or load_config()
        self._shutdown_event = asyncio.Event()

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.config.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        if self.config.pid_file.exists():
            self.config.pid_file.unlink()

    def _check_existing(self) -> None:
        if not self.config.pid_file.exists():
            return
        try:
            pid = int(self.config.pid_file.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"tabsnooze daemon already running (pid={pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            # Stale PID file
            self._remove_pid()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        self._check_existing()
        self._write_pid()
        self._setup_signals()

        gateway = build_gateway(self.config)
        scheduler = Scheduler(build_restorer(self.config, gateway), self.config)

        logger.info("tabsnooze daemon starting (store=%s)", self.config.storage.data_file)

        try:
            container = await gateway.init_storage()
            logger.info("Store ready: %d snoozed items", len(container["items"]))
            await scheduler.start(self._shutdown_event)
        except asyncio.CancelledError:
            pass
        finally:
            await gateway.close()
            self._remove_pid()
            logger.info("tabsnooze daemon stopped.")
