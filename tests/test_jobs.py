"""Tests for the periodic scheduler loop."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from tabsnooze.config import SnoozeConfig
from tabsnooze.scheduler.jobs import Scheduler
from tabsnooze.scheduler.restore import PopCheckResult


@pytest.fixture
def config() -> SnoozeConfig:
    config = SnoozeConfig()
    config.scheduler.check_interval = 0.01
    return config


class TestScheduler:
    @pytest.mark.asyncio
    async def test_runs_until_shutdown(self, config: SnoozeConfig):
        restorer = AsyncMock()
        restorer.pop_check.return_value = PopCheckResult(count=1, restored=["a"])
        shutdown = asyncio.Event()

        task = asyncio.ensure_future(Scheduler(restorer, config).start(shutdown))
        await asyncio.sleep(0.05)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert restorer.pop_check.await_count >= 2

    @pytest.mark.asyncio
    async def test_pass_errors_do_not_stop_loop(self, config: SnoozeConfig):
        restorer = AsyncMock()
        restorer.pop_check.side_effect = [RuntimeError("boom"), PopCheckResult(), PopCheckResult()]
        shutdown = asyncio.Event()

        task = asyncio.ensure_future(Scheduler(restorer, config).start(shutdown))
        await asyncio.sleep(0.02)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert restorer.pop_check.await_count >= 2

    @pytest.mark.asyncio
    async def test_already_shut_down(self, config: SnoozeConfig):
        restorer = AsyncMock()
        shutdown = asyncio.Event()
        shutdown.set()
        await Scheduler(restorer, config).start(shutdown)
        restorer.pop_check.assert_not_awaited()
