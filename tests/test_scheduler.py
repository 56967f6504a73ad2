"""
Tests for the background update scheduler.

This test module validates:
- Start/stop lifecycle and state reporting
- Tick error accounting without stopping the loop
- Strictly sequential ticks
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sentinel_updater.errors import FailedPreconditionError, InvalidArgumentError
from sentinel_updater.models import UpdateOutcome, UpdateResult
from sentinel_updater.scheduler import SchedulerStatus, UpdateScheduler


def _orchestrator(*results: object) -> MagicMock:
    orchestrator = MagicMock()
    if results:
        orchestrator.check_and_update = AsyncMock(side_effect=list(results))
    else:
        orchestrator.check_and_update = AsyncMock(
            return_value=UpdateResult(outcome=UpdateOutcome.NO_UPDATE, message="up to date")
        )
    return orchestrator


class TestSchedulerInit:
    """Tests for scheduler construction."""

    @pytest.mark.parametrize("interval", [0, -5])
    def test_invalid_interval(self, interval: float) -> None:
        with pytest.raises(InvalidArgumentError):
            UpdateScheduler(_orchestrator(), interval_seconds=interval)

    def test_initial_state(self) -> None:
        scheduler = UpdateScheduler(_orchestrator(), interval_seconds=30)

        state = scheduler.get_status()

        assert state.status == SchedulerStatus.STOPPED
        assert state.tick_count == 0
        assert not scheduler.is_running


class TestRunOnce:
    """Tests for single ticks."""

    @pytest.mark.asyncio
    async def test_records_result(self) -> None:
        scheduler = UpdateScheduler(_orchestrator())

        result = await scheduler.run_once()

        state = scheduler.get_status()
        assert result is not None
        assert state.last_result is result
        assert state.tick_count == 1
        assert state.last_tick_at is not None

    @pytest.mark.asyncio
    async def test_error_is_counted(self) -> None:
        """Test that a raising tick is logged and counted, not propagated."""
        scheduler = UpdateScheduler(_orchestrator(RuntimeError("boom")))

        assert await scheduler.run_once() is None

        state = scheduler.get_status()
        assert state.error_count == 1
        assert state.tick_count == 1
        assert state.last_error == "boom"

    @pytest.mark.asyncio
    async def test_status_is_a_copy(self) -> None:
        scheduler = UpdateScheduler(_orchestrator())
        before = scheduler.get_status()

        await scheduler.run_once()

        assert before.tick_count == 0


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_runs_first_tick_immediately(self) -> None:
        orchestrator = _orchestrator()
        scheduler = UpdateScheduler(orchestrator, interval_seconds=60)

        state = await scheduler.start()
        await asyncio.sleep(0.05)
        stopped = await scheduler.stop()

        assert state.status == SchedulerStatus.RUNNING
        assert state.job_id is not None
        assert orchestrator.check_and_update.await_count == 1
        assert stopped.status == SchedulerStatus.STOPPED
        assert stopped.tick_count == 1

    @pytest.mark.asyncio
    async def test_ticks_repeat(self) -> None:
        orchestrator = _orchestrator()
        scheduler = UpdateScheduler(orchestrator, interval_seconds=0.01)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert orchestrator.check_and_update.await_count >= 2

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_loop(self) -> None:
        orchestrator = _orchestrator()
        orchestrator.check_and_update.side_effect = RuntimeError("transient")
        scheduler = UpdateScheduler(orchestrator, interval_seconds=0.01)

        await scheduler.start()
        await asyncio.sleep(0.1)
        state = await scheduler.stop()

        assert state.error_count >= 2
        assert state.error_count == state.tick_count

    @pytest.mark.asyncio
    async def test_start_twice(self) -> None:
        scheduler = UpdateScheduler(_orchestrator(), interval_seconds=60)
        await scheduler.start()

        try:
            with pytest.raises(FailedPreconditionError):
                await scheduler.start()
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self) -> None:
        scheduler = UpdateScheduler(_orchestrator())

        state = await scheduler.stop()

        assert state.status == SchedulerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_waits_for_tick(self) -> None:
        """Test that stop lets an in-progress tick finish."""
        finished = asyncio.Event()

        async def slow_tick() -> UpdateResult:
            await asyncio.sleep(0.05)
            finished.set()
            return UpdateResult(outcome=UpdateOutcome.SUCCEEDED)

        orchestrator = MagicMock()
        orchestrator.check_and_update = AsyncMock(side_effect=slow_tick)
        scheduler = UpdateScheduler(orchestrator, interval_seconds=60)

        await scheduler.start()
        await asyncio.sleep(0.01)
        state = await scheduler.stop()

        assert finished.is_set()
        assert state.last_result is not None
        assert state.last_result.outcome == UpdateOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_stop_timeout_cancels(self) -> None:
        async def hung_tick() -> UpdateResult:
            await asyncio.sleep(10)
            return UpdateResult(outcome=UpdateOutcome.SUCCEEDED)

        orchestrator = MagicMock()
        orchestrator.check_and_update = AsyncMock(side_effect=hung_tick)
        scheduler = UpdateScheduler(orchestrator, interval_seconds=60)

        await scheduler.start()
        await asyncio.sleep(0.01)
        state = await scheduler.stop(timeout=0.05)

        assert state.status == SchedulerStatus.STOPPED
        assert state.tick_count == 1

    @pytest.mark.asyncio
    async def test_run_forever_returns_after_stop(self) -> None:
        orchestrator = _orchestrator()
        scheduler = UpdateScheduler(orchestrator, interval_seconds=60)

        runner = asyncio.create_task(scheduler.run_forever())
        await asyncio.sleep(0.01)
        await scheduler.stop()
        await asyncio.wait_for(runner, timeout=1)

        assert orchestrator.check_and_update.await_count == 1

    def test_to_dict(self) -> None:
        scheduler = UpdateScheduler(_orchestrator(), interval_seconds=45)

        data = scheduler.get_status().to_dict()

        assert data["status"] == "stopped"
        assert data["interval_seconds"] == 45
        assert data["last_result"] is None
