"""
Background update scheduler using asyncio.

This module implements the UpdateScheduler class that:
- Runs a background asyncio task ticking at a fixed interval
- Invokes one check-and-update per tick, strictly sequentially
- Logs and counts tick failures without ever stopping the loop
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sentinel_updater.errors import FailedPreconditionError, InvalidArgumentError
from sentinel_updater.logging import get_logger
from sentinel_updater.models import UpdateResult

if TYPE_CHECKING:
    from sentinel_updater.orchestrator import UpdateOrchestrator

logger = get_logger(__name__)

DEFAULT_CHECK_INTERVAL = 30.0  # seconds


class SchedulerStatus(str, Enum):
    """Status of the update scheduler."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SchedulerState:
    """
    Current state of the update scheduler.

    Attributes:
        status: Current scheduler status.
        job_id: Identifier of the running loop.
        interval_seconds: Seconds between ticks.
        started_at: When the scheduler was started.
        last_tick_at: When the last tick finished.
        tick_count: Number of completed ticks.
        error_count: Number of ticks that raised.
        last_error: Last error message if any.
        last_result: Result of the last completed tick.
    """

    status: SchedulerStatus = SchedulerStatus.STOPPED
    job_id: str | None = None
    interval_seconds: float = DEFAULT_CHECK_INTERVAL
    started_at: datetime | None = None
    last_tick_at: datetime | None = None
    tick_count: int = 0
    error_count: int = 0
    last_error: str | None = None
    last_result: UpdateResult | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "interval_seconds": self.interval_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "tick_count": self.tick_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }


class UpdateScheduler:
    """
    Fixed-interval trigger for the update orchestrator.

    A tick runs to completion, including a full rollback, before the next
    one is considered. The first tick runs immediately on start.

    Example:
        >>> scheduler = UpdateScheduler(orchestrator, interval_seconds=30)
        >>> await scheduler.start()
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        interval_seconds: float = DEFAULT_CHECK_INTERVAL,
    ) -> None:
        if interval_seconds <= 0:
            raise InvalidArgumentError(
                "interval_seconds must be positive",
                details={"interval_seconds": interval_seconds},
            )

        self._orchestrator = orchestrator
        self._state = SchedulerState(interval_seconds=interval_seconds)
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        """Check if the scheduler loop is running."""
        return self._state.status == SchedulerStatus.RUNNING

    def get_status(self) -> SchedulerState:
        """Return a copy of the current scheduler state."""
        return SchedulerState(**vars(self._state))

    async def run_once(self) -> UpdateResult | None:
        """
        Run a single tick.

        Returns:
            The tick's result, or None if the tick raised.
        """
        try:
            result = await self._orchestrator.check_and_update()
        except Exception as e:
            self._state.error_count += 1
            self._state.last_error = str(e)
            logger.error(
                "Error during update check",
                extra={"error": str(e), "job_id": self._state.job_id},
            )
            return None
        finally:
            self._state.tick_count += 1
            self._state.last_tick_at = datetime.now()

        self._state.last_result = result
        logger.info(
            "Update check finished",
            extra={"outcome": result.outcome.value, "job_id": self._state.job_id},
        )
        return result

    async def start(self) -> SchedulerState:
        """
        Start the background loop.

        Raises:
            FailedPreconditionError: If the scheduler is already running.
        """
        if self._state.status != SchedulerStatus.STOPPED:
            raise FailedPreconditionError(
                "Scheduler is already running",
                details={"job_id": self._state.job_id},
            )

        self._state.job_id = str(uuid.uuid4())[:8]
        self._state.started_at = datetime.now()
        self._state.tick_count = 0
        self._state.error_count = 0
        self._state.last_error = None
        self._stop_event.clear()

        self._task = asyncio.create_task(self._loop())
        self._state.status = SchedulerStatus.RUNNING

        logger.info(
            "Update scheduler started",
            extra={
                "job_id": self._state.job_id,
                "interval_seconds": self._state.interval_seconds,
            },
        )
        return self.get_status()

    async def stop(self, timeout: float | None = None) -> SchedulerState:
        """
        Stop the loop after the current tick completes.

        Args:
            timeout: Optional bound on waiting for an in-progress tick;
                the loop is cancelled when it is exceeded.
        """
        if self._state.status != SchedulerStatus.RUNNING:
            return self.get_status()

        self._state.status = SchedulerStatus.STOPPING
        self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            except TimeoutError:
                logger.warning("Scheduler tick did not finish in time, cancelling")
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

        self._state.status = SchedulerStatus.STOPPED
        logger.info(
            "Update scheduler stopped",
            extra={"job_id": self._state.job_id, "tick_count": self._state.tick_count},
        )
        return self.get_status()

    async def run_forever(self) -> None:
        """Run the loop in the current task until stop() is called."""
        await self.start()
        if self._task:
            await self._task

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()

            # Wait for next tick or stop signal
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._state.interval_seconds,
                )
                break
            except TimeoutError:
                pass
