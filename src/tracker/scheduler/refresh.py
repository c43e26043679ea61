"""Recurring refresh scheduler -- drives unattended re-fetch jobs.

One RefreshScheduler runs one job body on a fixed period inside a
background asyncio task. The first run either fires straight away or waits
for a daily hour:minute (UTC); every later run follows on the period.

States:
    STOPPED -> start() -> WAITING_FIRST_RUN -> first fire -> RUNNING
    any state -> stop() -> STOPPED
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from tracker.logging import get_logger, log_context

logger = get_logger(__name__)


class SchedulerState(str, Enum):
    """Lifecycle state of a RefreshScheduler."""

    STOPPED = "stopped"
    WAITING_FIRST_RUN = "waiting_first_run"
    RUNNING = "running"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_daily_run(hour: int, minute: int, now: datetime) -> datetime:
    """Today at hour:minute UTC, or tomorrow if that moment has passed."""
    run_at = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if now > run_at:
        run_at += timedelta(days=1)
    return run_at


class RefreshScheduler:
    """Runs an async job on a fixed period in a background task.

    Errors raised by scheduled runs are logged and swallowed so the next
    tick can retry. run_immediately() bypasses the timer and propagates
    errors to its caller.

    Args:
        name: Label used in log events (e.g. "fiat_daily").
        job: Async callable executed on each tick.
        period: Interval between runs after the first.
        daily_at: Optional (hour, minute) UTC for the first run. When omitted
            the first run fires as soon as the scheduler starts.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        period: timedelta,
        daily_at: tuple[int, int] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if period <= timedelta(0):
            raise ValueError("period must be positive")
        self._name = name
        self._job = job
        self._period = period
        self._daily_at = daily_at
        self._clock = clock
        self._state = SchedulerState.STOPPED
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._next_run_at: datetime | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def next_run_at(self) -> datetime | None:
        """When the background loop will next run the job, if started."""
        return self._next_run_at

    async def start(self) -> None:
        """Arm the scheduler. A no-op when it is already started."""
        if self._state is not SchedulerState.STOPPED:
            logger.warning("scheduler_already_running", scheduler=self._name)
            return

        now = self._clock()
        if self._daily_at is not None:
            hour, minute = self._daily_at
            self._next_run_at = next_daily_run(hour, minute, now)
        else:
            self._next_run_at = now

        self._state = SchedulerState.WAITING_FIRST_RUN
        self._task = asyncio.create_task(self._loop(), name=f"scheduler:{self._name}")
        logger.info(
            "scheduler_started",
            scheduler=self._name,
            next_run_at=self._next_run_at.isoformat(),
            period_seconds=self._period.total_seconds(),
        )

    async def stop(self) -> None:
        """Cancel the background loop. A no-op when already stopped.

        Cancellation interrupts an in-flight job at its next await, so this
        never waits for a slow upstream call to finish.
        """
        if self._state is SchedulerState.STOPPED:
            logger.info("scheduler_not_running", scheduler=self._name)
            return

        task, self._task = self._task, None
        self._state = SchedulerState.STOPPED
        self._next_run_at = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped", scheduler=self._name)

    async def run_immediately(self) -> Any:
        """Run the job once right now, outside the timer. Errors propagate."""
        logger.info("scheduler_manual_run", scheduler=self._name)
        with log_context(scheduler=self._name):
            result = await self._job()
        logger.info("scheduler_manual_run_complete", scheduler=self._name)
        return result

    async def _loop(self) -> None:
        """Sleep until the next fire time, run the job, re-arm for one period."""
        while self._next_run_at is not None:
            delay = (self._next_run_at - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)

            await self._run_scheduled()
            self._state = SchedulerState.RUNNING

            self._next_run_at = self._next_run_at + self._period
            now = self._clock()
            while self._next_run_at <= now - self._period:
                # Skip ticks missed while the job (or the host) was stalled
                self._next_run_at += self._period
            logger.debug(
                "scheduler_next_run",
                scheduler=self._name,
                next_run_at=self._next_run_at.isoformat(),
            )

    async def _run_scheduled(self) -> None:
        try:
            with log_context(scheduler=self._name):
                await self._job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("scheduler_job_failed", scheduler=self._name, exc_info=True)
        else:
            logger.info("scheduler_job_complete", scheduler=self._name)
