"""Async scheduler for recurring report jobs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from reactstats.cron import next_occurrence
from reactstats.db import Database
from reactstats.models import ScheduledJob

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 15.0

JobRunner = Callable[[ScheduledJob, datetime], Awaitable[object]]


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobScheduler:
    """Polls due jobs on a fixed tick and runs them, one sweep at a time.

    A tick that arrives while the previous sweep is still running is dropped,
    not queued.
    """

    def __init__(
        self,
        db: Database,
        runner: JobRunner,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db = db
        self._runner = runner
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._state = SchedulerState.IDLE
        self._sweep_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SchedulerState:
        return self._state

    def tick(self) -> asyncio.Task[None] | None:
        """Start a sweep in the background unless one is in flight.

        Returns the sweep task, or None when the tick was skipped.
        """
        # Checked and set without awaiting, so no other tick can interleave.
        if self._state is SchedulerState.RUNNING:
            LOGGER.debug("Previous sweep still running, skipping tick")
            return None
        self._state = SchedulerState.RUNNING
        self._sweep_task = asyncio.create_task(self._guarded_sweep(), name="report-sweep")
        return self._sweep_task

    async def _guarded_sweep(self) -> None:
        try:
            await self.sweep()
        finally:
            self._state = SchedulerState.IDLE

    async def sweep(self) -> int:
        """Run every due job once and reschedule it. Returns the number of due jobs."""

        try:
            # Store calls block, so they run off the event loop.
            jobs = await asyncio.to_thread(self._db.get_due_jobs, self._clock())
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error checking scheduled jobs")
            return 0

        for job in jobs:
            await self._process(job)
        return len(jobs)

    async def _process(self, job: ScheduledJob) -> None:
        try:
            await self._runner(job, self._clock())
        except Exception:  # noqa: BLE001
            LOGGER.exception(
                "Error executing scheduled job %s (guild %s, channel %s)", job.id, job.guild_id, job.channel_id
            )

        # Runs whether or not the execution succeeded or found anything.
        try:
            await self._reschedule(job)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error rescheduling job %s", job.id)

    async def _reschedule(self, job: ScheduledJob) -> None:
        next_run = next_occurrence(job.cron_expression, self._clock())
        if next_run is None:
            LOGGER.warning(
                "Could not determine next run time for job %s (cron %r), job is stalled until removed",
                job.id,
                job.cron_expression,
            )
            return
        await asyncio.to_thread(self._db.update_job_next_run, job.id, next_run)
        LOGGER.debug("Job %s next run at %s", job.id, next_run.isoformat())

    async def run_forever(self) -> None:
        """Tick until stop() is called."""

        while not self._stop_event.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the loop to stop. An in-flight sweep is left to finish."""

        self._stop_event.set()

    async def wait_idle(self) -> None:
        """Wait for the in-flight sweep, if any."""

        if self._sweep_task is not None and not self._sweep_task.done():
            await self._sweep_task
