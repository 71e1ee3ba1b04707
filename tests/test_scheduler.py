import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from reactstats.db import Database
from reactstats.models import ScheduledJob
from reactstats.scheduler import JobScheduler, SchedulerState
from reactstats.schedules import ScheduleService

CREATED = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
RUN_AT = datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "reactions.db")
    database.initialize()
    return database


def _create(db: Database, **overrides) -> ScheduledJob:
    fields = dict(cron_expression="0 */4 * * *", interval_hours=4, channel_id=20, guild_id=10, count=5)
    fields.update(overrides)
    return ScheduleService(db, clock=lambda: CREATED).create_scheduled_job(**fields)


@pytest.mark.asyncio
async def test_due_job_runs_and_is_rescheduled(db):
    job = _create(db)
    assert job.next_run == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert [due.id for due in db.get_due_jobs(RUN_AT)] == [job.id]

    runner = AsyncMock(return_value=True)
    scheduler = JobScheduler(db, runner, clock=lambda: RUN_AT)

    assert await scheduler.sweep() == 1

    runner.assert_awaited_once()
    ran_job, ran_at = runner.await_args.args
    assert ran_job.id == job.id
    assert ran_at == RUN_AT
    assert db.get_job_by_id(job.id).next_run == datetime(2024, 5, 1, 16, 0, tzinfo=timezone.utc)
    assert db.get_due_jobs(RUN_AT) == []


@pytest.mark.asyncio
async def test_jobs_not_yet_due_are_left_alone(db):
    job = _create(db)
    runner = AsyncMock()
    scheduler = JobScheduler(db, runner, clock=lambda: job.next_run - timedelta(seconds=1))

    assert await scheduler.sweep() == 0
    runner.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_job_is_still_rescheduled_and_sweep_continues(db):
    first = _create(db, channel_id=20)
    second = _create(db, channel_id=21)
    runner = AsyncMock(side_effect=[RuntimeError("channel missing"), True])
    scheduler = JobScheduler(db, runner, clock=lambda: RUN_AT)

    await scheduler.sweep()

    assert runner.await_count == 2
    expected = datetime(2024, 5, 1, 16, 0, tzinfo=timezone.utc)
    assert db.get_job_by_id(first.id).next_run == expected
    assert db.get_job_by_id(second.id).next_run == expected


@pytest.mark.asyncio
async def test_job_without_next_occurrence_keeps_stale_next_run(db):
    job = _create(db)
    runner = AsyncMock(return_value=False)
    scheduler = JobScheduler(db, runner, clock=lambda: RUN_AT)

    with patch("reactstats.scheduler.next_occurrence", return_value=None):
        await scheduler.sweep()
        await scheduler.sweep()

    assert runner.await_count == 2
    assert db.get_job_by_id(job.id).next_run == job.next_run


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(db):
    _create(db)
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_runner(job, now):  # noqa: ANN001, ANN202
        started.set()
        await release.wait()

    runner = AsyncMock(side_effect=slow_runner)
    scheduler = JobScheduler(db, runner, clock=lambda: RUN_AT)

    first = scheduler.tick()
    assert first is not None
    assert scheduler.state is SchedulerState.RUNNING
    await started.wait()

    assert scheduler.tick() is None

    release.set()
    await first
    assert runner.await_count == 1
    assert scheduler.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_tick_after_sweep_finishes_runs_again(db):
    runner = AsyncMock()
    scheduler = JobScheduler(db, runner, clock=lambda: RUN_AT)

    first = scheduler.tick()
    await first
    second = scheduler.tick()

    assert second is not None
    await second


@pytest.mark.asyncio
async def test_storage_failure_does_not_escape_sweep():
    db = MagicMock()
    db.get_due_jobs.side_effect = RuntimeError("disk gone")
    scheduler = JobScheduler(db, AsyncMock(), clock=lambda: RUN_AT)

    assert await scheduler.sweep() == 0


@pytest.mark.asyncio
async def test_run_forever_stops_and_waits_for_sweep(db):
    _create(db)
    runner = AsyncMock(return_value=True)
    scheduler = JobScheduler(db, runner, poll_interval_seconds=0.01, clock=lambda: RUN_AT)

    loop_task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(loop_task, timeout=1)
    await scheduler.wait_idle()

    # Rescheduled after the first sweep, so later ticks found nothing due.
    assert runner.await_count == 1
    assert scheduler.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop_thread(db):
    job = _create(db)
    loop_thread = threading.get_ident()
    seen: dict[str, int] = {}

    def due(now):  # noqa: ANN001, ANN202
        seen["get_due_jobs"] = threading.get_ident()
        return [job]

    def update(job_id, next_run):  # noqa: ANN001, ANN202
        seen["update_job_next_run"] = threading.get_ident()

    store = MagicMock()
    store.get_due_jobs.side_effect = due
    store.update_job_next_run.side_effect = update
    scheduler = JobScheduler(store, AsyncMock(), clock=lambda: RUN_AT)

    assert await scheduler.sweep() == 1

    assert set(seen) == {"get_due_jobs", "update_job_next_run"}
    assert loop_thread not in seen.values()
