import asyncio
from datetime import datetime, timezone

import pytest

from dispatcharr_manager.domain.job import JobStatus
from dispatcharr_manager.domain.options import BackupOptions, SyncCategory
from dispatcharr_manager.domain.requests import BackupRequest, SyncRequest
from dispatcharr_manager.domain.schedule import ScheduleInput, ScheduleJobType, SchedulePreset
from dispatcharr_manager.errors import ConflictError, JobCancelledError, NotFoundError, ValidationError


async def create_schedule(schedule_store, source, destination=None, **overrides):
    data = {
        "name": "Nightly",
        "job_type": ScheduleJobType.SYNC if destination else ScheduleJobType.BACKUP,
        "source_connection_id": source.id,
        "destination_connection_id": destination.id if destination else None,
        "options": BackupOptions(categories=frozenset({SyncCategory.CHANNELS})),
        **overrides,
    }
    return await schedule_store.create(ScheduleInput(**data))


@pytest.mark.asyncio
async def test_schedule_job_registers_timer_and_next_run(scheduler, schedule_store, source_connection):
    schedule = await create_schedule(schedule_store, source_connection, preset=SchedulePreset.DAILY)

    assert await scheduler.schedule_job(schedule) is True

    assert scheduler.is_registered(schedule.id)
    stored = await schedule_store.get_by_id(schedule.id)
    assert stored.next_run_at == datetime(2024, 1, 2, 2, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_start_registers_enabled_schedules_only(scheduler, schedule_store, source_connection):
    enabled = await create_schedule(schedule_store, source_connection)
    disabled = await create_schedule(schedule_store, source_connection, name="Off", enabled=False)
    await scheduler.stop()

    await scheduler.start()

    assert scheduler.is_registered(enabled.id)
    assert not scheduler.is_registered(disabled.id)


@pytest.mark.asyncio
async def test_invalid_expression_blocks_timer_but_keeps_schedule(scheduler, schedule_store, source_connection):
    schedule = await create_schedule(schedule_store, source_connection)
    schedule = await schedule_store.update(schedule.id, {"preset": "custom", "cron_expression": "99 * * * *"})

    assert await scheduler.schedule_job(schedule) is False

    assert not scheduler.is_registered(schedule.id)
    assert await schedule_store.get_by_id(schedule.id) is not None


@pytest.mark.asyncio
async def test_unschedule_is_idempotent(scheduler, schedule_store, source_connection):
    schedule = await create_schedule(schedule_store, source_connection)
    await scheduler.schedule_job(schedule)

    scheduler.unschedule_job(schedule.id)
    scheduler.unschedule_job(schedule.id)

    assert not scheduler.is_registered(schedule.id)


@pytest.mark.asyncio
async def test_execute_backup_schedule(scheduler, registry, schedule_store, source_connection, backup_executor):
    schedule = await create_schedule(schedule_store, source_connection)

    job_id = await scheduler.execute_schedule(schedule.id)

    request, executed_job_id = backup_executor.requests[0]
    assert executed_job_id == job_id
    assert isinstance(request, BackupRequest)
    assert request.source.url == "http://home:9191"
    assert request.options.categories == frozenset({SyncCategory.CHANNELS})

    assert registry.get_job(job_id).status == JobStatus.COMPLETED
    history = await schedule_store.get_run_history(schedule.id)
    assert [(e.job_id, e.status) for e in history] == [(job_id, JobStatus.COMPLETED)]
    assert (await schedule_store.get_by_id(schedule.id)).last_run.job_id == job_id
    assert not scheduler.is_running(schedule.id)


@pytest.mark.asyncio
async def test_execute_sync_schedule(scheduler, schedule_store, source_connection, destination_connection,
                                     sync_executor):
    schedule = await create_schedule(schedule_store, source_connection, destination_connection)

    await scheduler.execute_schedule(schedule.id)

    request, _ = sync_executor.requests[0]
    assert isinstance(request, SyncRequest)
    assert request.destination.url == "http://cabin:9191"
    assert request.options.categories == frozenset({SyncCategory.CHANNELS})


@pytest.mark.asyncio
async def test_tick_is_skipped_while_running(scheduler, schedule_store, source_connection, backup_executor,
                                             helpers):
    schedule = await create_schedule(schedule_store, source_connection)
    backup_executor.release.clear()

    first = asyncio.create_task(scheduler.execute_schedule(schedule.id))
    await helpers.wait_for(lambda: len(backup_executor.requests) == 1)

    assert scheduler.is_running(schedule.id)
    assert await scheduler.execute_schedule(schedule.id) is None
    assert scheduler.get_running_job_id(schedule.id) == backup_executor.requests[0][1]

    backup_executor.release.set()
    assert await first == backup_executor.requests[0][1]
    assert len(backup_executor.requests) == 1
    assert not scheduler.is_running(schedule.id)


@pytest.mark.asyncio
async def test_dispatcher_runs_queued_ticks_once_per_schedule(scheduler, schedule_store, source_connection,
                                                              backup_executor):
    schedule = await create_schedule(schedule_store, source_connection)
    backup_executor.release.clear()

    scheduler.enqueue(schedule.id)
    scheduler.enqueue(schedule.id)
    await asyncio.sleep(0.05)
    backup_executor.release.set()
    await scheduler.wait_idle()

    assert len(backup_executor.requests) == 1
    assert len(await schedule_store.get_run_history(schedule.id)) == 1


@pytest.mark.asyncio
async def test_manual_run_conflict(scheduler, registry, schedule_store, source_connection, backup_executor):
    schedule = await create_schedule(schedule_store, source_connection)
    backup_executor.release.clear()

    job_id = await scheduler.trigger_manual_run(schedule.id)

    assert registry.get_job(job_id) is not None
    with pytest.raises(ConflictError, match="already running"):
        await scheduler.trigger_manual_run(schedule.id)

    backup_executor.release.set()
    await scheduler.wait_idle()
    assert registry.get_job(job_id).status == JobStatus.COMPLETED
    assert not scheduler.is_running(schedule.id)


@pytest.mark.asyncio
async def test_manual_run_of_disabled_schedule(scheduler, registry, schedule_store, source_connection):
    schedule = await create_schedule(schedule_store, source_connection, enabled=False)

    job_id = await scheduler.trigger_manual_run(schedule.id)
    await scheduler.wait_idle()

    assert registry.get_job(job_id).status == JobStatus.COMPLETED
    assert (await schedule_store.get_by_id(schedule.id)).next_run_at is None


@pytest.mark.asyncio
async def test_manual_run_of_missing_schedule(scheduler):
    with pytest.raises(NotFoundError):
        await scheduler.trigger_manual_run("missing")


@pytest.mark.asyncio
async def test_missing_connection_creates_no_job(scheduler, registry, schedule_store, connections,
                                                 source_connection, backup_executor):
    schedule = await create_schedule(schedule_store, source_connection)
    await connections.delete(source_connection.id)

    assert await scheduler.execute_schedule(schedule.id) is None
    with pytest.raises(NotFoundError, match="no longer exists"):
        await scheduler.trigger_manual_run(schedule.id)

    assert registry.get_all_jobs() == []
    assert registry.get_history() == []
    assert backup_executor.requests == []
    assert await schedule_store.get_run_history(schedule.id) == []
    assert not scheduler.is_running(schedule.id)


@pytest.mark.asyncio
async def test_guard_is_released_after_failure(scheduler, registry, schedule_store, source_connection,
                                               backup_executor):
    schedule = await create_schedule(schedule_store, source_connection)
    backup_executor.error = RuntimeError("remote exploded")

    job_id = await scheduler.execute_schedule(schedule.id)

    assert registry.get_job(job_id).status == JobStatus.FAILED
    entry = (await schedule_store.get_run_history(schedule.id))[0]
    assert entry.status == JobStatus.FAILED
    assert entry.error == "remote exploded"
    assert not scheduler.is_running(schedule.id)

    backup_executor.error = None
    assert await scheduler.execute_schedule(schedule.id) is not None


@pytest.mark.asyncio
async def test_cancelled_run_is_recorded_as_cancelled(scheduler, registry, schedule_store, source_connection,
                                                      backup_executor):
    schedule = await create_schedule(schedule_store, source_connection)
    backup_executor.error = JobCancelledError("job", "Cancelled by user")

    job_id = await scheduler.execute_schedule(schedule.id)

    assert registry.get_job(job_id).status == JobStatus.CANCELLED
    assert (await schedule_store.get_run_history(schedule.id))[0].status == JobStatus.CANCELLED
    assert not scheduler.is_running(schedule.id)


@pytest.mark.asyncio
async def test_retention_after_successful_backup(scheduler, schedule_store, source_connection, artifacts):
    schedule = await create_schedule(schedule_store, source_connection, retention_count=2)
    old_jobs = []
    for i in range(3):
        job_id = f"old-{i}"
        await schedule_store.record_run_start(schedule.id, job_id)
        await schedule_store.record_run_complete(schedule.id, job_id, JobStatus.COMPLETED)
        artifacts.archive_path(job_id, ".zip").write_bytes(b"archive")
        old_jobs.append(job_id)

    new_job = await scheduler.execute_schedule(schedule.id)

    assert await schedule_store.get_completed_backup_job_ids(schedule.id) == [new_job, "old-2"]
    assert artifacts.find_archive(new_job) is not None
    assert artifacts.find_archive("old-2") is not None
    assert artifacts.find_archive("old-0") is None
    assert artifacts.find_archive("old-1") is None


@pytest.mark.asyncio
async def test_next_run_is_refreshed_after_run(scheduler, schedule_store, source_connection):
    schedule = await create_schedule(schedule_store, source_connection, preset=SchedulePreset.HOURLY)
    await scheduler.schedule_job(schedule)
    await schedule_store.update_next_run_time(schedule.id, None)

    await scheduler.execute_schedule(schedule.id)

    stored = await schedule_store.get_by_id(schedule.id)
    assert stored.next_run_at == datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reinitialize_with_timezone(scheduler, schedule_store, source_connection):
    schedule = await create_schedule(schedule_store, source_connection, preset=SchedulePreset.DAILY)
    await scheduler.schedule_job(schedule)
    old_timer = scheduler._timers[schedule.id]

    await scheduler.reinitialize_with_timezone("America/New_York")
    await asyncio.sleep(0)

    assert scheduler.get_timezone() == "America/New_York"
    assert scheduler._timers[schedule.id] is not old_timer
    assert old_timer.cancelled()
    stored = await schedule_store.get_by_id(schedule.id)
    assert stored.next_run_at == datetime(2024, 1, 2, 7, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reinitialize_rejects_unknown_timezone(scheduler):
    with pytest.raises(ValidationError):
        await scheduler.reinitialize_with_timezone("Nowhere/Special")
    assert scheduler.get_timezone() == "UTC"


@pytest.mark.asyncio
async def test_stop_cancels_timers(scheduler, schedule_store, source_connection):
    schedule = await create_schedule(schedule_store, source_connection)
    await scheduler.schedule_job(schedule)
    timer = scheduler._timers[schedule.id]

    await scheduler.stop()

    assert timer.cancelled()
    assert not scheduler.is_registered(schedule.id)


@pytest.mark.asyncio
async def test_late_cancel_is_recorded_and_skips_retention(scheduler, registry, schedule_store, source_connection,
                                                           backup_executor, artifacts, helpers):
    schedule = await create_schedule(schedule_store, source_connection, retention_count=1)
    await schedule_store.record_run_start(schedule.id, "old-0")
    await schedule_store.record_run_complete(schedule.id, "old-0", JobStatus.COMPLETED)
    artifacts.archive_path("old-0", ".zip").write_bytes(b"archive")
    backup_executor.release.clear()

    run = asyncio.create_task(scheduler.execute_schedule(schedule.id))
    await helpers.wait_for(lambda: len(backup_executor.requests) == 1)
    job_id = backup_executor.requests[0][1]
    await registry.cancel_job(job_id, "Cancelled by user")
    backup_executor.release.set()

    assert await run == job_id
    assert registry.get_job(job_id).status == JobStatus.CANCELLED
    entry = (await schedule_store.get_run_history(schedule.id))[0]
    assert (entry.job_id, entry.status) == (job_id, JobStatus.CANCELLED)
    assert (await schedule_store.get_by_id(schedule.id)).last_run.status == JobStatus.CANCELLED
    assert await schedule_store.get_completed_backup_job_ids(schedule.id) == ["old-0"]
    assert artifacts.find_archive("old-0") is not None
