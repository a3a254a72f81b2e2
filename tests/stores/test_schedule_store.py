import pytest
import pytest_asyncio

from dispatcharr_manager.domain.job import JobStatus
from dispatcharr_manager.domain.schedule import ScheduleInput, ScheduleJobType
from dispatcharr_manager.errors import NotFoundError
from dispatcharr_manager.stores.schedules import ScheduleStore


@pytest_asyncio.fixture
async def store(storage):
    store = ScheduleStore(storage, history_limit=3)
    await store.start()
    return store


def backup_input(**overrides) -> ScheduleInput:
    return ScheduleInput(**{
        "name": "Nightly",
        "job_type": ScheduleJobType.BACKUP,
        "source_connection_id": "conn-1",
        **overrides,
    })


@pytest.mark.asyncio
async def test_create_update_delete(store: ScheduleStore):
    schedule = await store.create(backup_input(), source_connection_name="Home")
    assert schedule.source_connection_name == "Home"

    updated = await store.update(schedule.id, {"name": "Weekly", "retention_count": 2})
    assert updated.name == "Weekly"
    assert updated.retention_count == 2
    assert updated.updated_at >= schedule.updated_at

    await store.delete(schedule.id)
    assert await store.get_by_id(schedule.id) is None


@pytest.mark.asyncio
async def test_update_missing_schedule(store: ScheduleStore):
    with pytest.raises(NotFoundError):
        await store.update("missing", {"name": "x"})


@pytest.mark.asyncio
async def test_schedules_survive_reload(storage, store: ScheduleStore):
    schedule = await store.create(backup_input())
    await store.record_run_start(schedule.id, "job-1")

    reloaded = ScheduleStore(storage)
    await reloaded.start()

    assert (await reloaded.get_by_id(schedule.id)).name == "Nightly"
    assert [e.job_id for e in await reloaded.get_run_history(schedule.id)] == ["job-1"]


@pytest.mark.asyncio
async def test_history_is_trimmed_per_schedule(store: ScheduleStore):
    first = await store.create(backup_input())
    second = await store.create(backup_input(name="Other"))
    await store.record_run_start(second.id, "other-job")
    for i in range(5):
        await store.record_run_start(first.id, f"job-{i}")

    history = await store.get_run_history(first.id)
    assert {e.job_id for e in history} == {"job-2", "job-3", "job-4"}
    assert [e.job_id for e in await store.get_run_history(second.id)] == ["other-job"]


@pytest.mark.asyncio
async def test_run_complete_updates_entry_and_last_run(store: ScheduleStore):
    schedule = await store.create(backup_input())
    await store.record_run_start(schedule.id, "job-1")
    await store.record_run_complete(schedule.id, "job-1", JobStatus.FAILED, "boom")

    entry = (await store.get_run_history(schedule.id))[0]
    assert entry.status == JobStatus.FAILED
    assert entry.error == "boom"
    assert entry.completed_at is not None

    last_run = (await store.get_by_id(schedule.id)).last_run
    assert last_run.job_id == "job-1"
    assert last_run.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_completed_backup_job_ids_newest_first(store: ScheduleStore):
    schedule = await store.create(backup_input())
    for job_id, status in [("a", JobStatus.COMPLETED), ("b", JobStatus.FAILED), ("c", JobStatus.COMPLETED)]:
        await store.record_run_start(schedule.id, job_id)
        await store.record_run_complete(schedule.id, job_id, status)

    assert await store.get_completed_backup_job_ids(schedule.id) == ["c", "a"]

    await store.delete_history_entries(["a"])
    assert await store.get_completed_backup_job_ids(schedule.id) == ["c"]


@pytest.mark.asyncio
async def test_sync_schedules_have_no_backups(store: ScheduleStore):
    schedule = await store.create(backup_input(job_type=ScheduleJobType.SYNC, destination_connection_id="conn-2"))
    await store.record_run_start(schedule.id, "job-1")
    await store.record_run_complete(schedule.id, "job-1", JobStatus.COMPLETED)

    assert await store.get_completed_backup_job_ids(schedule.id) == []
