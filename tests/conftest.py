import asyncio
import copy
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from dispatcharr_manager.domain.connection import SavedConnectionInput
from dispatcharr_manager.domain.job import JobType
from dispatcharr_manager.errors import JobCancelledError, RemoteRequestError
from dispatcharr_manager.executor_factory import TaskExecutorFactory
from dispatcharr_manager.executors.artifacts import ArtifactStore
from dispatcharr_manager.registry import JobRegistry
from dispatcharr_manager.scheduling.retention import RetentionManager
from dispatcharr_manager.scheduling.scheduler import SchedulerService
from dispatcharr_manager.storages.sqlalchemy import InMemoryStorage
from dispatcharr_manager.stores.connections import ConnectionStore
from dispatcharr_manager.stores.schedules import ScheduleStore


class FakeRemoteClient:
    """
    Scripted stand-in for a Dispatcharr instance.

    `data` maps collection endpoints to lists of records (served in pages when
    the caller paginates) and singleton endpoints to one object.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None, downloads: Optional[Dict[str, bytes]] = None):
        self.data: Dict[str, Any] = copy.deepcopy(data or {})
        self.downloads: Dict[str, bytes] = downloads or {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.fail_names: Set[str] = set()
        self.on_get: Optional[Callable[[str, Optional[Dict[str, Any]]], Any]] = None
        self.authenticated = False
        self.closed = False
        self._next_id = 1000

    async def authenticate(self) -> str:
        self.authenticated = True
        return "token"

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append(("GET", endpoint, params))
        if self.on_get is not None:
            await self.on_get(endpoint, params)
        value = copy.deepcopy(self.data.get(endpoint))
        if isinstance(value, list) and params and "page" in params:
            page, size = params["page"], params["page_size"]
            chunk = value[(page - 1) * size:page * size]
            has_next = page * size < len(value)
            return {
                "count": len(value),
                "results": chunk,
                "next": f"{endpoint}?page={page + 1}" if has_next else None,
            }
        return value

    async def post(self, endpoint: str, payload: Any = None) -> Any:
        self.calls.append(("POST", endpoint, payload))
        self._maybe_fail("POST", endpoint, payload)
        record = {**payload, "id": self._next_id}
        self._next_id += 1
        self.data.setdefault(endpoint, []).append(record)
        return copy.deepcopy(record)

    async def put(self, endpoint: str, payload: Any = None) -> Any:
        self.calls.append(("PUT", endpoint, payload))
        self._maybe_fail("PUT", endpoint, payload)
        for collection, records in self.data.items():
            if isinstance(records, list) and endpoint.startswith(collection) and endpoint != collection:
                record_id = endpoint[len(collection):].strip("/")
                for record in records:
                    if str(record.get("id")) == record_id:
                        record.update(payload)
                        return copy.deepcopy(record)
        self.data[endpoint] = payload
        return payload

    async def patch(self, endpoint: str, payload: Any = None) -> Any:
        return await self.put(endpoint, payload)

    async def delete(self, endpoint: str) -> Any:
        self.calls.append(("DELETE", endpoint, None))
        return None

    async def download(self, url: str) -> bytes:
        self.calls.append(("DOWNLOAD", url, None))
        if url not in self.downloads:
            raise RemoteRequestError("GET", url, 404)
        return self.downloads[url]

    async def close(self) -> None:
        self.closed = True

    def writes(self, method: Optional[str] = None) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] in ((method,) if method else ("POST", "PUT"))]

    def _maybe_fail(self, method: str, endpoint: str, payload: Any) -> None:
        if isinstance(payload, dict) and payload.get("name") in self.fail_names:
            raise RemoteRequestError(method, endpoint, 500, {"detail": "boom"})


@pytest.fixture
def fake_client_class():
    return FakeRemoteClient


@pytest_asyncio.fixture
async def storage():
    storage = InMemoryStorage()
    await storage.start()
    yield storage
    await storage.close()


@pytest_asyncio.fixture
async def registry(storage):
    registry = JobRegistry(storage)
    await registry.start()
    yield registry
    await registry.stop()


class GatedExecutor:
    """
    Executor double that holds each run until `release` is set. Backup runs
    leave an empty archive behind so retention has something to delete.
    """

    def __init__(self, registry: JobRegistry, job_type: JobType, artifacts: Optional[ArtifactStore] = None):
        self.registry = registry
        self.job_type = job_type
        self.artifacts = artifacts
        self.release = asyncio.Event()
        self.release.set()
        self.error: Optional[BaseException] = None
        self.requests: List[Tuple[Any, str]] = []

    def supported_job_type(self) -> JobType:
        return self.job_type

    async def execute(self, request: Any, job_id: str) -> Any:
        self.requests.append((request, job_id))
        await self.registry.start_job(job_id)
        await self.release.wait()
        if isinstance(self.error, JobCancelledError):
            await self.registry.cancel_job(job_id, str(self.error))
            raise self.error
        if self.error is not None:
            await self.registry.fail_job(job_id, str(self.error))
            raise self.error
        if self.artifacts is not None:
            self.artifacts.archive_path(job_id, ".zip").write_bytes(b"archive")
        await self.registry.complete_job(job_id, {"ok": True})
        return {"ok": True}


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


FIXED_NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def helpers():
    return SimpleNamespace(wait_for=wait_for, fixed_now=FIXED_NOW)


@pytest.fixture
def artifacts(tmp_path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


@pytest_asyncio.fixture
async def connections(storage) -> ConnectionStore:
    store = ConnectionStore(storage)
    await store.start()
    return store


@pytest_asyncio.fixture
async def schedule_store(storage) -> ScheduleStore:
    store = ScheduleStore(storage)
    await store.start()
    return store


@pytest.fixture
def backup_executor(registry, artifacts) -> GatedExecutor:
    return GatedExecutor(registry, JobType.BACKUP, artifacts)


@pytest.fixture
def sync_executor(registry) -> GatedExecutor:
    return GatedExecutor(registry, JobType.SYNC)


@pytest_asyncio.fixture
async def scheduler(registry, schedule_store, connections, artifacts, backup_executor, sync_executor):
    executors = TaskExecutorFactory()
    executors.register(backup_executor)
    executors.register(sync_executor)
    scheduler = SchedulerService(
        registry, schedule_store, connections, executors,
        RetentionManager(schedule_store, artifacts),
        timezone="UTC", clock=lambda: FIXED_NOW,
    )
    await scheduler.start()
    yield scheduler
    await scheduler.stop()


@pytest_asyncio.fixture
async def source_connection(connections):
    return await connections.create(SavedConnectionInput(
        name="Home", instance_url="http://home:9191", username="admin", password="secret"
    ))


@pytest_asyncio.fixture
async def destination_connection(connections):
    return await connections.create(SavedConnectionInput(
        name="Cabin", instance_url="http://cabin:9191", username="admin", password="secret"
    ))
