import logging
from datetime import timedelta
from typing import Optional

from dispatcharr_manager.config import Settings, get_settings
from dispatcharr_manager.executor_factory import TaskExecutorFactory
from dispatcharr_manager.executors.artifacts import ArtifactStore
from dispatcharr_manager.executors.backup import BackupExecutor
from dispatcharr_manager.executors.base import ClientFactory, default_client_factory
from dispatcharr_manager.executors.restore import RestoreExecutor
from dispatcharr_manager.executors.sync import SyncExecutor
from dispatcharr_manager.registry import JobRegistry
from dispatcharr_manager.runner import JobRunner
from dispatcharr_manager.scheduling.retention import RetentionManager
from dispatcharr_manager.scheduling.scheduler import SchedulerService
from dispatcharr_manager.scheduling.service import ScheduleService
from dispatcharr_manager.storages.protocol import Storage
from dispatcharr_manager.storages.sqlalchemy import SqlAlchemyStorage
from dispatcharr_manager.stores.connections import ConnectionStore
from dispatcharr_manager.stores.schedules import ScheduleStore
from dispatcharr_manager.stores.settings import SettingsStore

logger = logging.getLogger(__name__)


class Application:
    """
    Builds every service from one Settings object and owns their lifecycle.
    """

    def __init__(self, settings: Optional[Settings] = None, storage: Optional[Storage] = None,
                 client_factory: Optional[ClientFactory] = None):
        self.settings = settings or get_settings()
        self.storage = storage or SqlAlchemyStorage(self.settings.storage_url)
        client_factory = client_factory or default_client_factory(self.settings.request_timeout)

        self.registry = JobRegistry(
            self.storage,
            history_limit=self.settings.job_history_limit,
            retention=timedelta(seconds=self.settings.job_retention_seconds),
            cleanup_interval=timedelta(seconds=self.settings.job_cleanup_interval_seconds),
            log_flush_every=self.settings.log_flush_every,
        )
        self.schedule_store = ScheduleStore(self.storage, history_limit=self.settings.schedule_history_limit)
        self.connections = ConnectionStore(self.storage)
        self.settings_store = SettingsStore(self.storage, default_timezone=self.settings.default_timezone)
        self.artifacts = ArtifactStore(self.settings.artifacts_dir)

        page_size = self.settings.page_size
        self.executors = TaskExecutorFactory()
        self.executors.register(BackupExecutor(self.registry, client_factory, self.artifacts, page_size))
        self.executors.register(RestoreExecutor(self.registry, client_factory, self.artifacts, page_size))
        self.executors.register(SyncExecutor(self.registry, client_factory, page_size))

        self.retention = RetentionManager(self.schedule_store, self.artifacts)
        self.scheduler = SchedulerService(
            self.registry, self.schedule_store, self.connections, self.executors,
            self.retention, settings=self.settings_store,
        )
        self.schedules = ScheduleService(self.schedule_store, self.connections, self.scheduler)
        self.runner = JobRunner(self.registry, self.executors, self.artifacts, self.schedule_store)

    async def start(self) -> None:
        await self.storage.start()
        await self.registry.start()
        await self.schedule_store.start()
        await self.connections.start()
        await self.scheduler.start()
        logger.info("Dispatcharr manager started (data dir %s)", self.settings.data_dir)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.runner.stop()
        await self.registry.stop()
        await self.storage.close()
        logger.info("Dispatcharr manager stopped")

    async def set_timezone(self, timezone: str) -> None:
        await self.settings_store.set_timezone(timezone)
        await self.scheduler.reinitialize_with_timezone(timezone)

    async def __aenter__(self) -> "Application":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
