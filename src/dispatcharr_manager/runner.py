import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from dispatcharr_manager.domain.job import JobStatus, JobType
from dispatcharr_manager.errors import ConflictError, JobCancelledError, NotFoundError
from dispatcharr_manager.executor_factory import TaskExecutorFactory
from dispatcharr_manager.executors.artifacts import ArtifactStore
from dispatcharr_manager.registry import JobRegistry
from dispatcharr_manager.stores.schedules import ScheduleStore

logger = logging.getLogger(__name__)


class JobRunner:
    """
    Runs on-demand backup, restore and sync jobs in the background.
    """

    def __init__(self, registry: JobRegistry, executors: TaskExecutorFactory,
                 artifacts: Optional[ArtifactStore] = None, schedules: Optional[ScheduleStore] = None):
        self.registry = registry
        self.executors = executors
        self.artifacts = artifacts
        self.schedules = schedules
        self.job_futures: Dict[str, asyncio.Task] = {}

    async def submit(self, job_type: JobType, request: Any) -> str:
        """
        Create a job and start its executor. Returns the job id immediately.
        """
        executor = self.executors.get_executor(job_type)
        job_id = await self.registry.create_job(job_type)
        future = asyncio.create_task(self._execute(executor, request, job_id))
        self.job_futures[job_id] = future
        future.add_done_callback(lambda f: self.job_futures.pop(job_id, None))
        logger.info("Started %s job %s", job_type.value, job_id)
        return job_id

    async def cancel(self, job_id: str, reason: Optional[str] = None) -> None:
        """
        Request cooperative cancellation; the executor stops at its next checkpoint.

        Raises:
            NotFoundError: unknown job.
            ConflictError: the job already finished.
        """
        job = self.registry.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.is_terminal:
            raise ConflictError(f"Job is already {job.status.value}")
        await self.registry.cancel_job(job_id, reason)

    @asynccontextmanager
    async def download(self, job_id: str) -> AsyncIterator[Path]:
        """
        Serve the archive of a finished backup job.

        Archives of on-demand backups are deleted once downloaded. Scheduled
        backups stay until their schedule's retention removes them.

        Raises:
            ConflictError: the job has not completed.
            NotFoundError: the job left no archive.
        """
        job = self.registry.get_job(job_id)
        if job is not None and job.status != JobStatus.COMPLETED:
            raise ConflictError(f"Job is {job.status.value}, not completed")
        scheduled = self.schedules is not None and await self.schedules.is_scheduled_job(job_id)
        if self.artifacts is None or self.artifacts.find_archive(job_id) is None:
            raise NotFoundError("Backup file not found")
        async with self.artifacts.download(job_id, delete_after=not scheduled) as path:
            logger.info("Serving archive %s", path.name)
            yield path

    async def wait(self, job_id: str) -> None:
        future = self.job_futures.get(job_id)
        if future is not None:
            await asyncio.gather(future, return_exceptions=True)

    async def stop(self) -> None:
        for future in self.job_futures.values():
            if not future.done():
                future.cancel()
        await asyncio.gather(*self.job_futures.values(), return_exceptions=True)
        self.job_futures.clear()

    async def _execute(self, executor, request: Any, job_id: str) -> None:
        try:
            await executor.execute(request, job_id)
        except JobCancelledError:
            pass
        except asyncio.CancelledError:
            await self.registry.cancel_job(job_id, "Shutting down")
            raise
        except Exception as e:
            logger.error("Job %s failed: %s", job_id, e)
            await self.registry.fail_job(job_id, str(e))
