import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dispatcharr_manager.domain.job import Job, JobStatus, JobType, LogEntry, utcnow
from dispatcharr_manager.storages.protocol import Storage

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted by restart"


class JobRegistry:
    """
    Tracks the lifecycle, logs and bounded history of jobs.

    Every state change is written through to storage before the mutating call
    returns. Log lines are flushed in batches of `log_flush_every` and always on
    a terminal transition. A terminal snapshot of each job is kept in a bounded
    history; the active map is swept `retention` after completion.
    """
    JOBS_DOCUMENT = "jobs"
    LOGS_DOCUMENT = "job_logs"
    HISTORY_DOCUMENT = "job_history"

    def __init__(
        self,
        storage: Storage,
        history_limit: int = 100,
        retention: timedelta = timedelta(hours=1),
        cleanup_interval: timedelta = timedelta(hours=1),
        log_flush_every: int = 5,
    ):
        self.storage = storage
        self.history_limit = history_limit
        self.retention = retention
        self.cleanup_interval = cleanup_interval
        self.log_flush_every = max(log_flush_every, 1)
        self._jobs: Dict[str, Job] = {}
        self._logs: Dict[str, List[LogEntry]] = {}
        self._history: List[Job] = []
        self._unflushed_logs = 0
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Load persisted jobs and fail any that were still pending or running.
        """
        jobs = await self.storage.load(self.JOBS_DOCUMENT) or []
        logs = await self.storage.load(self.LOGS_DOCUMENT) or {}
        history = await self.storage.load(self.HISTORY_DOCUMENT) or []

        self._jobs = {job.id: job for job in (Job.model_validate(item) for item in jobs)}
        self._logs = {
            job_id: [LogEntry.model_validate(entry) for entry in entries]
            for job_id, entries in logs.items()
        }
        self._history = [Job.model_validate(item) for item in history]

        interrupted = [job for job in self._jobs.values() if job.status.is_active]
        for job in interrupted:
            job.error = INTERRUPTED_ERROR
            job.message = INTERRUPTED_ERROR
            job.set_status(JobStatus.FAILED, at=job.updated_at)
            self._logs.setdefault(job.id, []).append(LogEntry(message=f"Job failed: {INTERRUPTED_ERROR}"))
            self._record_history(job)
        if interrupted:
            logger.warning("Marked %d interrupted job(s) as failed", len(interrupted))

        await self._persist(history=True, logs=True)

        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.flush_logs()

    async def create_job(self, job_type: Optional[JobType] = None) -> str:
        job = Job(job_type=job_type)
        self._jobs[job.id] = job
        self._logs[job.id] = []
        await self._persist(logs=True)
        return job.id

    async def start_job(self, job_id: str, message: Optional[str] = None) -> None:
        job = self._active(job_id)
        if job is None:
            return
        job.set_status(JobStatus.RUNNING)
        job.progress = 0.0
        job.message = message
        self._append_log(job_id, message or "Job started")
        await self._persist()

    async def set_progress(self, job_id: str, progress: float, message: Optional[str] = None) -> None:
        job = self._active(job_id)
        if job is None:
            return
        progress = min(max(progress, 0.0), 100.0)
        if job.status == JobStatus.RUNNING:
            progress = max(progress, job.progress)
        job.progress = progress
        job.message = message
        job.updated_at = utcnow()
        if message:
            self._append_log(job_id, f"{message} ({round(progress)}%)")
        await self._persist()

    async def complete_job(self, job_id: str, result: Any = None) -> None:
        job = self._active(job_id)
        if job is None:
            return
        job.progress = 100.0
        job.message = "Completed"
        job.result = result
        await self._finish(job, JobStatus.COMPLETED, "Job completed")

    async def fail_job(self, job_id: str, error: str) -> None:
        job = self._active(job_id)
        if job is None:
            return
        job.error = error
        await self._finish(job, JobStatus.FAILED, f"Job failed: {error}")

    async def cancel_job(self, job_id: str, reason: Optional[str] = None) -> None:
        job = self._active(job_id)
        if job is None:
            return
        job.message = reason or "Cancelled by user"
        await self._finish(job, JobStatus.CANCELLED, f"Job cancelled: {job.message}")

    async def add_log(self, job_id: str, message: str) -> None:
        if self._append_log(job_id, message) and self._unflushed_logs >= self.log_flush_every:
            await self.flush_logs()

    async def flush_logs(self) -> None:
        self._unflushed_logs = 0
        await self.storage.save(self.LOGS_DOCUMENT, self._dump_logs())

    def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def get_all_jobs(self) -> List[Job]:
        """Only pending and running jobs."""
        return [job.model_copy(deep=True) for job in self._jobs.values() if job.status.is_active]

    def get_history(self) -> List[Job]:
        return [job.model_copy(deep=True) for job in self._history]

    def get_logs(self, job_id: str) -> List[LogEntry]:
        return [entry.model_copy() for entry in self._logs.get(job_id, [])]

    def is_cancel_requested(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is not None and job.status == JobStatus.CANCELLED

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """
        Drop terminal jobs and their logs once `retention` has passed since completion.
        """
        cutoff = (now or utcnow()) - self.retention
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._logs.pop(job_id, None)
        if expired:
            logger.debug("Evicted %d finished job(s) from the active map", len(expired))
            await self._persist(logs=True)
        return len(expired)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval.total_seconds())
            try:
                await self.cleanup()
            except Exception:
                logger.exception("Job cleanup failed")

    def _active(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("Unknown job %s", job_id)
            return None
        if job.is_terminal:
            logger.debug("Ignoring update for job %s, already %s", job_id, job.status.value)
            return None
        return job

    async def _finish(self, job: Job, status: JobStatus, log_message: str) -> None:
        job.set_status(status)
        self._append_log(job.id, log_message)
        self._record_history(job)
        await self._persist(history=True, logs=True)

    def _append_log(self, job_id: str, message: str) -> bool:
        entries = self._logs.get(job_id)
        if entries is None:
            return False
        entries.append(LogEntry(message=message))
        self._unflushed_logs += 1
        return True

    def _record_history(self, job: Job) -> None:
        self._history = [snapshot for snapshot in self._history if snapshot.id != job.id]
        self._history.append(job.model_copy(deep=True))
        if len(self._history) > self.history_limit:
            self._history = self._history[-self.history_limit:]

    def _dump_logs(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            job_id: [entry.model_dump(mode="json") for entry in entries]
            for job_id, entries in self._logs.items()
        }

    async def _persist(self, history: bool = False, logs: bool = False) -> None:
        await self.storage.save(
            self.JOBS_DOCUMENT, [job.model_dump(mode="json") for job in self._jobs.values()]
        )
        if history:
            await self.storage.save(
                self.HISTORY_DOCUMENT, [job.model_dump(mode="json") for job in self._history]
            )
        if logs or self._unflushed_logs >= self.log_flush_every:
            await self.flush_logs()
