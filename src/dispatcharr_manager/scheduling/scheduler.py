import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Coroutine, Dict, Optional, Set

from dispatcharr_manager.domain.job import JobStatus, JobType, utcnow
from dispatcharr_manager.domain.options import SyncOptions
from dispatcharr_manager.domain.requests import BackupRequest, SyncRequest
from dispatcharr_manager.domain.schedule import Schedule, ScheduleJobType, SchedulePreset
from dispatcharr_manager.errors import ConflictError, JobCancelledError, NotFoundError, ValidationError
from dispatcharr_manager.executor_factory import TaskExecutorFactory
from dispatcharr_manager.registry import JobRegistry
from dispatcharr_manager.scheduling import cron
from dispatcharr_manager.scheduling.retention import RetentionManager
from dispatcharr_manager.stores.connections import ConnectionStore
from dispatcharr_manager.stores.schedules import ScheduleStore
from dispatcharr_manager.stores.settings import SettingsStore, validate_timezone

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class ScheduledRun:
    schedule: Schedule
    job_type: JobType
    request: Any
    job_id: str


class SchedulerService:
    """
    Turns enabled schedules into jobs.

    Each registered schedule owns one timer task. When a timer fires it puts the
    schedule id on a queue; the dispatcher drains the queue and starts a run per
    tick. A schedule has at most one run in flight: the run guard maps schedule
    id to the running job id and is claimed before the first await of a run.
    """

    def __init__(
        self,
        registry: JobRegistry,
        schedules: ScheduleStore,
        connections: ConnectionStore,
        executors: TaskExecutorFactory,
        retention: RetentionManager,
        settings: Optional[SettingsStore] = None,
        timezone: str = "UTC",
        clock: Clock = utcnow,
    ):
        self.registry = registry
        self.schedules = schedules
        self.connections = connections
        self.executors = executors
        self.retention = retention
        self.settings = settings
        self._timezone = timezone
        self._clock = clock
        self._timers: Dict[str, asyncio.Task] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._running: Dict[str, Optional[str]] = {}
        self._runs: Set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._dispatcher is not None:
            return
        if self.settings is not None:
            self._timezone = await self.settings.get_timezone()
        self._dispatcher = asyncio.create_task(self._dispatch_loop())

        registered = 0
        for schedule in await self.schedules.get_all():
            if schedule.enabled and await self.schedule_job(schedule):
                registered += 1
        logger.info("Scheduler started with %d schedule(s), timezone %s", registered, self._timezone)

    async def stop(self) -> None:
        tasks = list(self._timers.values()) + list(self._runs)
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._runs.clear()
        self._running.clear()
        self._dispatcher = None
        logger.info("Scheduler stopped")

    def get_timezone(self) -> str:
        return self._timezone

    def is_running(self, schedule_id: str) -> bool:
        return schedule_id in self._running

    def get_running_job_id(self, schedule_id: str) -> Optional[str]:
        return self._running.get(schedule_id)

    def is_registered(self, schedule_id: str) -> bool:
        return schedule_id in self._timers

    @staticmethod
    def validate_expression(expression: str) -> bool:
        return cron.validate_expression(expression)

    @staticmethod
    def describe_preset(preset: SchedulePreset) -> str:
        return cron.PRESET_DESCRIPTIONS[preset]

    async def schedule_job(self, schedule: Schedule) -> bool:
        """
        (Re)register the timer of a schedule and persist its next run time.

        Returns False, leaving the schedule unregistered, when its expression is invalid.
        """
        self.unschedule_job(schedule.id)
        try:
            expression = cron.schedule_expression(schedule)
        except ValidationError as e:
            logger.error("Cannot schedule '%s' (%s): %s", schedule.name, schedule.id, e)
            return False

        self._timers[schedule.id] = asyncio.create_task(
            self._timer_loop(schedule.id, expression), name=f"schedule-timer-{schedule.id}"
        )
        next_run_at = cron.next_run_time(expression, self._timezone, self._clock())
        await self.schedules.update_next_run_time(schedule.id, next_run_at)
        logger.info("Scheduled '%s' with '%s' (%s), next run at %s",
                    schedule.name, expression, self._timezone, next_run_at.isoformat())
        return True

    def unschedule_job(self, schedule_id: str) -> None:
        timer = self._timers.pop(schedule_id, None)
        if timer is not None:
            timer.cancel()
            logger.info("Unscheduled %s", schedule_id)

    def enqueue(self, schedule_id: str) -> None:
        self._queue.put_nowait(schedule_id)

    async def execute_schedule(self, schedule_id: str) -> Optional[str]:
        """
        Timer-driven run. Skips without error when the schedule is already
        running, and aborts without creating a job when it or one of its
        connections no longer exists.

        Returns the id of the job that ran, or None when nothing ran.
        """
        if schedule_id in self._running:
            logger.info("Schedule %s is already running, skipping this tick", schedule_id)
            return None
        self._running[schedule_id] = None
        try:
            run = await self._prepare_run(schedule_id)
        except NotFoundError as e:
            logger.error("Skipping run of schedule %s: %s", schedule_id, e)
            self._running.pop(schedule_id, None)
            return None
        except Exception:
            logger.exception("Could not start run of schedule %s", schedule_id)
            self._running.pop(schedule_id, None)
            return None

        await self._execute(run)
        return run.job_id

    async def trigger_manual_run(self, schedule_id: str) -> str:
        """
        Start a run now, also for disabled schedules, and return its job id
        once the job exists. The run itself continues in the background.

        Raises:
            NotFoundError: the schedule or one of its connections does not exist.
            ConflictError: the schedule is already running.
        """
        if await self.schedules.get_by_id(schedule_id) is None:
            raise NotFoundError("Schedule not found")
        if schedule_id in self._running:
            raise ConflictError("Schedule is already running")
        self._running[schedule_id] = None
        try:
            run = await self._prepare_run(schedule_id)
        except BaseException:
            self._running.pop(schedule_id, None)
            raise

        logger.info("Manual run of '%s' started as job %s", run.schedule.name, run.job_id)
        self._spawn(self._execute(run))
        return run.job_id

    async def reinitialize_with_timezone(self, timezone: str) -> None:
        """
        Timers cannot be re-bound to another timezone, so every timer is
        stopped and the enabled schedules are registered again.
        """
        validate_timezone(timezone)
        for schedule_id in list(self._timers):
            self.unschedule_job(schedule_id)
        self._timezone = timezone

        for schedule in await self.schedules.get_all():
            if schedule.enabled:
                await self.schedule_job(schedule)
        logger.info("Scheduler reinitialized with timezone %s", timezone)

    async def wait_idle(self) -> None:
        """Wait until queued ticks are dispatched and every run has finished."""
        if self._dispatcher is not None:
            await self._queue.join()
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    async def _timer_loop(self, schedule_id: str, expression: str) -> None:
        fire_at = cron.next_run_time(expression, self._timezone, self._clock())
        while True:
            delay = (fire_at - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            self.enqueue(schedule_id)
            fire_at = cron.next_run_time(expression, self._timezone, max(fire_at, self._clock()))

    async def _dispatch_loop(self) -> None:
        while True:
            schedule_id = await self._queue.get()
            try:
                self._spawn(self.execute_schedule(schedule_id))
            finally:
                self._queue.task_done()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._runs.add(task)
        task.add_done_callback(self._on_run_done)
        return task

    def _on_run_done(self, task: asyncio.Task) -> None:
        self._runs.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scheduled run crashed", exc_info=task.exception())

    async def _prepare_run(self, schedule_id: str) -> ScheduledRun:
        schedule = await self.schedules.get_by_id(schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule not found")

        source = await self.connections.get_by_id(schedule.source_connection_id)
        if source is None:
            raise NotFoundError(f"Source connection of schedule '{schedule.name}' no longer exists")

        if schedule.job_type == ScheduleJobType.SYNC:
            destination = await self.connections.get_by_id(schedule.destination_connection_id)
            if destination is None:
                raise NotFoundError(f"Destination connection of schedule '{schedule.name}' no longer exists")
            job_type = JobType.SYNC
            request: Any = SyncRequest(
                source=source.credentials(),
                destination=destination.credentials(),
                options=SyncOptions(categories=schedule.options.categories),
            )
        else:
            job_type = JobType.BACKUP
            request = BackupRequest(source=source.credentials(), options=schedule.options)

        job_id = await self.registry.create_job(job_type)
        self._running[schedule_id] = job_id
        await self.schedules.record_run_start(schedule_id, job_id)
        return ScheduledRun(schedule=schedule, job_type=job_type, request=request, job_id=job_id)

    async def _execute(self, run: ScheduledRun) -> None:
        schedule = run.schedule
        try:
            executor = self.executors.get_executor(run.job_type)
            await executor.execute(run.request, run.job_id)
            job = self.registry.get_job(run.job_id)
            if job is not None and job.status == JobStatus.CANCELLED:
                raise JobCancelledError(run.job_id, job.message)
            await self.schedules.record_run_complete(schedule.id, run.job_id, JobStatus.COMPLETED)
            logger.info("Scheduled %s '%s' completed (job %s)", run.job_type.value, schedule.name, run.job_id)

            if schedule.job_type == ScheduleJobType.BACKUP and schedule.retention_count:
                await self.retention.apply(schedule.id, schedule.retention_count)
        except JobCancelledError as e:
            await self.schedules.record_run_complete(schedule.id, run.job_id, JobStatus.CANCELLED, str(e))
        except asyncio.CancelledError:
            await self.registry.cancel_job(run.job_id, "Scheduler stopped")
            await self.schedules.record_run_complete(
                schedule.id, run.job_id, JobStatus.CANCELLED, "Scheduler stopped"
            )
            raise
        except Exception as e:
            logger.error("Scheduled %s '%s' failed: %s", run.job_type.value, schedule.name, e)
            await self.registry.fail_job(run.job_id, str(e))
            await self.schedules.record_run_complete(schedule.id, run.job_id, JobStatus.FAILED, str(e))
        finally:
            self._running.pop(schedule.id, None)
            await self._refresh_next_run(schedule.id)

    async def _refresh_next_run(self, schedule_id: str) -> None:
        schedule = await self.schedules.get_by_id(schedule_id)
        if schedule is None or not schedule.enabled or schedule_id not in self._timers:
            return
        try:
            expression = cron.schedule_expression(schedule)
        except ValidationError:
            return
        await self.schedules.update_next_run_time(
            schedule_id, cron.next_run_time(expression, self._timezone, self._clock())
        )
