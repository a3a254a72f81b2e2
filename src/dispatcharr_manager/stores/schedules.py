import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from dispatcharr_manager.domain.job import JobStatus, utcnow
from dispatcharr_manager.domain.schedule import (
    LastRun,
    Schedule,
    ScheduleInput,
    ScheduleJobType,
    ScheduleRunHistoryEntry,
)
from dispatcharr_manager.errors import NotFoundError
from dispatcharr_manager.storages.protocol import Storage

logger = logging.getLogger(__name__)


class ScheduleStore:
    """
    Durable CRUD for schedules and their run history.

    Both documents are cached in memory and written through on every change.
    Run history keeps the newest `history_limit` entries per schedule.
    """
    SCHEDULES_DOCUMENT = "schedules"
    HISTORY_DOCUMENT = "schedule_history"

    def __init__(self, storage: Storage, history_limit: int = 100):
        self.storage = storage
        self.history_limit = history_limit
        self._schedules: List[Schedule] = []
        self._history: List[ScheduleRunHistoryEntry] = []

    async def start(self) -> None:
        schedules = await self.storage.load(self.SCHEDULES_DOCUMENT) or []
        history = await self.storage.load(self.HISTORY_DOCUMENT) or []
        self._schedules = [Schedule.model_validate(item) for item in schedules]
        self._history = [ScheduleRunHistoryEntry.model_validate(item) for item in history]

    async def get_all(self) -> List[Schedule]:
        return [schedule.model_copy(deep=True) for schedule in self._schedules]

    async def get_by_id(self, schedule_id: str) -> Optional[Schedule]:
        schedule = self._find(schedule_id)
        return schedule.model_copy(deep=True) if schedule else None

    async def create(self, data: ScheduleInput, **cached: Any) -> Schedule:
        schedule = Schedule(**data.model_dump(), **cached)
        self._schedules.append(schedule)
        await self._save_schedules()
        return schedule.model_copy(deep=True)

    async def update(self, schedule_id: str, changes: Dict[str, Any]) -> Schedule:
        schedule = self._find(schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule not found")
        updated = Schedule.model_validate({
            **schedule.model_dump(),
            **changes,
            "updated_at": utcnow(),
        })
        self._schedules[self._schedules.index(schedule)] = updated
        await self._save_schedules()
        return updated.model_copy(deep=True)

    async def delete(self, schedule_id: str) -> None:
        self._schedules = [s for s in self._schedules if s.id != schedule_id]
        await self._save_schedules()
        self._history = [e for e in self._history if e.schedule_id != schedule_id]
        await self._save_history()

    async def update_last_run(self, schedule_id: str, job_id: str, status: JobStatus) -> None:
        schedule = self._find(schedule_id)
        if schedule is None:
            return
        now = utcnow()
        schedule.last_run = LastRun(job_id=job_id, status=status, at=now)
        schedule.updated_at = now
        await self._save_schedules()

    async def update_next_run_time(self, schedule_id: str, next_run_at: Optional[datetime]) -> None:
        schedule = self._find(schedule_id)
        if schedule is None:
            return
        schedule.next_run_at = next_run_at
        await self._save_schedules()

    async def record_run_start(self, schedule_id: str, job_id: str) -> None:
        self._history.append(ScheduleRunHistoryEntry(schedule_id=schedule_id, job_id=job_id))

        entries = [e for e in self._history if e.schedule_id == schedule_id]
        excess = len(entries) - self.history_limit
        if excess > 0:
            trimmed = {id(e) for e in entries[:excess]}
            self._history = [e for e in self._history if id(e) not in trimmed]

        await self._save_history()

    async def record_run_complete(
        self,
        schedule_id: str,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
    ) -> None:
        entry = next(
            (e for e in self._history if e.schedule_id == schedule_id and e.job_id == job_id),
            None,
        )
        if entry:
            entry.completed_at = utcnow()
            entry.status = status
            if error:
                entry.error = error
            await self._save_history()

        await self.update_last_run(schedule_id, job_id, status)

    async def get_run_history(self, schedule_id: str, limit: int = 20) -> List[ScheduleRunHistoryEntry]:
        entries = [e for e in reversed(self._history) if e.schedule_id == schedule_id]
        entries.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy() for e in entries[:limit]]

    async def get_completed_backup_job_ids(self, schedule_id: str) -> List[str]:
        """Job ids of completed runs of a backup schedule, newest first."""
        schedule = self._find(schedule_id)
        if schedule is None or schedule.job_type != ScheduleJobType.BACKUP:
            return []
        entries = [
            e for e in reversed(self._history)
            if e.schedule_id == schedule_id and e.status == JobStatus.COMPLETED
        ]
        entries.sort(key=lambda e: e.started_at, reverse=True)
        return [e.job_id for e in entries]

    async def is_scheduled_job(self, job_id: str) -> bool:
        return any(e.job_id == job_id for e in self._history)

    async def delete_history_entries(self, job_ids: Iterable[str]) -> None:
        doomed = set(job_ids)
        if not doomed:
            return
        self._history = [e for e in self._history if e.job_id not in doomed]
        await self._save_history()

    def _find(self, schedule_id: str) -> Optional[Schedule]:
        return next((s for s in self._schedules if s.id == schedule_id), None)

    async def _save_schedules(self) -> None:
        await self.storage.save(
            self.SCHEDULES_DOCUMENT, [s.model_dump(mode="json") for s in self._schedules]
        )

    async def _save_history(self) -> None:
        await self.storage.save(
            self.HISTORY_DOCUMENT, [e.model_dump(mode="json") for e in self._history]
        )
