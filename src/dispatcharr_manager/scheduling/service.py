import logging
from typing import Any, Dict, List, Optional

from dispatcharr_manager.domain.schedule import (
    Schedule,
    ScheduleInput,
    ScheduleJobType,
    SchedulePreset,
    ScheduleRunHistoryEntry,
    ScheduleUpdate,
    ScheduleView,
)
from dispatcharr_manager.errors import ConflictError, NotFoundError, ValidationError
from dispatcharr_manager.scheduling.cron import validate_expression
from dispatcharr_manager.scheduling.scheduler import SchedulerService
from dispatcharr_manager.stores.connections import ConnectionStore
from dispatcharr_manager.stores.schedules import ScheduleStore

logger = logging.getLogger(__name__)


class ScheduleService:
    """
    Schedule operations exposed to the API layer. Keeps the stored schedules
    and the scheduler's timers consistent with each other.
    """

    def __init__(self, schedules: ScheduleStore, connections: ConnectionStore, scheduler: SchedulerService):
        self.schedules = schedules
        self.connections = connections
        self.scheduler = scheduler

    async def create(self, data: ScheduleInput) -> ScheduleView:
        validate_input(data)
        names = await self._connection_names(data.job_type, data.source_connection_id,
                                             data.destination_connection_id)
        schedule = await self.schedules.create(data, **names)
        logger.info("Created schedule '%s' (%s)", schedule.name, schedule.id)
        return await self._sync_timer(schedule)

    async def get(self, schedule_id: str) -> ScheduleView:
        return self._view(await self._require(schedule_id))

    async def list(self) -> List[ScheduleView]:
        return [self._view(schedule) for schedule in await self.schedules.get_all()]

    async def update(self, schedule_id: str, changes: ScheduleUpdate) -> ScheduleView:
        existing = await self._require(schedule_id)
        patch: Dict[str, Any] = changes.model_dump(exclude_unset=True)
        merged = ScheduleInput.model_validate({
            **existing.model_dump(include=set(ScheduleInput.model_fields)),
            **{k: v for k, v in patch.items() if v is not None or k in ("cron_expression", "retention_count")},
        })
        validate_input(merged)

        names = await self._connection_names(merged.job_type, merged.source_connection_id,
                                             merged.destination_connection_id)
        schedule = await self.schedules.update(schedule_id, {**merged.model_dump(), **names})
        return await self._sync_timer(schedule)

    async def delete(self, schedule_id: str) -> None:
        await self._require(schedule_id)
        if self.scheduler.is_running(schedule_id):
            raise ConflictError("Cannot delete a schedule that is currently running")
        self.scheduler.unschedule_job(schedule_id)
        await self.schedules.delete(schedule_id)
        logger.info("Deleted schedule %s", schedule_id)

    async def toggle(self, schedule_id: str) -> ScheduleView:
        existing = await self._require(schedule_id)
        schedule = await self.schedules.update(schedule_id, {"enabled": not existing.enabled})
        logger.info("Schedule '%s' %s", schedule.name, "enabled" if schedule.enabled else "disabled")
        return await self._sync_timer(schedule)

    async def trigger_manual_run(self, schedule_id: str) -> str:
        return await self.scheduler.trigger_manual_run(schedule_id)

    async def get_history(self, schedule_id: str, limit: int = 20) -> List[ScheduleRunHistoryEntry]:
        await self._require(schedule_id)
        return await self.schedules.get_run_history(schedule_id, limit)

    @staticmethod
    def validate_expression(expression: str) -> bool:
        if not expression:
            raise ValidationError("expression is required")
        return validate_expression(expression)

    async def _require(self, schedule_id: str) -> Schedule:
        schedule = await self.schedules.get_by_id(schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule not found")
        return schedule

    async def _connection_names(self, job_type: ScheduleJobType, source_id: str,
                                destination_id: Optional[str]) -> Dict[str, Optional[str]]:
        source = await self.connections.get_by_id(source_id)
        if source is None:
            raise NotFoundError("Source connection not found")
        names: Dict[str, Optional[str]] = {"source_connection_name": source.name}
        if destination_id:
            destination = await self.connections.get_by_id(destination_id)
            if destination is None:
                if job_type == ScheduleJobType.SYNC:
                    raise NotFoundError("Destination connection not found")
            else:
                names["destination_connection_name"] = destination.name
        return names

    async def _sync_timer(self, schedule: Schedule) -> ScheduleView:
        if schedule.enabled:
            await self.scheduler.schedule_job(schedule)
        else:
            self.scheduler.unschedule_job(schedule.id)
            await self.schedules.update_next_run_time(schedule.id, None)
        return self._view(await self._require(schedule.id))

    def _view(self, schedule: Schedule) -> ScheduleView:
        return ScheduleView(
            **schedule.model_dump(),
            is_running=self.scheduler.is_running(schedule.id),
            running_job_id=self.scheduler.get_running_job_id(schedule.id),
        )


def validate_input(data: ScheduleInput) -> None:
    """
    Raises:
        ValidationError: with the first problem found.
    """
    if not data.name or not data.name.strip():
        raise ValidationError("name is required")
    if not data.source_connection_id:
        raise ValidationError("source_connection_id is required")
    if data.preset == SchedulePreset.CUSTOM and not data.cron_expression:
        raise ValidationError("cron_expression is required for custom schedules")
    if data.cron_expression and not validate_expression(data.cron_expression):
        raise ValidationError("Invalid cron expression")
    if data.job_type == ScheduleJobType.SYNC and not data.destination_connection_id:
        raise ValidationError("destination_connection_id is required for sync jobs")
