import logging
from typing import List

from pydantic import BaseModel, Field

from dispatcharr_manager.executors.artifacts import ArtifactStore
from dispatcharr_manager.stores.schedules import ScheduleStore

logger = logging.getLogger(__name__)


class RetentionResult(BaseModel):
    deleted: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class RetentionManager:
    """
    Keeps the newest `retention_count` backups of a schedule and removes the rest,
    both the archive and the run-history entry.
    """

    def __init__(self, schedules: ScheduleStore, artifacts: ArtifactStore):
        self.schedules = schedules
        self.artifacts = artifacts

    async def apply(self, schedule_id: str, retention_count: int) -> RetentionResult:
        """
        Never raises; retention failures must not fail the backup that triggered them.
        """
        result = RetentionResult()
        try:
            job_ids = await self.schedules.get_completed_backup_job_ids(schedule_id)
            if len(job_ids) <= retention_count:
                logger.info("Retention: %d backups exist for schedule %s, keeping %d, nothing to do",
                            len(job_ids), schedule_id, retention_count)
                return result

            expired = job_ids[retention_count:]
            logger.info("Retention: deleting %d old backups of schedule %s", len(expired), schedule_id)

            for job_id in expired:
                try:
                    await self.artifacts.delete_archive(job_id)
                    result.deleted.append(job_id)
                except OSError as e:
                    result.errors.append(f"{job_id}: {e}")

            await self.schedules.delete_history_entries(result.deleted)
            if result.errors:
                logger.error("Retention: %d error(s) while deleting backups: %s",
                             len(result.errors), result.errors)
        except Exception:
            logger.exception("Retention: failed to apply policy for schedule %s", schedule_id)
        return result
