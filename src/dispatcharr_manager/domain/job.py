import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    SYNC = "sync"


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    message: str


class Job(BaseModel):
    """
    A tracked run of a backup, restore or sync operation.

    Jobs are created and mutated only by the JobRegistry.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique job identifier")
    job_type: Optional[JobType] = None
    status: JobStatus = JobStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    message: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow, description="Last recorded activity")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def set_status(self, status: JobStatus, at: Optional[datetime] = None) -> None:
        """
        Update the status of the job, stamping completed_at on terminal states.
        """
        at = at or utcnow()
        self.status = status
        self.updated_at = at
        if status.is_terminal:
            self.completed_at = at
        else:
            self.completed_at = None
