import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .job import JobStatus, utcnow
from .options import BackupOptions


class ScheduleJobType(str, Enum):
    BACKUP = "backup"
    SYNC = "sync"


class SchedulePreset(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class LastRun(BaseModel):
    job_id: str
    status: JobStatus
    at: datetime


class ScheduleInput(BaseModel):
    """
    Caller-supplied fields of a schedule.

    `options` is a BackupOptions for both job types; sync runs only read its categories.
    """
    name: str
    job_type: ScheduleJobType
    source_connection_id: str
    destination_connection_id: Optional[str] = None
    options: BackupOptions = Field(default_factory=BackupOptions)
    preset: SchedulePreset = SchedulePreset.DAILY
    cron_expression: Optional[str] = Field(None, description="Explicit five-field expression, required for custom presets")
    enabled: bool = True
    retention_count: Optional[int] = Field(None, ge=0)


class ScheduleUpdate(BaseModel):
    name: Optional[str] = None
    job_type: Optional[ScheduleJobType] = None
    source_connection_id: Optional[str] = None
    destination_connection_id: Optional[str] = None
    options: Optional[BackupOptions] = None
    preset: Optional[SchedulePreset] = None
    cron_expression: Optional[str] = None
    enabled: Optional[bool] = None
    retention_count: Optional[int] = Field(None, ge=0)


class Schedule(ScheduleInput):
    """
    A recurring backup or sync bound to saved connections.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source_connection_name: Optional[str] = Field(None, description="Cached so the schedule stays readable after the connection is deleted")
    destination_connection_name: Optional[str] = None
    last_run: Optional[LastRun] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ScheduleView(Schedule):
    is_running: bool = False
    running_job_id: Optional[str] = None


class ScheduleRunHistoryEntry(BaseModel):
    schedule_id: str
    job_id: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    error: Optional[str] = None
