from .job import Job, JobStatus, JobType, LogEntry
from .schedule import Schedule, ScheduleInput, ScheduleUpdate, ScheduleJobType, SchedulePreset, ScheduleRunHistoryEntry
from .options import SyncCategory, SyncOptions, BackupOptions, RestoreOptions

__all__ = [
    "Job", "JobStatus", "JobType", "LogEntry",
    "Schedule", "ScheduleInput", "ScheduleUpdate", "ScheduleJobType", "SchedulePreset", "ScheduleRunHistoryEntry",
    "SyncCategory", "SyncOptions", "BackupOptions", "RestoreOptions",
]
