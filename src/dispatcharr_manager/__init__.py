"""
Dispatcharr Manager

Backs up, restores and synchronises the configuration of Dispatcharr instances,
on demand or on a recurring schedule.

Core Concepts:

Job:
    A Job is one tracked run of a backup, restore or sync. It moves from pending
    to running and ends completed, failed or cancelled. The JobRegistry owns
    every Job and persists each change.

Schedule:
    A Schedule binds a backup or sync to saved connections and a cron-like
    trigger. The SchedulerService keeps one timer per enabled Schedule and lets
    at most one run of it be in flight.

Executor:
    An executor performs the work of a Job against the remote API, reporting
    weighted progress and stopping at cancellation checkpoints.

Relationships:
    - A Schedule has many Jobs, one per run, recorded in its run history.
    - The RetentionManager prunes old backup runs of a Schedule after each success.
"""

from .app import Application
from .config import Settings, get_settings

__all__ = ["Application", "Settings", "get_settings"]
