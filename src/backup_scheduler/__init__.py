"""
Backup Scheduling System

This package schedules and runs backups of network devices and keeps a durable record of
every run.

Core Concepts:

Device and Share:
    A Device is a backup source endpoint reachable over one protocol (SMB, SSH, Rsync).
    A Share is a named path on a device with its own enable flag and optional schedule.

Trigger:
    A Trigger is a cron-driven activation owned by the scheduler, bound to a device or a
    share. A share with its own schedule gets its own trigger; the remaining enabled shares
    of a device are covered by one device trigger when the device has a schedule.

Job:
    A Job is a single execution attempt against a device, optionally narrowed to one share.
    It moves Pending -> Running -> Completed/Failed/Cancelled and is persisted at each step.

Relationships:
    - A Trigger produces one Job each time it fires.
    - A device-level Job backs up every enabled share of its device, one after another.
"""

from .domain import *
from .errors import *
from .orchestrator import BackupOrchestrator, ExponentialBackoffRetryPolicy
from .scheduler import BackupScheduler
from .service import BackupService

__all__ = ["domain", "errors", "BackupOrchestrator", "ExponentialBackoffRetryPolicy", "BackupScheduler", "BackupService"]
