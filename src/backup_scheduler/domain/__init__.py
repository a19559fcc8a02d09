from .job import BackupJob, JobStatus, JobType
from .device import Device, Share, Schedule, IncludeExcludeRules, ProtocolType
from .backup import BackupRequest, BackupStatus, BackupSummary, Snapshot
from .progress import BackupProgress, EngineProgress
from .execution_log import BackupExecutionLog, ProgressLogEntry

__all__ = [
    "BackupJob", "JobStatus", "JobType",
    "Device", "Share", "Schedule", "IncludeExcludeRules", "ProtocolType",
    "BackupRequest", "BackupStatus", "BackupSummary", "Snapshot",
    "BackupProgress", "EngineProgress",
    "BackupExecutionLog", "ProgressLogEntry",
]
