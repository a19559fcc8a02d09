import uuid
from enum import Enum
from typing import Dict, Optional, Set
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from backup_scheduler.errors import InvalidJobStateError


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class JobType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"


TERMINAL_STATUSES: Set[JobStatus] = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

ALLOWED_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupJob(BaseModel):
    """
    A single execution attempt of a backup against a device, optionally narrowed to one share.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Unique job identifier")
    device_id: str = Field(..., description="Device being backed up")
    share_id: Optional[str] = Field(None, description="Share being backed up; None means every enabled share")
    device_name: Optional[str] = Field(None, description="Display name, resolved lazily from configuration")
    share_name: Optional[str] = Field(None, description="Display name, resolved lazily from configuration")
    type: JobType = JobType.SCHEDULED
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    backup_id: Optional[str] = Field(None, description="Snapshot produced by the engine, set only on success")
    files_processed: int = 0
    bytes_transferred: int = 0
    error_message: Optional[str] = None
    retry_attempt: int = 0
    next_retry_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def set_status(self, status: JobStatus) -> None:
        """
        Move the job forward through its state machine.

        Raises:
            InvalidJobStateError: If the transition is not allowed from the current status.
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobStateError(
                f"Illegal transition for job {self.id}: {self.status.value} -> {status.value}"
            )
        self.status = status
        if status == JobStatus.RUNNING:
            self.started_at = utcnow()
        elif status in TERMINAL_STATUSES:
            self.completed_at = utcnow()

    def mark_running(self) -> None:
        self.set_status(JobStatus.RUNNING)

    def mark_completed(self, backup_id: Optional[str] = None) -> None:
        self.set_status(JobStatus.COMPLETED)
        if backup_id is not None:
            self.backup_id = backup_id

    def mark_failed(self, error_message: str) -> None:
        self.set_status(JobStatus.FAILED)
        self.error_message = error_message

    def mark_cancelled(self, reason: str = "Backup cancelled") -> None:
        self.set_status(JobStatus.CANCELLED)
        self.error_message = reason
