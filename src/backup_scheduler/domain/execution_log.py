from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .job import utcnow


class ProgressLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    percent_done: int = Field(0, ge=0, le=100)
    current_file: Optional[str] = None
    files_done: int = 0
    bytes_done: int = 0


class BackupExecutionLog(BaseModel):
    """
    Warnings, errors and sampled progress collected while a job ran.

    Keyed by job; ``backup_id`` is filled in when the job produced a snapshot.
    """
    job_id: str
    backup_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    progress_log: List[ProgressLogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        self.updated_at = utcnow()

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.updated_at = utcnow()

    def add_progress(self, entry: ProgressLogEntry) -> None:
        self.progress_log.append(entry)
        self.updated_at = utcnow()
