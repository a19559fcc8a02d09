from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .device import IncludeExcludeRules


class BackupStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class BackupRequest(BaseModel):
    """
    Everything the engine needs to back up one share.
    """
    device_id: str
    share_id: str
    device_name: str
    share_name: str
    source_path: str
    rules: IncludeExcludeRules = Field(default_factory=IncludeExcludeRules)
    parent_snapshot_id: Optional[str] = Field(None, description="Previous snapshot to diff against")


class BackupSummary(BaseModel):
    snapshot_id: str
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    data_added: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    total_duration: float = 0.0


class Snapshot(BaseModel):
    """
    The most recent artifact the engine holds for a share.
    """
    id: str
    device_id: str
    share_id: str
    timestamp: datetime
    status: BackupStatus = BackupStatus.SUCCESS
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    data_added: int = 0
    data_processed: int = 0

    @property
    def total_files(self) -> int:
        return self.files_new + self.files_changed + self.files_unmodified
