from typing import Optional

from pydantic import BaseModel, Field


class EngineProgress(BaseModel):
    """
    One status line reported by the engine while a backup runs.
    """
    percent_complete: float = 0.0
    files_processed: int = 0
    total_files: Optional[int] = None
    bytes_processed: int = 0
    total_bytes: Optional[int] = None
    current_file: Optional[str] = None


class BackupProgress(BaseModel):
    """
    Transient progress event for a job, published while it runs and once more on its terminal transition.
    """
    job_id: str
    device_name: Optional[str] = None
    share_name: Optional[str] = None
    status: str
    percent_complete: float = Field(0.0, ge=0.0, le=100.0)
    files_processed: int = 0
    total_files: Optional[int] = None
    bytes_processed: int = 0
    total_bytes: Optional[int] = None
    current_file: Optional[str] = None
    error_message: Optional[str] = None
