from typing import List, Optional, Protocol

from backup_scheduler.domain.execution_log import BackupExecutionLog
from backup_scheduler.domain.job import BackupJob, JobStatus


class JobStorage(Protocol):
    async def initialize(self) -> None:
        """Prepare the backing store (directories, tables)."""
        ...

    async def save_job(self, job: BackupJob) -> BackupJob:
        """Create or replace a job record atomically."""
        ...

    async def get_job(self, job_id: str) -> Optional[BackupJob]:
        """Retrieve a job by its ID, or None if it does not exist."""
        ...

    async def list_jobs(self) -> List[BackupJob]:
        """List all jobs ordered by started_at descending; jobs that never started come last."""
        ...

    async def list_jobs_by_device(self, device_id: str) -> List[BackupJob]:
        """List jobs for one device, same ordering as list_jobs."""
        ...

    async def list_jobs_by_status(self, status: JobStatus) -> List[BackupJob]:
        """List jobs in one status, same ordering as list_jobs."""
        ...

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job and its execution log. Return True if the job existed."""
        ...

    async def save_execution_log(self, log: BackupExecutionLog) -> BackupExecutionLog:
        """Create or replace the execution log of a job."""
        ...

    async def get_execution_log(self, job_id: str) -> Optional[BackupExecutionLog]:
        """Retrieve the execution log of a job, or None if none was recorded."""
        ...
