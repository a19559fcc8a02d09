import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from backup_scheduler.domain.execution_log import BackupExecutionLog
from backup_scheduler.domain.job import BackupJob, JobStatus
from backup_scheduler.providers.protocol import ConfigProvider

logger = logging.getLogger(__name__)

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def sort_jobs(jobs: Iterable[BackupJob]) -> List[BackupJob]:
    return sorted(jobs, key=lambda job: job.started_at or _NEVER, reverse=True)


class BaseJobStorage(ABC):
    """
    Shared behaviour of job stores: display-name enrichment on read and the derived listings.

    Subclasses only deal with raw records; names missing from a record are filled in from
    the configuration provider, and a device or share that no longer exists leaves them empty.
    """

    def __init__(self, config_provider: Optional[ConfigProvider] = None):
        self.config_provider = config_provider

    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def save_job(self, job: BackupJob) -> BackupJob:
        ...

    @abstractmethod
    async def _load_job(self, job_id: str) -> Optional[BackupJob]:
        ...

    @abstractmethod
    async def _load_all(self) -> List[BackupJob]:
        ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def save_execution_log(self, log: BackupExecutionLog) -> BackupExecutionLog:
        ...

    @abstractmethod
    async def get_execution_log(self, job_id: str) -> Optional[BackupExecutionLog]:
        ...

    async def get_job(self, job_id: str) -> Optional[BackupJob]:
        job = await self._load_job(job_id)
        if job is not None:
            await self._enrich(job)
        return job

    async def list_jobs(self) -> List[BackupJob]:
        jobs = sort_jobs(await self._load_all())
        for job in jobs:
            await self._enrich(job)
        return jobs

    async def list_jobs_by_device(self, device_id: str) -> List[BackupJob]:
        return [job for job in await self.list_jobs() if job.device_id == device_id]

    async def list_jobs_by_status(self, status: JobStatus) -> List[BackupJob]:
        return [job for job in await self.list_jobs() if job.status == status]

    async def _enrich(self, job: BackupJob) -> None:
        if self.config_provider is None:
            return
        try:
            if job.device_name is None:
                device = await self.config_provider.get_device(job.device_id)
                if device is not None:
                    job.device_name = device.name
            if job.share_name is None and job.share_id is not None:
                share = await self.config_provider.get_share(job.share_id)
                if share is not None:
                    job.share_name = share.name
        except Exception:
            logger.warning("Could not resolve display names for job %s", job.id, exc_info=True)
