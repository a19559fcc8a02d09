import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from backup_scheduler.domain.execution_log import BackupExecutionLog
from backup_scheduler.domain.job import BackupJob
from backup_scheduler.errors import JobStoreError
from backup_scheduler.providers.protocol import ConfigProvider
from backup_scheduler.storages.base import BaseJobStorage

logger = logging.getLogger(__name__)

_SAFE_JOB_ID = re.compile(r"[A-Za-z0-9_-]{1,128}")


class FileJobStorage(BaseJobStorage):
    """
    One JSON document per job, ``<root>/<job_id>.json``, and one per execution log,
    ``<root>/logs/<job_id>.json``.

    Every write goes to a temporary file in the same directory which is fsynced and then
    moved over the previous record with ``os.replace``, so readers see either the old or
    the new record, never a partial one. Single writer process assumed.
    """

    def __init__(self, root: Path, config_provider: Optional[ConfigProvider] = None):
        super().__init__(config_provider)
        self.root = Path(root)
        self.logs_root = self.root / "logs"

    async def initialize(self) -> None:
        await asyncio.to_thread(self.logs_root.mkdir, parents=True, exist_ok=True)

    def _path_for(self, job_id: str, directory: Optional[Path] = None) -> Optional[Path]:
        if not _SAFE_JOB_ID.fullmatch(job_id):
            return None
        return (directory or self.root) / f"{job_id}.json"

    async def save_job(self, job: BackupJob) -> BackupJob:
        path = self._path_for(job.id)
        if path is None:
            raise JobStoreError(f"Job ID '{job.id}' contains unsupported characters")
        payload = job.model_dump_json(indent=2).encode("utf-8")
        await asyncio.to_thread(self._write_atomic, path, payload)
        return job

    async def save_execution_log(self, log: BackupExecutionLog) -> BackupExecutionLog:
        path = self._path_for(log.job_id, self.logs_root)
        if path is None:
            raise JobStoreError(f"Job ID '{log.job_id}' contains unsupported characters")
        payload = log.model_dump_json(indent=2).encode("utf-8")
        await asyncio.to_thread(self._write_atomic, path, payload)
        return log

    async def get_execution_log(self, job_id: str) -> Optional[BackupExecutionLog]:
        path = self._path_for(job_id, self.logs_root)
        if path is None:
            return None
        try:
            raw = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise JobStoreError(f"Failed to read execution log {path.name}: {exc}") from exc
        try:
            return BackupExecutionLog.model_validate_json(raw)
        except ValidationError as exc:
            raise JobStoreError(f"Execution log {path.name} is corrupt: {exc}") from exc

    def _write_atomic(self, path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise JobStoreError(f"Failed to write job record {path.name}: {exc}") from exc

    async def _load_job(self, job_id: str) -> Optional[BackupJob]:
        path = self._path_for(job_id)
        if path is None:
            return None
        try:
            raw = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise JobStoreError(f"Failed to read job record {path.name}: {exc}") from exc
        try:
            return BackupJob.model_validate_json(raw)
        except ValidationError as exc:
            raise JobStoreError(f"Job record {path.name} is corrupt: {exc}") from exc

    async def _load_all(self) -> List[BackupJob]:
        return await asyncio.to_thread(self._read_all)

    def _read_all(self) -> List[BackupJob]:
        if not self.root.exists():
            return []
        jobs: List[BackupJob] = []
        for path in self.root.glob("*.json"):
            try:
                jobs.append(BackupJob.model_validate_json(path.read_bytes()))
            except FileNotFoundError:
                # Deleted between glob and read.
                continue
            except (OSError, ValidationError):
                logger.exception("Failed to read job file %s", path)
        return jobs

    async def delete_job(self, job_id: str) -> bool:
        path = self._path_for(job_id)
        if path is None:
            return False
        try:
            await asyncio.to_thread(self._path_for(job_id, self.logs_root).unlink, missing_ok=True)
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise JobStoreError(f"Failed to delete job record {path.name}: {exc}") from exc
        return True
