from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, BigInteger, String, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from backup_scheduler.domain.execution_log import BackupExecutionLog, ProgressLogEntry
from backup_scheduler.domain.job import BackupJob, JobStatus, JobType
from backup_scheduler.errors import JobStoreError
from backup_scheduler.providers.protocol import ConfigProvider
from backup_scheduler.storages.base import BaseJobStorage

Base = declarative_base()


class JobModel(Base):
    __tablename__ = 'backup_jobs'

    id = Column(String, primary_key=True)
    device_id = Column(String, nullable=False, index=True)
    share_id = Column(String)
    device_name = Column(String)
    share_name = Column(String)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    backup_id = Column(String)
    files_processed = Column(Integer, nullable=False, default=0)
    bytes_transferred = Column(BigInteger, nullable=False, default=0)
    error_message = Column(Text)
    retry_attempt = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True))


class ExecutionLogModel(Base):
    __tablename__ = 'backup_execution_logs'

    job_id = Column(String, primary_key=True)
    backup_id = Column(String, index=True)
    warnings = Column(JSON, nullable=False)
    errors = Column(JSON, nullable=False)
    progress_log = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlAlchemyJobStorage(BaseJobStorage):
    """
    Job store backed by one row per job. Each save is a single transaction, so readers
    observe either the previous row or the new one.
    """

    def __init__(self, db_url: str, config_provider: Optional[ConfigProvider] = None, **engine_kwargs):
        super().__init__(config_provider)
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def initialize(self) -> None:
        await self.create_tables()

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def save_job(self, job: BackupJob) -> BackupJob:
        try:
            async with self.async_session() as session:
                async with session.begin():
                    db_job = await session.get(JobModel, job.id)
                    if db_job is None:
                        db_job = JobModel(id=job.id)
                        session.add(db_job)
                    self._copy_to_db(job, db_job)
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to save job {job.id}: {exc}") from exc
        return job

    async def _load_job(self, job_id: str) -> Optional[BackupJob]:
        try:
            async with self.async_session() as session:
                result = await session.execute(select(JobModel).filter_by(id=job_id))
                db_job = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to read job {job_id}: {exc}") from exc
        if db_job:
            return self._db_to_job(db_job)
        return None

    async def _load_all(self) -> List[BackupJob]:
        return await self._query()

    async def list_jobs_by_device(self, device_id: str) -> List[BackupJob]:
        jobs = await self._query(JobModel.device_id == device_id)
        for job in jobs:
            await self._enrich(job)
        return jobs

    async def list_jobs_by_status(self, status: JobStatus) -> List[BackupJob]:
        jobs = await self._query(JobModel.status == status.value)
        for job in jobs:
            await self._enrich(job)
        return jobs

    async def _query(self, *criteria) -> List[BackupJob]:
        try:
            async with self.async_session() as session:
                result = await session.execute(
                    select(JobModel)
                    .where(*criteria)
                    .order_by(JobModel.started_at.desc().nulls_last())
                )
                return [self._db_to_job(db_job) for db_job in result.scalars()]
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to list jobs: {exc}") from exc

    async def delete_job(self, job_id: str) -> bool:
        try:
            async with self.async_session() as session:
                async with session.begin():
                    db_job = await session.get(JobModel, job_id)
                    if db_job is None:
                        return False
                    db_log = await session.get(ExecutionLogModel, job_id)
                    if db_log is not None:
                        await session.delete(db_log)
                    await session.delete(db_job)
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to delete job {job_id}: {exc}") from exc
        return True

    async def save_execution_log(self, log: BackupExecutionLog) -> BackupExecutionLog:
        try:
            async with self.async_session() as session:
                async with session.begin():
                    db_log = await session.get(ExecutionLogModel, log.job_id)
                    if db_log is None:
                        db_log = ExecutionLogModel(job_id=log.job_id)
                        session.add(db_log)
                    db_log.backup_id = log.backup_id
                    db_log.warnings = list(log.warnings)
                    db_log.errors = list(log.errors)
                    db_log.progress_log = [entry.model_dump(mode="json") for entry in log.progress_log]
                    db_log.created_at = log.created_at
                    db_log.updated_at = log.updated_at
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to save execution log for job {log.job_id}: {exc}") from exc
        return log

    async def get_execution_log(self, job_id: str) -> Optional[BackupExecutionLog]:
        try:
            async with self.async_session() as session:
                db_log = await session.get(ExecutionLogModel, job_id)
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Failed to read execution log for job {job_id}: {exc}") from exc
        if db_log is None:
            return None
        return BackupExecutionLog(
            job_id=db_log.job_id,
            backup_id=db_log.backup_id,
            warnings=db_log.warnings,
            errors=db_log.errors,
            progress_log=[ProgressLogEntry.model_validate(entry) for entry in db_log.progress_log],
            created_at=_as_utc(db_log.created_at),
            updated_at=_as_utc(db_log.updated_at),
        )

    def _copy_to_db(self, job: BackupJob, db_job: JobModel) -> None:
        db_job.device_id = job.device_id
        db_job.share_id = job.share_id
        db_job.device_name = job.device_name
        db_job.share_name = job.share_name
        db_job.type = job.type.value
        db_job.status = job.status.value
        db_job.created_at = job.created_at
        db_job.started_at = job.started_at
        db_job.completed_at = job.completed_at
        db_job.backup_id = job.backup_id
        db_job.files_processed = job.files_processed
        db_job.bytes_transferred = job.bytes_transferred
        db_job.error_message = job.error_message
        db_job.retry_attempt = job.retry_attempt
        db_job.next_retry_at = job.next_retry_at

    def _db_to_job(self, db_job: JobModel) -> BackupJob:
        return BackupJob(
            id=db_job.id,
            device_id=db_job.device_id,
            share_id=db_job.share_id,
            device_name=db_job.device_name,
            share_name=db_job.share_name,
            type=JobType(db_job.type),
            status=JobStatus(db_job.status),
            created_at=_as_utc(db_job.created_at),
            started_at=_as_utc(db_job.started_at),
            completed_at=_as_utc(db_job.completed_at),
            backup_id=db_job.backup_id,
            files_processed=db_job.files_processed,
            bytes_transferred=db_job.bytes_transferred,
            error_message=db_job.error_message,
            retry_attempt=db_job.retry_attempt,
            next_retry_at=_as_utc(db_job.next_retry_at),
        )


class InMemoryJobStorage(SqlAlchemyJobStorage):
    def __init__(self, config_provider: Optional[ConfigProvider] = None):
        super().__init__(
            "sqlite+aiosqlite:///:memory:",
            config_provider,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
