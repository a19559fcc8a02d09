import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Protocol, Sequence

from backup_scheduler.domain.backup import BackupRequest, BackupSummary
from backup_scheduler.domain.device import Device, Share
from backup_scheduler.domain.execution_log import BackupExecutionLog, ProgressLogEntry
from backup_scheduler.domain.job import BackupJob, JobStatus, JobType, utcnow
from backup_scheduler.domain.progress import BackupProgress, EngineProgress
from backup_scheduler.engines.protocol import BackupEngine
from backup_scheduler.errors import (
    DeviceNotFoundError,
    InvalidJobStateError,
    JobNotFoundError,
    ShareNotFoundError,
)
from backup_scheduler.events import ProgressChannel
from backup_scheduler.plugin_registry import ProtocolPluginRegistry
from backup_scheduler.plugins.protocol import ProtocolPlugin
from backup_scheduler.providers.protocol import ConfigProvider
from backup_scheduler.storages.protocol import JobStorage

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Backup cancelled"

_FINAL_LOG_MESSAGES = {
    JobStatus.COMPLETED: "Backup completed",
    JobStatus.FAILED: "Backup failed",
    JobStatus.CANCELLED: CANCELLED_MESSAGE,
}


class RetryPolicy(Protocol):
    def next_delay(self, job: BackupJob) -> Optional[timedelta]:
        """
        Decide whether a failed job should be retried.

        Returns:
            The delay before the retry starts, or None for no retry.
        """
        ...


class ExponentialBackoffRetryPolicy:
    def __init__(self, delays_minutes: Sequence[int] = (5, 15, 45)):
        self.delays = [timedelta(minutes=minutes) for minutes in delays_minutes]

    def next_delay(self, job: BackupJob) -> Optional[timedelta]:
        if job.retry_attempt >= len(self.delays):
            return None
        return self.delays[job.retry_attempt]


@dataclass
class _ActiveJob:
    job: BackupJob
    log: BackupExecutionLog
    task: Optional[asyncio.Task] = None
    finish: Optional[asyncio.Future] = None
    entered: bool = False
    shares: List[Share] = field(default_factory=list)
    last_progress_entry: Optional[float] = None


class BackupOrchestrator:
    """
    Drives backup jobs through Pending -> Running -> Completed/Failed/Cancelled.

    ``execute_backup`` persists the Pending record and returns its id straight away; the
    engine work runs in a separate asyncio task. A job counts as active from the moment it
    is registered until its terminal record has been written. Once a job has reached a
    terminal status it can no longer be cancelled, and the write of its terminal record
    runs to completion even if the job's task is cancelled meanwhile.

    Each job also collects an execution log (warnings, errors and progress sampled at most
    once per ``progress_log_interval_seconds``), saved next to the terminal record.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        storage: JobStorage,
        engine: BackupEngine,
        plugins: ProtocolPluginRegistry,
        progress: Optional[ProgressChannel] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrent_jobs: Optional[int] = None,
        wake_delay_seconds: float = 30.0,
        cancel_grace_seconds: float = 2.0,
        progress_log_interval_seconds: float = 5.0,
    ):
        self.config_provider = config_provider
        self.storage = storage
        self.engine = engine
        self.plugins = plugins
        self.progress = progress
        self.retry_policy = retry_policy
        self.wake_delay_seconds = wake_delay_seconds
        self.cancel_grace_seconds = cancel_grace_seconds
        self.progress_log_interval_seconds = progress_log_interval_seconds
        self._retries_suspended = False
        self._semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(max_concurrent_jobs) if max_concurrent_jobs else None
        )
        self._active: Dict[str, _ActiveJob] = {}
        self._retry_timers: Dict[str, asyncio.Task] = {}

    async def execute_backup(
        self,
        device_id: str,
        share_id: Optional[str] = None,
        job_type: JobType = JobType.MANUAL,
        retry_attempt: int = 0,
    ) -> str:
        """
        Create a job for the device (or one of its shares) and start it in the background.

        A device without enabled shares, or a disabled target share, yields a job that is
        already Failed; the caller still gets its id.

        Raises:
            DeviceNotFoundError: If the device does not exist.
            ShareNotFoundError: If share_id does not name a share of the device.
            UnsupportedProtocolError: If no plugin handles the device's protocol.
        """
        device = await self.config_provider.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        plugin = self.plugins.get_plugin(device.protocol)

        job = BackupJob(
            device_id=device.id,
            share_id=share_id,
            device_name=device.name,
            type=job_type,
            retry_attempt=retry_attempt,
        )

        if share_id is not None:
            share = await self.config_provider.get_share(share_id)
            if share is None or share.device_id != device.id:
                raise ShareNotFoundError(
                    share_id, f"Share with ID '{share_id}' not found on device '{device.name}'"
                )
            job.share_name = share.name
            if not share.enabled:
                return await self._fail_immediately(job, f"Share '{share.name}' is disabled")
            shares = [share]
        else:
            shares = [share for share in await self.config_provider.list_shares(device.id) if share.enabled]
            if not shares:
                return await self._fail_immediately(job, f"Device '{device.name}' has no enabled shares")

        await self.storage.save_job(job)
        entry = _ActiveJob(job=job, log=BackupExecutionLog(job_id=job.id), shares=shares)
        self._active[job.id] = entry
        entry.task = asyncio.create_task(self._run(entry, device, plugin), name=f"backup-{job.id}")
        logger.info("Queued %s backup job %s for device '%s'", job_type.value, job.id, device.name)
        return job.id

    async def _fail_immediately(self, job: BackupJob, message: str) -> str:
        job.mark_failed(message)
        await self.storage.save_job(job)
        log = BackupExecutionLog(job_id=job.id)
        log.add_error(message)
        log.add_progress(ProgressLogEntry(message=_FINAL_LOG_MESSAGES[JobStatus.FAILED]))
        await self._save_log(log)
        self._publish(job, force=True)
        logger.warning("Backup job %s failed before starting: %s", job.id, message)
        return job.id

    def _admission(self):
        return self._semaphore if self._semaphore is not None else contextlib.nullcontext()

    async def _run(self, entry: _ActiveJob, device: Device, plugin: ProtocolPlugin) -> None:
        entry.entered = True
        job = entry.job
        try:
            async with self._admission():
                job.mark_running()
                await self._save(job)
                self._publish(job, force=True)
                logger.info("Backup job %s started for device '%s'", job.id, device.name)

                if device.wake_on_lan_enabled:
                    await self._wake(device, plugin)
                await self._backup_shares(entry, device, plugin)
        except asyncio.CancelledError:
            if not job.is_terminal:
                job.mark_cancelled(CANCELLED_MESSAGE)
            logger.warning("Backup job %s cancelled", job.id)
        except Exception as exc:
            logger.exception("Backup job %s failed", job.id)
            if not job.is_terminal:
                job.mark_failed(str(exc) or exc.__class__.__name__)
                entry.log.add_error(job.error_message)
        finally:
            # The terminal write completes even if this task is cancelled again.
            entry.finish = asyncio.ensure_future(self._finish(entry))
            await asyncio.shield(entry.finish)

    async def _backup_shares(self, entry: _ActiveJob, device: Device, plugin: ProtocolPlugin) -> None:
        job = entry.job
        shares = entry.shares
        errors: List[str] = []
        succeeded = 0
        last_snapshot: Optional[str] = None

        for share in shares:
            try:
                summary = await self._backup_share(entry, device, share, plugin)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Failed to back up share '%s' on device '%s'", share.name, device.name, exc_info=True)
                errors.append(f"Share '{share.name}' failed: {exc}")
                entry.log.add_error(errors[-1])
                continue
            succeeded += 1
            last_snapshot = summary.snapshot_id
            job.files_processed += summary.total_files_processed
            job.bytes_transferred += summary.total_bytes_processed

        if not errors:
            job.mark_completed(last_snapshot)
            logger.info("Backup job %s completed (%d shares)", job.id, succeeded)
            return

        if succeeded:
            errors.append(f"Partially completed: {succeeded}/{len(shares)} shares")
            logger.warning("Backup job %s partially completed (%d/%d shares)", job.id, succeeded, len(shares))
        job.mark_failed("\n".join(errors))

    async def _backup_share(self, entry: _ActiveJob, device: Device, share: Share, plugin: ProtocolPlugin) -> BackupSummary:
        job = entry.job
        request = BackupRequest(
            device_id=device.id,
            share_id=share.id,
            device_name=device.name,
            share_name=share.name,
            source_path=plugin.resolve_source_path(device, share),
            rules=share.effective_rules(device),
            parent_snapshot_id=await self._parent_snapshot(device.id, share.id) if job.share_id else None,
        )

        def on_progress(update: EngineProgress) -> None:
            self._record_progress(entry, update)
            if self.progress is None:
                return
            self.progress.publish(BackupProgress(
                job_id=job.id,
                device_name=device.name,
                share_name=share.name,
                status=job.status.value,
                percent_complete=update.percent_complete,
                files_processed=job.files_processed + update.files_processed,
                total_files=update.total_files,
                bytes_processed=job.bytes_transferred + update.bytes_processed,
                total_bytes=update.total_bytes,
                current_file=update.current_file,
            ))

        def on_warning(message: str) -> None:
            entry.log.add_warning(f"{share.name}: {message}")

        def on_error(message: str) -> None:
            entry.log.add_error(f"{share.name}: {message}")

        return await self.engine.backup(request, on_progress, on_warning, on_error)

    def _record_progress(self, entry: _ActiveJob, update: EngineProgress) -> None:
        now = time.monotonic()
        if entry.last_progress_entry is not None and now - entry.last_progress_entry < self.progress_log_interval_seconds:
            return
        entry.last_progress_entry = now
        entry.log.add_progress(ProgressLogEntry(
            message=update.current_file or "Progress update",
            percent_done=int(update.percent_complete),
            current_file=update.current_file,
            files_done=update.files_processed,
            bytes_done=update.bytes_processed,
        ))

    async def _parent_snapshot(self, device_id: str, share_id: str) -> Optional[str]:
        try:
            for previous in await self.storage.list_jobs_by_device(device_id):
                if previous.share_id == share_id and previous.status == JobStatus.COMPLETED and previous.backup_id:
                    return previous.backup_id
        except Exception:
            logger.warning("Could not look up previous snapshot for share %s", share_id, exc_info=True)
        return None

    async def _wake(self, device: Device, plugin: ProtocolPlugin) -> None:
        if not plugin.supports_wake_on_lan:
            return
        try:
            await plugin.wake_device(device)
        except Exception:
            logger.warning("Wake-on-LAN failed for '%s'", device.name, exc_info=True)
            return
        await asyncio.sleep(self.wake_delay_seconds)

    async def _finish(self, entry: _ActiveJob) -> None:
        job = entry.job
        try:
            if job.status == JobStatus.FAILED and self.retry_policy is not None:
                self._schedule_retry(job)
            entry.log.backup_id = job.backup_id
            entry.log.add_progress(ProgressLogEntry(
                message=_FINAL_LOG_MESSAGES.get(job.status, job.status.value),
                percent_done=100 if job.status == JobStatus.COMPLETED else 0,
                files_done=job.files_processed,
                bytes_done=job.bytes_transferred,
            ))
            await self._save(job)
            await self._save_log(entry.log)
            self._publish(job, force=True)
        finally:
            self._active.pop(job.id, None)
            if self.progress is not None:
                self.progress.forget(job.id)

    async def _save(self, job: BackupJob) -> None:
        try:
            await self.storage.save_job(job)
        except Exception:
            logger.exception("Failed to persist job %s (status %s)", job.id, job.status.value)

    async def _save_log(self, log: BackupExecutionLog) -> None:
        try:
            await self.storage.save_execution_log(log)
        except Exception:
            logger.exception("Failed to persist execution log of job %s", log.job_id)

    def _publish(self, job: BackupJob, force: bool = False) -> None:
        if self.progress is None:
            return
        self.progress.publish(
            BackupProgress(
                job_id=job.id,
                device_name=job.device_name,
                share_name=job.share_name,
                status=job.status.value,
                percent_complete=100.0 if job.status == JobStatus.COMPLETED else 0.0,
                files_processed=job.files_processed,
                bytes_processed=job.bytes_transferred,
                error_message=job.error_message,
            ),
            force=force,
        )

    def _schedule_retry(self, job: BackupJob) -> None:
        if self._retries_suspended:
            logger.info("Not scheduling a retry of backup job %s: retries are suspended", job.id)
            return
        delay = self.retry_policy.next_delay(job)
        if delay is None:
            return
        job.next_retry_at = utcnow() + delay
        timer = asyncio.create_task(self._retry_after(job, delay), name=f"retry-{job.id}")
        self._retry_timers[job.id] = timer
        timer.add_done_callback(lambda _, job_id=job.id: self._retry_timers.pop(job_id, None))
        logger.info("Backup job %s will be retried at %s", job.id, job.next_retry_at.isoformat())

    async def _retry_after(self, job: BackupJob, delay: timedelta) -> None:
        await asyncio.sleep(delay.total_seconds())
        if self._retries_suspended:
            return
        try:
            await self.execute_backup(job.device_id, job.share_id, JobType.RETRY, job.retry_attempt + 1)
        except Exception:
            logger.exception("Retry of backup job %s could not be started", job.id)

    def get_active_job_count(self) -> int:
        return len(self._active)

    def list_active_jobs(self) -> List[BackupJob]:
        return [entry.job.model_copy() for entry in self._active.values()]

    async def get_job(self, job_id: str) -> Optional[BackupJob]:
        entry = self._active.get(job_id)
        if entry is not None:
            return entry.job.model_copy()
        return await self.storage.get_job(job_id)

    async def get_execution_log(self, job_id: str) -> Optional[BackupExecutionLog]:
        entry = self._active.get(job_id)
        if entry is not None:
            return entry.log.model_copy(deep=True)
        return await self.storage.get_execution_log(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        """
        Request cancellation of one active job.

        Returns False if the job is not active, or has already reached a terminal status
        and is only waiting for its record to be written.
        """
        entry = self._active.get(job_id)
        if entry is None:
            logger.warning("Cannot cancel job %s: not active", job_id)
            return False
        if entry.job.is_terminal:
            logger.info("Not cancelling job %s: already %s", job_id, entry.job.status.value)
            return False
        entry.task.cancel()
        if not entry.entered:
            entry.job.mark_cancelled(CANCELLED_MESSAGE)
            await self._finish(entry)
        return True

    def cancel_pending_retries(self) -> int:
        timers = list(self._retry_timers.values())
        for timer in timers:
            timer.cancel()
        return len(timers)

    def suspend_retries(self) -> int:
        """
        Cancel pending retries and stop scheduling new ones, including for jobs that fail
        from now on. Returns the number of retries cancelled.
        """
        self._retries_suspended = True
        cancelled = self.cancel_pending_retries()
        if cancelled:
            logger.info("Cancelled %d pending retries", cancelled)
        return cancelled

    async def cancel_all_jobs(self) -> int:
        """
        Cancel every active job and pending retry, then wait up to the cancel grace period
        for them to settle. Jobs that already reached a terminal status are left to finish
        writing their record. Returns the number of jobs that were asked to cancel.
        """
        self.cancel_pending_retries()

        entries = list(self._active.values())
        if not entries:
            return 0
        logger.warning("Cancelling all %d active backup jobs", len(entries))

        running = []
        cancelled = 0
        for entry in entries:
            if entry.job.is_terminal:
                running.append(entry)
                continue
            entry.task.cancel()
            cancelled += 1
            if entry.entered:
                running.append(entry)
            else:
                entry.job.mark_cancelled(CANCELLED_MESSAGE)
                await self._finish(entry)

        if running:
            waiters = [asyncio.ensure_future(self._settled(entry)) for entry in running]
            _, pending = await asyncio.wait(waiters, timeout=self.cancel_grace_seconds)
            for waiter in pending:
                waiter.cancel()
            if pending:
                logger.warning("%d backup jobs did not settle within %ss", len(pending), self.cancel_grace_seconds)
        return cancelled

    @staticmethod
    async def _settled(entry: _ActiveJob) -> None:
        await asyncio.wait([entry.task])
        if entry.finish is not None:
            await asyncio.wait([entry.finish])

    async def retry_failed_job(self, job_id: str) -> str:
        """
        Start a retry of a Failed job and return the new job's id.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStateError: If the job is not Failed.
        """
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobStateError(f"Only failed jobs can be retried; job {job_id} is {job.status.value}")
        return await self.execute_backup(job.device_id, job.share_id, JobType.RETRY, job.retry_attempt + 1)
