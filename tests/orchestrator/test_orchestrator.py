import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from backup_scheduler.domain.device import Device, ProtocolType, Share
from backup_scheduler.domain.job import JobStatus, JobType
from backup_scheduler.errors import (
    DeviceNotFoundError,
    InvalidJobStateError,
    JobNotFoundError,
    ShareNotFoundError,
    UnsupportedProtocolError,
)
from backup_scheduler.orchestrator import BackupOrchestrator, ExponentialBackoffRetryPolicy
from backup_scheduler.plugin_registry import ProtocolPluginRegistry
from backup_scheduler.plugins.network import SshPlugin
from backup_scheduler.storages.file import FileJobStorage


class OneShotRetryPolicy:
    def __init__(self, delay: float):
        self.delay = timedelta(seconds=delay)

    def next_delay(self, job):
        return self.delay if job.retry_attempt == 0 else None


def _drain(progress):
    events = []
    while progress.qsize():
        events.append(progress.get_nowait())
    return events


@pytest.mark.asyncio
async def test_execute_backup_returns_before_engine_finishes(orchestrator, engine, storage, idle):
    engine.delay = 0.2
    job_id = await orchestrator.execute_backup("dev1")

    assert orchestrator.get_active_job_count() == 1
    job = await orchestrator.get_job(job_id)
    assert job.status in (JobStatus.PENDING, JobStatus.RUNNING)

    await idle(orchestrator)
    job = await storage.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.type == JobType.MANUAL
    assert job.backup_id == "snap0002"
    assert job.files_processed == 4
    assert job.bytes_transferred == 200
    assert job.started_at is not None and job.completed_at is not None
    assert [request.share_id for request in engine.requests] == ["share1", "share2"]


@pytest.mark.asyncio
async def test_engine_request_uses_mount_path_and_rules(orchestrator, engine, registry, tmp_path: Path, idle):
    await orchestrator.execute_backup("dev1", "share2")
    await idle(orchestrator)

    request = engine.requests[0]
    assert request.source_path == str(tmp_path / "mnt" / "nas01" / "documents")
    assert request.device_name == "nas01"
    assert request.share_name == "docs"
    assert "*.tmp" in request.rules.exclude_patterns
    assert request.parent_snapshot_id is None


@pytest.mark.asyncio
async def test_no_enabled_shares_fails_immediately(orchestrator, provider, storage):
    for share_id in ("share1", "share2"):
        share = await provider.get_share(share_id)
        share.enabled = False

    job_id = await orchestrator.execute_backup("dev1")

    assert orchestrator.get_active_job_count() == 0
    jobs = await storage.list_jobs()
    assert [job.id for job in jobs] == [job_id]
    assert jobs[0].status == JobStatus.FAILED
    assert "no enabled shares" in jobs[0].error_message
    assert jobs[0].completed_at is not None


@pytest.mark.asyncio
async def test_disabled_target_share_fails_immediately(orchestrator, provider, storage, engine):
    share = await provider.get_share("share1")
    share.enabled = False

    job_id = await orchestrator.execute_backup("dev1", "share1")

    job = await storage.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "disabled" in job.error_message
    assert engine.requests == []


@pytest.mark.asyncio
async def test_unknown_device_or_share(orchestrator, provider, storage):
    with pytest.raises(DeviceNotFoundError):
        await orchestrator.execute_backup("nope")

    provider.upsert_device(Device(id="dev2", name="web01", protocol=ProtocolType.SSH, host="web01"))
    provider.upsert_share(Share(id="share3", device_id="dev2", name="www", path="/var/www"))
    with pytest.raises(ShareNotFoundError):
        await orchestrator.execute_backup("dev1", "share3")
    with pytest.raises(ShareNotFoundError):
        await orchestrator.execute_backup("dev1", "missing")

    assert await storage.list_jobs() == []


@pytest.mark.asyncio
async def test_unsupported_protocol_is_a_configuration_error(provider, storage, engine, tmp_path: Path):
    registry = ProtocolPluginRegistry([SshPlugin(tmp_path)])
    orchestrator = BackupOrchestrator(provider, storage, engine, registry)
    with pytest.raises(UnsupportedProtocolError):
        await orchestrator.execute_backup("dev1")


@pytest.mark.asyncio
async def test_failing_share_does_not_stop_the_others(orchestrator, engine, storage, idle):
    engine.fail_shares = {"share1"}
    job_id = await orchestrator.execute_backup("dev1")
    await idle(orchestrator)

    job = await storage.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "Share 'photos' failed" in job.error_message
    assert "Partially completed: 1/2 shares" in job.error_message
    assert job.backup_id is None
    assert len(engine.requests) == 2


@pytest.mark.asyncio
async def test_all_shares_failing(orchestrator, engine, storage, idle):
    engine.fail_shares = {"share1", "share2"}
    job_id = await orchestrator.execute_backup("dev1")
    await idle(orchestrator)

    job = await storage.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "Partially completed" not in job.error_message
    assert "exit code 1" in job.error_message


@pytest.mark.asyncio
async def test_active_count_tracks_lifecycle(orchestrator, engine, idle):
    engine.delay = 0.2
    assert orchestrator.get_active_job_count() == 0
    await orchestrator.execute_backup("dev1", "share1")
    await orchestrator.execute_backup("dev1", "share2")
    assert orchestrator.get_active_job_count() == 2
    assert len(orchestrator.list_active_jobs()) == 2

    await idle(orchestrator)
    assert orchestrator.get_active_job_count() == 0


@pytest.mark.asyncio
async def test_cancel_all_jobs(orchestrator, engine, storage):
    engine.delay = 10
    job_ids = [await orchestrator.execute_backup("dev1", "share1"), await orchestrator.execute_backup("dev1")]
    await asyncio.sleep(0.05)

    assert await orchestrator.cancel_all_jobs() == 2
    assert orchestrator.get_active_job_count() == 0
    for job_id in job_ids:
        job = await storage.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None


@pytest.mark.asyncio
async def test_cancel_job_before_it_starts(orchestrator, engine, storage):
    engine.delay = 10
    job_id = await orchestrator.execute_backup("dev1", "share1")

    assert await orchestrator.cancel_job(job_id) is True
    assert orchestrator.get_active_job_count() == 0
    job = await storage.get_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.started_at is None
    assert engine.requests == []
    assert await orchestrator.cancel_job(job_id) is False


@pytest.mark.asyncio
async def test_cancel_running_job(orchestrator, engine, storage, idle):
    engine.delay = 10
    job_id = await orchestrator.execute_backup("dev1", "share1")
    await asyncio.sleep(0.05)

    assert await orchestrator.cancel_job(job_id) is True
    await idle(orchestrator)
    job = await storage.get_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.started_at is not None


@pytest.mark.asyncio
async def test_progress_events(orchestrator, progress, idle):
    job_id = await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)

    events = _drain(progress)
    assert all(event.job_id == job_id for event in events)
    assert events[0].status == "running"
    assert events[-1].status == "completed"
    assert events[-1].percent_complete == 100.0


@pytest.mark.asyncio
async def test_failed_job_emits_terminal_event(orchestrator, engine, progress, idle):
    engine.fail_shares = {"share1"}
    await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)

    events = _drain(progress)
    assert events[-1].status == "failed"
    assert "photos" in events[-1].error_message


@pytest.mark.asyncio
async def test_share_job_passes_previous_snapshot(orchestrator, engine, storage, idle):
    first = await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)
    await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)

    previous = await storage.get_job(first)
    assert engine.requests[1].parent_snapshot_id == previous.backup_id


@pytest.mark.asyncio
async def test_admission_limit_keeps_jobs_pending(provider, storage, engine, registry, idle):
    orchestrator = BackupOrchestrator(provider, storage, engine, registry, max_concurrent_jobs=1)
    engine.delay = 0.2
    first = await orchestrator.execute_backup("dev1", "share1")
    second = await orchestrator.execute_backup("dev1", "share2")
    await asyncio.sleep(0.05)

    assert (await orchestrator.get_job(first)).status == JobStatus.RUNNING
    assert (await orchestrator.get_job(second)).status == JobStatus.PENDING
    assert orchestrator.get_active_job_count() == 2

    await idle(orchestrator)
    assert (await storage.get_job(second)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_retry_policy_schedules_retry(provider, storage, engine, registry, idle):
    orchestrator = BackupOrchestrator(provider, storage, engine, registry, retry_policy=OneShotRetryPolicy(0.05))
    engine.fail_shares = {"share1"}
    failed_id = await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)

    failed = await storage.get_job(failed_id)
    assert failed.status == JobStatus.FAILED
    assert failed.next_retry_at is not None

    await asyncio.sleep(0.2)
    await idle(orchestrator)
    jobs = await storage.list_jobs_by_device("dev1")
    retries = [job for job in jobs if job.type == JobType.RETRY]
    assert len(retries) == 1
    assert retries[0].retry_attempt == 1
    assert retries[0].share_id == "share1"
    assert retries[0].status == JobStatus.FAILED
    assert retries[0].next_retry_at is None


@pytest.mark.asyncio
async def test_no_retry_without_policy(orchestrator, engine, storage, idle):
    engine.fail_shares = {"share1"}
    job_id = await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)

    job = await storage.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.next_retry_at is None


@pytest.mark.asyncio
async def test_retry_failed_job(orchestrator, engine, storage, idle):
    engine.fail_shares = {"share1"}
    failed_id = await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)

    engine.fail_shares = set()
    retry_id = await orchestrator.retry_failed_job(failed_id)
    await idle(orchestrator)

    retry = await storage.get_job(retry_id)
    assert retry.type == JobType.RETRY
    assert retry.retry_attempt == 1
    assert retry.status == JobStatus.COMPLETED

    with pytest.raises(InvalidJobStateError):
        await orchestrator.retry_failed_job(retry_id)
    with pytest.raises(JobNotFoundError):
        await orchestrator.retry_failed_job("missing")


def test_exponential_backoff_policy():
    from backup_scheduler.domain.job import BackupJob

    policy = ExponentialBackoffRetryPolicy()
    job = BackupJob(device_id="dev1")
    assert policy.next_delay(job) == timedelta(minutes=5)
    job.retry_attempt = 2
    assert policy.next_delay(job) == timedelta(minutes=45)
    job.retry_attempt = 3
    assert policy.next_delay(job) is None


class SlowTerminalWriteStorage(FileJobStorage):
    async def save_job(self, job):
        if job.is_terminal:
            await asyncio.sleep(0.3)
        return await super().save_job(job)


@pytest.mark.asyncio
async def test_cancel_during_terminal_write_keeps_outcome(provider, engine, registry, tmp_path: Path):
    storage = SlowTerminalWriteStorage(tmp_path / "slow-jobs", provider)
    await storage.initialize()
    orchestrator = BackupOrchestrator(provider, storage, engine, registry, cancel_grace_seconds=2.0)
    job_id = await orchestrator.execute_backup("dev1", "share1")
    await asyncio.sleep(0.1)

    assert (await orchestrator.get_job(job_id)).status == JobStatus.COMPLETED
    assert orchestrator.get_active_job_count() == 1
    assert await orchestrator.cancel_job(job_id) is False

    assert await orchestrator.cancel_all_jobs() == 0
    assert orchestrator.get_active_job_count() == 0
    job = await storage.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at is not None
    assert job.backup_id is not None


@pytest.mark.asyncio
async def test_suspended_retries_are_not_scheduled(provider, storage, engine, registry, idle):
    orchestrator = BackupOrchestrator(provider, storage, engine, registry, retry_policy=OneShotRetryPolicy(0.1))
    engine.fail_shares = {"share1"}
    await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)

    assert orchestrator.suspend_retries() == 1
    second_id = await orchestrator.execute_backup("dev1", "share1")
    await idle(orchestrator)
    assert (await storage.get_job(second_id)).next_retry_at is None

    await asyncio.sleep(0.3)
    assert orchestrator.get_active_job_count() == 0
    jobs = await storage.list_jobs_by_device("dev1")
    assert [job for job in jobs if job.type == JobType.RETRY] == []
