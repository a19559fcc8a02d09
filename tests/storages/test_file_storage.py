import os
from datetime import datetime, timedelta, timezone

import pytest

from backup_scheduler.domain.execution_log import BackupExecutionLog, ProgressLogEntry
from backup_scheduler.domain.job import BackupJob, JobStatus
from backup_scheduler.errors import JobStoreError
from backup_scheduler.storages.file import FileJobStorage


def _job(job_id: str, started_minutes_ago=None, status=JobStatus.PENDING, device_id="dev1") -> BackupJob:
    job = BackupJob(id=job_id, device_id=device_id, device_name="nas01", status=status)
    if started_minutes_ago is not None:
        job.started_at = datetime.now(timezone.utc) - timedelta(minutes=started_minutes_ago)
    return job


@pytest.mark.asyncio
async def test_save_and_get_job(storage: FileJobStorage):
    job = BackupJob(id="job1", device_id="dev1", share_id="share1", device_name="nas01", share_name="photos")
    job.mark_running()
    job.files_processed = 12
    job.bytes_transferred = 4096

    await storage.save_job(job)
    retrieved = await storage.get_job("job1")

    assert retrieved == job
    assert (storage.root / "job1.json").exists()


@pytest.mark.asyncio
async def test_get_missing_job(storage: FileJobStorage):
    assert await storage.get_job("missing") is None
    assert await storage.get_job("../etc/passwd") is None


@pytest.mark.asyncio
async def test_save_replaces_previous_record(storage: FileJobStorage):
    job = _job("job1")
    await storage.save_job(job)
    job.mark_running()
    job.mark_completed(backup_id="abcd1234")
    await storage.save_job(job)

    retrieved = await storage.get_job("job1")
    assert retrieved.status == JobStatus.COMPLETED
    assert retrieved.backup_id == "abcd1234"
    assert len(await storage.list_jobs()) == 1


@pytest.mark.asyncio
async def test_list_jobs_ordered_by_started_at(storage: FileJobStorage):
    await storage.save_job(_job("never-started"))
    await storage.save_job(_job("oldest", started_minutes_ago=30))
    await storage.save_job(_job("newest", started_minutes_ago=1))
    await storage.save_job(_job("middle", started_minutes_ago=10))

    jobs = await storage.list_jobs()
    assert [job.id for job in jobs] == ["newest", "middle", "oldest", "never-started"]


@pytest.mark.asyncio
async def test_list_jobs_by_device_and_status(storage: FileJobStorage):
    await storage.save_job(_job("a", started_minutes_ago=5, status=JobStatus.RUNNING))
    await storage.save_job(_job("b", started_minutes_ago=3, status=JobStatus.COMPLETED))
    await storage.save_job(_job("c", started_minutes_ago=1, status=JobStatus.RUNNING, device_id="dev2"))

    assert [job.id for job in await storage.list_jobs_by_device("dev1")] == ["b", "a"]
    assert [job.id for job in await storage.list_jobs_by_status(JobStatus.RUNNING)] == ["c", "a"]


@pytest.mark.asyncio
async def test_delete_job(storage: FileJobStorage):
    await storage.save_job(_job("job1"))
    assert await storage.delete_job("job1") is True
    assert await storage.delete_job("job1") is False
    assert await storage.get_job("job1") is None


@pytest.mark.asyncio
async def test_names_are_enriched_on_read(storage: FileJobStorage):
    await storage.save_job(BackupJob(id="job1", device_id="dev1", share_id="share2"))

    job = await storage.get_job("job1")
    assert job.device_name == "nas01"
    assert job.share_name == "docs"


@pytest.mark.asyncio
async def test_enrichment_tolerates_deleted_device(storage: FileJobStorage, provider):
    await storage.save_job(BackupJob(id="job1", device_id="dev1", share_id="share1"))
    provider.remove_device("dev1")

    job = await storage.get_job("job1")
    assert job is not None
    assert job.device_name is None
    assert job.share_name is None


@pytest.mark.asyncio
async def test_failed_write_keeps_previous_record(storage: FileJobStorage, monkeypatch):
    job = _job("job1")
    await storage.save_job(job)

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    job.mark_running()
    with pytest.raises(JobStoreError):
        await storage.save_job(job)
    monkeypatch.undo()

    retrieved = await storage.get_job("job1")
    assert retrieved.status == JobStatus.PENDING
    assert [path.name for path in storage.root.iterdir() if path.is_file()] == ["job1.json"]


@pytest.mark.asyncio
async def test_unreadable_records_are_skipped(storage: FileJobStorage):
    await storage.save_job(_job("good", started_minutes_ago=1))
    (storage.root / "broken.json").write_text("{not json")

    jobs = await storage.list_jobs()
    assert [job.id for job in jobs] == ["good"]
    with pytest.raises(JobStoreError):
        await storage.get_job("broken")


@pytest.mark.asyncio
async def test_rejects_unsafe_job_id(storage: FileJobStorage):
    with pytest.raises(JobStoreError):
        await storage.save_job(BackupJob(id="../escape", device_id="dev1"))


@pytest.mark.asyncio
async def test_execution_log_round_trip(storage: FileJobStorage):
    await storage.save_job(_job("job1"))
    log = BackupExecutionLog(job_id="job1", backup_id="abcd1234")
    log.add_warning("could not read /photos/locked.jpg")
    log.add_error("Share 'photos' failed: exit code 1")
    log.add_progress(ProgressLogEntry(message="a.txt", percent_done=50, current_file="a.txt", files_done=1))

    await storage.save_execution_log(log)

    assert await storage.get_execution_log("job1") == log
    assert (storage.logs_root / "job1.json").exists()
    assert [job.id for job in await storage.list_jobs()] == ["job1"]
    assert await storage.get_execution_log("missing") is None
    assert await storage.get_execution_log("../job1") is None


@pytest.mark.asyncio
async def test_delete_job_removes_execution_log(storage: FileJobStorage):
    await storage.save_job(_job("job1"))
    await storage.save_execution_log(BackupExecutionLog(job_id="job1", errors=["boom"]))

    assert await storage.delete_job("job1") is True
    assert await storage.get_execution_log("job1") is None


@pytest.mark.asyncio
async def test_corrupt_execution_log_raises(storage: FileJobStorage):
    (storage.logs_root / "job1.json").write_text("{not json")
    with pytest.raises(JobStoreError):
        await storage.get_execution_log("job1")
