import pytest

from backup_scheduler.domain.job import BackupJob, JobStatus
from backup_scheduler.recovery import CRASH_MESSAGE, NEVER_STARTED_MESSAGE, recover_interrupted_jobs


@pytest.mark.asyncio
async def test_interrupted_jobs_are_marked_failed(storage):
    running = BackupJob(device_id="dev1", share_id="share1")
    running.mark_running()
    pending = BackupJob(device_id="dev1")
    done = BackupJob(device_id="dev1")
    done.mark_running()
    done.mark_completed("abc12345")
    for job in (running, pending, done):
        await storage.save_job(job)

    assert await recover_interrupted_jobs(storage) == 2

    recovered = await storage.get_job(running.id)
    assert recovered.status == JobStatus.FAILED
    assert recovered.error_message == CRASH_MESSAGE
    assert "crash" in recovered.error_message
    assert recovered.completed_at is not None

    never_started = await storage.get_job(pending.id)
    assert never_started.status == JobStatus.FAILED
    assert never_started.error_message == NEVER_STARTED_MESSAGE

    untouched = await storage.get_job(done.id)
    assert untouched.status == JobStatus.COMPLETED
    assert untouched.error_message is None

    assert await recover_interrupted_jobs(storage) == 0


@pytest.mark.asyncio
async def test_recovery_never_raises():
    class BrokenStorage:
        async def list_jobs_by_status(self, status):
            raise RuntimeError("disk unavailable")

    assert await recover_interrupted_jobs(BrokenStorage()) == 0


@pytest.mark.asyncio
async def test_recovery_continues_after_failed_save(storage):
    first = BackupJob(device_id="dev1")
    first.mark_running()
    second = BackupJob(device_id="dev1")
    second.mark_running()
    await storage.save_job(first)
    await storage.save_job(second)

    class FlakyStorage:
        def __init__(self):
            self.saved = []

        async def list_jobs_by_status(self, status):
            return await storage.list_jobs_by_status(status)

        async def save_job(self, job):
            if job.id == first.id:
                raise OSError("read-only file system")
            self.saved.append(job.id)
            return await storage.save_job(job)

    flaky = FlakyStorage()
    assert await recover_interrupted_jobs(flaky) == 1
    assert flaky.saved == [second.id]
