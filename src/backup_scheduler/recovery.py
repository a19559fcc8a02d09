import logging

from backup_scheduler.domain.job import JobStatus
from backup_scheduler.storages.protocol import JobStorage

logger = logging.getLogger(__name__)

CRASH_MESSAGE = "Backup interrupted by a service crash or restart; the job was still running when the service stopped"
NEVER_STARTED_MESSAGE = "Backup never started; the service stopped before the job was picked up"


async def recover_interrupted_jobs(storage: JobStorage) -> int:
    """
    Mark jobs left Running or Pending by a previous process as Failed.

    Must run before the scheduler starts. Never raises: failures are logged and the
    sweep carries on with the next record. Returns the number of jobs reclassified.
    """
    recovered = 0
    try:
        for status, message in ((JobStatus.RUNNING, CRASH_MESSAGE), (JobStatus.PENDING, NEVER_STARTED_MESSAGE)):
            for job in await storage.list_jobs_by_status(status):
                try:
                    job.mark_failed(message)
                    await storage.save_job(job)
                except Exception:
                    logger.exception("Failed to recover interrupted job %s", job.id)
                    continue
                recovered += 1
                logger.warning("Recovered interrupted job %s (was %s)", job.id, status.value)
    except Exception:
        logger.exception("Crash recovery sweep failed")
    if recovered:
        logger.warning("Crash recovery marked %d interrupted jobs as failed", recovered)
    return recovered
