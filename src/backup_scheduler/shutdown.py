import asyncio
import logging
import time
from dataclasses import dataclass

from backup_scheduler.orchestrator import BackupOrchestrator
from backup_scheduler.scheduler import BackupScheduler

logger = logging.getLogger(__name__)


@dataclass
class ShutdownReport:
    drained: bool
    cancelled: int = 0
    remaining: int = 0


class ShutdownSupervisor:
    """
    Stop intake, drain active jobs for a bounded window, then force-cancel what is left.

    Retries count as intake: pending retry timers are cancelled and no new ones are
    scheduled once shutdown has begun, even for jobs that fail while draining.
    """

    def __init__(
        self,
        scheduler: BackupScheduler,
        orchestrator: BackupOrchestrator,
        drain_seconds: float = 8.0,
        poll_seconds: float = 1.0,
        cancel_grace_seconds: float = 2.0,
    ):
        self.scheduler = scheduler
        self.orchestrator = orchestrator
        self.drain_seconds = drain_seconds
        self.poll_seconds = poll_seconds
        self.cancel_grace_seconds = cancel_grace_seconds

    async def shutdown(self) -> ShutdownReport:
        await self.scheduler.stop()
        self.orchestrator.suspend_retries()

        deadline = time.monotonic() + self.drain_seconds
        active = self.orchestrator.get_active_job_count()
        while active:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            logger.info("Waiting for %d active backup jobs to finish", active)
            await asyncio.sleep(min(self.poll_seconds, remaining))
            active = self.orchestrator.get_active_job_count()

        if not active:
            logger.info("All backup jobs finished, shutting down")
            return ShutdownReport(drained=True)

        logger.warning("%d backup jobs still active after %ss, cancelling", active, self.drain_seconds)
        cancelled = await self.orchestrator.cancel_all_jobs()

        deadline = time.monotonic() + self.cancel_grace_seconds
        while self.orchestrator.get_active_job_count() and time.monotonic() < deadline:
            await asyncio.sleep(0.1)
        remaining = self.orchestrator.get_active_job_count()
        if remaining:
            logger.error("%d backup jobs did not stop within the cancel grace period", remaining)
        return ShutdownReport(drained=False, cancelled=cancelled, remaining=remaining)
