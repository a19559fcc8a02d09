import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Dict

from backup_scheduler.domain.progress import BackupProgress

logger = logging.getLogger(__name__)


class ProgressChannel:
    """
    Bounded queue of BackupProgress events with a single consumer.

    Regular updates are throttled to one per job per ``interval`` seconds and dropped when
    the queue is full. Forced events (job start and terminal transitions) are always
    enqueued, evicting the oldest queued event if necessary.
    """

    def __init__(self, maxsize: int = 1000, interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self._queue: "asyncio.Queue[BackupProgress]" = asyncio.Queue(maxsize=maxsize)
        self._interval = interval
        self._clock = clock
        self._last_emit: Dict[str, float] = {}
        self.dropped = 0

    def publish(self, progress: BackupProgress, force: bool = False) -> bool:
        """
        Offer an event to the channel. Returns True if it was enqueued.
        """
        now = self._clock()
        if not force:
            last = self._last_emit.get(progress.job_id)
            if last is not None and now - last < self._interval:
                return False

        try:
            self._queue.put_nowait(progress)
        except asyncio.QueueFull:
            if not force:
                self.dropped += 1
                logger.warning("Progress queue full, dropping update for job %s", progress.job_id)
                return False
            evicted = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning("Progress queue full, evicted update for job %s", evicted.job_id)
            self._queue.put_nowait(progress)

        self._last_emit[progress.job_id] = now
        return True

    def forget(self, job_id: str) -> None:
        self._last_emit.pop(job_id, None)

    def qsize(self) -> int:
        return self._queue.qsize()

    async def get(self) -> BackupProgress:
        progress = await self._queue.get()
        self._queue.task_done()
        return progress

    def get_nowait(self) -> BackupProgress:
        progress = self._queue.get_nowait()
        self._queue.task_done()
        return progress

    async def __aiter__(self) -> AsyncIterator[BackupProgress]:
        while True:
            yield await self.get()
