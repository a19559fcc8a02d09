from typing import Callable, Optional, Protocol

from backup_scheduler.domain.backup import BackupRequest, BackupSummary, Snapshot
from backup_scheduler.domain.device import Device, Share
from backup_scheduler.domain.progress import EngineProgress

ProgressCallback = Callable[[EngineProgress], None]
MessageCallback = Callable[[str], None]


class BackupEngine(Protocol):
    """
    Protocol class for the external backup engine.
    """

    async def backup(
        self,
        request: BackupRequest,
        on_progress: Optional[ProgressCallback] = None,
        on_warning: Optional[MessageCallback] = None,
        on_error: Optional[MessageCallback] = None,
    ) -> BackupSummary:
        """
        Back up one share and return the engine's summary.

        Args:
            request (BackupRequest): Source path, rules and optional parent snapshot.
            on_progress (ProgressCallback): Called for every progress report while the backup runs.
            on_warning (MessageCallback): Called for conditions that did not stop the backup,
                e.g. files that could not be read.
            on_error (MessageCallback): Called for errors the engine reports while it runs.

        Raises:
            EngineError: The engine exited unsuccessfully.
            EngineTimeoutError: The engine did not finish within its timeout.
        """
        ...

    async def latest_snapshot(self, device: Device, share: Share) -> Optional[Snapshot]:
        """
        Return the most recent snapshot held for the share, or None if there is none.
        """
        ...
