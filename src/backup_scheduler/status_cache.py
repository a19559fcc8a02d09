import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import BaseModel

from backup_scheduler.domain.backup import BackupStatus, Snapshot
from backup_scheduler.domain.job import utcnow
from backup_scheduler.engines.protocol import BackupEngine
from backup_scheduler.providers.protocol import ConfigProvider

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class OverviewStatistics(BaseModel):
    """
    Aggregates over the latest snapshot of every share.

    ``devices_with_failures`` counts devices whose latest snapshot is marked Failed. restic
    only lists snapshots it completed, so with ``ResticEngine`` this stays 0 and failed
    runs show up in the job history instead.
    """
    total_devices: int = 0
    total_shares: int = 0
    shares_with_backups: int = 0
    total_files: int = 0
    total_protected_bytes: int = 0
    devices_with_failures: int = 0
    devices_with_stale_backups: int = 0


@dataclass(frozen=True)
class _Generation:
    entries: Mapping[CacheKey, Snapshot]
    device_count: int
    share_count: int
    built_at: float


class StatusCache:
    """
    TTL-bounded snapshot of the latest backup per (device, share).

    A rebuild produces a complete new generation which replaces the previous one in a
    single assignment, so readers never see entries from two rebuilds. Only one rebuild
    runs at a time: callers that find the cache expired while a rebuild is in flight
    wait for that rebuild instead of starting their own.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        engine: BackupEngine,
        ttl_seconds: float = 30.0,
        stale_after: timedelta = timedelta(days=2),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config_provider = config_provider
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self.stale_after = stale_after
        self.clock = clock
        self._generation: Optional[_Generation] = None
        self._lock = asyncio.Lock()
        self._rebuild: Optional[asyncio.Task] = None
        self.rebuild_count = 0

    def invalidate(self) -> None:
        self._generation = None

    def _is_fresh(self, generation: Optional[_Generation]) -> bool:
        return generation is not None and self.clock() - generation.built_at < self.ttl_seconds

    async def _current(self) -> _Generation:
        generation = self._generation
        if self._is_fresh(generation):
            return generation
        async with self._lock:
            if self._rebuild is None or self._rebuild.done():
                generation = self._generation
                if self._is_fresh(generation):
                    return generation
                self._rebuild = asyncio.create_task(self._build(), name="status-cache-rebuild")
            rebuild = self._rebuild
        # A cancelled reader must not cancel the shared rebuild.
        return await asyncio.shield(rebuild)

    async def _build(self) -> _Generation:
        self.rebuild_count += 1
        logger.info("Rebuilding backup status cache...")
        entries: Dict[CacheKey, Snapshot] = {}
        device_count = share_count = 0
        try:
            devices = await self.config_provider.list_devices()
            device_count = len(devices)
            for device in devices:
                try:
                    shares = [share for share in await self.config_provider.list_shares(device.id) if share.enabled]
                except Exception:
                    logger.exception("Failed to list shares for device '%s'", device.name)
                    continue
                share_count += len(shares)
                for share in shares:
                    try:
                        snapshot = await self.engine.latest_snapshot(device, share)
                    except Exception:
                        logger.exception("Failed to load latest backup for '%s/%s'", device.name, share.name)
                        continue
                    if snapshot is not None:
                        entries[(device.id, share.id)] = snapshot
        except Exception:
            logger.exception("Error rebuilding backup status cache")
            entries, device_count, share_count = {}, 0, 0

        generation = _Generation(
            entries=MappingProxyType(entries),
            device_count=device_count,
            share_count=share_count,
            built_at=self.clock(),
        )
        self._generation = generation
        logger.info("Backup status cache rebuilt with %d entries", len(entries))
        return generation

    async def get_latest_backup(self, device_id: str, share_id: str) -> Optional[Snapshot]:
        generation = await self._current()
        return generation.entries.get((device_id, share_id))

    async def get_latest_backups_for_shares(self, device_id: str, share_ids: Iterable[str]) -> Dict[str, Snapshot]:
        generation = await self._current()
        result = {}
        for share_id in share_ids:
            snapshot = generation.entries.get((device_id, share_id))
            if snapshot is not None:
                result[share_id] = snapshot
        return result

    async def get_overview_statistics(self) -> OverviewStatistics:
        generation = await self._current()
        snapshots = generation.entries
        stale_before = utcnow() - self.stale_after
        return OverviewStatistics(
            total_devices=generation.device_count,
            total_shares=generation.share_count,
            shares_with_backups=len(snapshots),
            total_files=sum(snapshot.total_files for snapshot in snapshots.values()),
            total_protected_bytes=sum(snapshot.data_added for snapshot in snapshots.values()),
            devices_with_failures=len({
                device_id for (device_id, _), snapshot in snapshots.items() if snapshot.status == BackupStatus.FAILED
            }),
            devices_with_stale_backups=len({
                device_id for (device_id, _), snapshot in snapshots.items() if snapshot.timestamp < stale_before
            }),
        )
