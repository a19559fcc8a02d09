import asyncio
import logging
import signal
from datetime import timedelta
from typing import Optional

from backup_scheduler.config import Settings
from backup_scheduler.engines.protocol import BackupEngine
from backup_scheduler.engines.restic import ResticEngine
from backup_scheduler.events import ProgressChannel
from backup_scheduler.orchestrator import BackupOrchestrator, ExponentialBackoffRetryPolicy
from backup_scheduler.plugin_registry import ProtocolPluginRegistry
from backup_scheduler.providers.protocol import ConfigProvider
from backup_scheduler.recovery import recover_interrupted_jobs
from backup_scheduler.scheduler import BackupScheduler
from backup_scheduler.shutdown import ShutdownReport, ShutdownSupervisor
from backup_scheduler.status_cache import StatusCache
from backup_scheduler.storages.file import FileJobStorage
from backup_scheduler.storages.protocol import JobStorage
from backup_scheduler.storages.sqlalchemy import SqlAlchemyJobStorage

logger = logging.getLogger(__name__)


def create_storage(settings: Settings, config_provider: ConfigProvider) -> JobStorage:
    if settings.job_store == "sqlalchemy":
        return SqlAlchemyJobStorage(settings.effective_database_url, config_provider)
    return FileJobStorage(settings.jobs_root, config_provider)


class BackupService:
    """
    Wires the job store, engine, plugins, orchestrator, scheduler and status cache together
    and runs them in the right order: crash recovery before the scheduler starts, scheduler
    stopped before jobs are drained.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        storage: JobStorage,
        engine: BackupEngine,
        plugins: ProtocolPluginRegistry,
        progress: Optional[ProgressChannel] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or Settings()
        self.settings = settings
        self.config_provider = config_provider
        self.storage = storage
        self.engine = engine
        self.plugins = plugins
        self.progress = progress or ProgressChannel(
            maxsize=settings.progress_queue_size, interval=settings.progress_interval_seconds
        )
        self.orchestrator = BackupOrchestrator(
            config_provider,
            storage,
            engine,
            plugins,
            progress=self.progress,
            retry_policy=ExponentialBackoffRetryPolicy(settings.retry_delays_minutes) if settings.retry_enabled else None,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            wake_delay_seconds=settings.wake_delay_seconds,
            cancel_grace_seconds=settings.shutdown_cancel_grace_seconds,
            progress_log_interval_seconds=settings.progress_log_interval_seconds,
        )
        self.scheduler = BackupScheduler(
            config_provider,
            self.orchestrator,
            tick_seconds=settings.scheduler_tick_seconds,
            timezone_name=settings.scheduler_timezone,
        )
        self.status_cache = StatusCache(
            config_provider,
            engine,
            ttl_seconds=settings.cache_ttl_seconds,
            stale_after=timedelta(days=settings.stale_backup_days),
        )
        self.supervisor = ShutdownSupervisor(
            self.scheduler,
            self.orchestrator,
            drain_seconds=settings.shutdown_drain_seconds,
            poll_seconds=settings.shutdown_poll_seconds,
            cancel_grace_seconds=settings.shutdown_cancel_grace_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Settings, config_provider: ConfigProvider) -> "BackupService":
        password = settings.repository_password.get_secret_value() if settings.repository_password else None
        engine = ResticEngine(
            settings.repository_root,
            password=password,
            binary=settings.engine_binary,
            timeout_seconds=settings.engine_timeout_seconds,
            kill_grace_seconds=settings.engine_kill_grace_seconds,
        )
        plugins = ProtocolPluginRegistry.with_builtin_plugins(settings.mount_root, settings.connect_timeout_seconds)
        return cls(config_provider, create_storage(settings, config_provider), engine, plugins, settings=settings)

    async def start(self) -> None:
        await self.storage.initialize()
        await recover_interrupted_jobs(self.storage)
        await self.scheduler.start()
        await self.scheduler.schedule_all_backups()
        logger.info("Backup service started")

    async def stop(self) -> ShutdownReport:
        report = await self.supervisor.shutdown()
        if isinstance(self.storage, SqlAlchemyJobStorage):
            await self.storage.dispose()
        logger.info("Backup service stopped")
        return report

    async def run(self) -> None:
        """
        Start the service and block until SIGINT or SIGTERM, then shut down.
        """
        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)
        try:
            await self.start()
            await stop_requested.wait()
            logger.info("Shutdown requested")
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.stop()

    async def __aenter__(self) -> "BackupService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
