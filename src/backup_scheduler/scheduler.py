import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from croniter import CroniterError, croniter
from pydantic import BaseModel

from backup_scheduler.domain.device import Device, Schedule, Share
from backup_scheduler.domain.job import JobType, utcnow
from backup_scheduler.errors import InvalidCronExpressionError, SchedulerNotRunningError
from backup_scheduler.orchestrator import BackupOrchestrator
from backup_scheduler.providers.protocol import ConfigProvider

logger = logging.getLogger(__name__)

RECURRING_GROUP = "backups"
MANUAL_GROUP = "manual-backups"


def device_key(device_id: str) -> str:
    return f"device-{device_id}"


def share_key(share_id: str) -> str:
    return f"share-{share_id}"


def validate_cron_expression(cron_expression: str) -> None:
    """
    Raises:
        InvalidCronExpressionError: If croniter cannot parse the expression, or it never
            matches a date (e.g. 31 February).
    """
    try:
        croniter(cron_expression, utcnow(), second_at_beginning=True).get_next(datetime)
    except (CroniterError, ValueError, KeyError) as exc:
        raise InvalidCronExpressionError(cron_expression, str(exc)) from exc


class Trigger(BaseModel):
    key: str
    group: str
    device_id: str
    share_id: Optional[str] = None
    job_type: JobType = JobType.SCHEDULED
    schedule: Optional[Schedule] = None
    next_fire_at: Optional[datetime] = None

    @property
    def cron_expression(self) -> Optional[str]:
        return self.schedule.cron_expression if self.schedule else None


class BackupScheduler:
    """
    Owns the trigger table and the asyncio loop that fires due triggers into the orchestrator.

    Recurring triggers follow a two-level cascade: a share with its own schedule gets a
    share trigger; the enabled shares without one are covered by a single device trigger,
    installed only when the device has a schedule. Manual triggers live in their own group
    and exist only while they are being dispatched.
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        orchestrator: BackupOrchestrator,
        tick_seconds: float = 1.0,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config_provider = config_provider
        self.orchestrator = orchestrator
        self.tick_seconds = tick_seconds
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock
        self.is_running: bool = False
        self._triggers: Dict[str, Trigger] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._dispatches: Set[asyncio.Task] = set()

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        self._loop_task = asyncio.create_task(self._scheduler_loop(), name="backup-scheduler")
        logger.info("Backup scheduler started with %d triggers", len(self._triggers))

    async def stop(self):
        """
        Stop firing triggers. Returns once every trigger that already fired has handed its
        job to the orchestrator.
        """
        if not self.is_running:
            return
        self.is_running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)
        logger.info("Backup scheduler stopped")

    async def schedule_all_backups(self) -> None:
        """
        Rebuild the recurring triggers from configuration.

        Unchanged triggers keep their next fire time; triggers no longer implied by
        configuration are removed. A device whose schedule is rejected is logged and keeps
        whatever trigger it had before.
        """
        logger.info("Scheduling all backups...")
        wanted: Set[str] = set()
        for device in await self.config_provider.list_devices():
            shares = await self.config_provider.list_shares(device.id)
            wanted |= self._apply_cascade(device, shares)

        for trigger in self._recurring_triggers():
            if trigger.key not in wanted:
                self._remove(trigger.key)
        logger.info("All backups scheduled (%d recurring triggers)", len(wanted))

    async def reschedule_device(self, device_id: str) -> None:
        """
        Recompute the triggers of one device after its configuration changed.
        """
        device = await self.config_provider.get_device(device_id)
        if device is None:
            self.remove_device(device_id)
            return
        wanted = self._apply_cascade(device, await self.config_provider.list_shares(device_id))
        for trigger in self._recurring_triggers(device_id):
            if trigger.key not in wanted:
                self._remove(trigger.key)

    def remove_device(self, device_id: str) -> int:
        """
        Remove the device trigger and every share trigger of the device.
        """
        removed = 0
        for trigger in self._recurring_triggers(device_id):
            self._remove(trigger.key)
            removed += 1
        return removed

    def _apply_cascade(self, device: Device, shares: Iterable[Share]) -> Set[str]:
        installed: Set[str] = set()
        uncovered: List[Share] = []
        for share in shares:
            if not share.enabled:
                continue
            if share.schedule is None:
                uncovered.append(share)
                continue
            try:
                self.schedule_share_backup(device, share, share.schedule)
            except InvalidCronExpressionError:
                logger.error("Rejected schedule for share '%s' on device '%s'", share.name, device.name, exc_info=True)
                if share_key(share.id) in self._triggers:
                    installed.add(share_key(share.id))
                continue
            installed.add(share_key(share.id))

        if device.schedule is not None and uncovered:
            try:
                self.schedule_device_backup(device, device.schedule)
            except InvalidCronExpressionError:
                logger.error("Rejected schedule for device '%s'", device.name, exc_info=True)
                if device_key(device.id) in self._triggers:
                    installed.add(device_key(device.id))
            else:
                installed.add(device_key(device.id))
        return installed

    def schedule_device_backup(self, device: Device, schedule: Schedule) -> Trigger:
        """
        Install or replace the device-level trigger.

        Raises:
            InvalidCronExpressionError: If the cron expression is malformed.
        """
        trigger = self._install(Trigger(
            key=device_key(device.id),
            group=RECURRING_GROUP,
            device_id=device.id,
            schedule=schedule,
        ))
        logger.info("Scheduled device backup for '%s' with cron '%s'", device.name, schedule.cron_expression)
        return trigger

    def schedule_share_backup(self, device: Device, share: Share, schedule: Schedule) -> Trigger:
        """
        Install or replace the share-level trigger.

        Raises:
            InvalidCronExpressionError: If the cron expression is malformed.
        """
        trigger = self._install(Trigger(
            key=share_key(share.id),
            group=RECURRING_GROUP,
            device_id=device.id,
            share_id=share.id,
            schedule=schedule,
        ))
        logger.info(
            "Scheduled share backup for '%s/%s' with cron '%s'", device.name, share.name, schedule.cron_expression
        )
        return trigger

    def unschedule_device_backup(self, device_id: str) -> bool:
        return self._remove(device_key(device_id))

    def unschedule_share_backup(self, share_id: str) -> bool:
        return self._remove(share_key(share_id))

    def _install(self, trigger: Trigger) -> Trigger:
        validate_cron_expression(trigger.cron_expression)
        # Any existing trigger stays installed until the replacement is known to be valid.
        existing = self._triggers.get(trigger.key)
        if existing is not None and existing.schedule == trigger.schedule and existing.device_id == trigger.device_id:
            trigger.next_fire_at = existing.next_fire_at
        else:
            trigger.next_fire_at = self._next_fire_time(trigger.cron_expression, self.clock())
        self._triggers[trigger.key] = trigger
        return trigger

    def _remove(self, key: str) -> bool:
        if self._triggers.pop(key, None) is None:
            return False
        logger.info("Removed trigger %s", key)
        return True

    def get_trigger(self, key: str) -> Optional[Trigger]:
        return self._triggers.get(key)

    def list_triggers(self, group: Optional[str] = None) -> List[Trigger]:
        return [trigger for trigger in self._triggers.values() if group is None or trigger.group == group]

    def _recurring_triggers(self, device_id: Optional[str] = None) -> List[Trigger]:
        return [
            trigger for trigger in self.list_triggers(RECURRING_GROUP)
            if device_id is None or trigger.device_id == device_id
        ]

    async def trigger_immediate_backup(self, device_id: str, share_id: Optional[str] = None) -> str:
        """
        Fire a one-shot manual backup and return the id of the job it created.

        Raises:
            SchedulerNotRunningError: If the scheduler is stopped.
            DeviceNotFoundError, ShareNotFoundError: Propagated from the orchestrator.
        """
        if not self.is_running:
            raise SchedulerNotRunningError("Scheduler is not running")
        key = f"manual-share-{share_id}" if share_id else f"manual-device-{device_id}"
        trigger = Trigger(
            key=key,
            group=MANUAL_GROUP,
            device_id=device_id,
            share_id=share_id,
            job_type=JobType.MANUAL,
            next_fire_at=self.clock(),
        )
        self._triggers[key] = trigger
        try:
            task = self._track(self._fire(trigger), key)
            job_id = await asyncio.shield(task)
        finally:
            if self._triggers.get(key) is trigger:
                del self._triggers[key]
        logger.info("Triggered manual backup for %s (job %s)", key, job_id)
        return job_id

    async def _fire(self, trigger: Trigger) -> str:
        return await self.orchestrator.execute_backup(trigger.device_id, trigger.share_id, trigger.job_type)

    async def _fire_recurring(self, trigger: Trigger) -> None:
        try:
            await self._fire(trigger)
        except Exception:
            logger.exception("Scheduled backup for trigger %s could not be started", trigger.key)

    def _track(self, coro, key: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"dispatch-{key}")
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return task

    def _next_fire_time(self, cron_expression: str, after: datetime) -> datetime:
        try:
            itr = croniter(cron_expression, after.astimezone(self.tz), second_at_beginning=True)
            return itr.get_next(datetime).astimezone(timezone.utc)
        except (CroniterError, ValueError, KeyError) as exc:
            raise InvalidCronExpressionError(cron_expression, str(exc)) from exc

    def _fire_due(self, now: datetime) -> int:
        fired = 0
        for trigger in self._recurring_triggers():
            if trigger.next_fire_at is None or trigger.next_fire_at > now:
                continue
            fire_at = trigger.next_fire_at
            trigger.next_fire_at = self._next_fire_time(trigger.cron_expression, now)
            if not trigger.schedule.allows(fire_at.astimezone(self.tz).time()):
                logger.info("Skipping %s: %s is outside its time window", trigger.key, fire_at.isoformat())
                continue
            self._track(self._fire_recurring(trigger), trigger.key)
            fired += 1
        return fired

    async def _scheduler_loop(self):
        while self.is_running:
            try:
                self._fire_due(self.clock())
            except Exception:
                logger.exception("Error in scheduler loop")
            await asyncio.sleep(self.tick_seconds)
