"""
APScheduler integration: per-user daily brief triggers.

Each registered user gets one daily cron schedule at the UTC instant their
local delivery time maps to today. The set of schedules is reconciled with
the preference registry by ``BriefScheduler.sync_now``:

- at startup
- hourly (top of the hour, which also picks up DST offset changes)
- on every registry change notification (PostgreSQL LISTEN)
- on demand (API / CLI)

Schedules:
- ``brief:<user_id>``: fires ``fire_user_trigger(user_id)`` once a day
- ``registry_resync``: hourly ``scheduled_sync``
- ``queue_enqueue`` / ``queue_poll``: fallback queue path, only when enabled

Job functions are module-level; they reach the running ``BriefScheduler``
through ``get_scheduler()``.
"""

import asyncio
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from dailybrief.config import get_config, get_settings
from dailybrief.core.database import AsyncSessionLocal
from dailybrief.core.datetime_utils import get_zone, utc_now
from dailybrief.core.exceptions import ConfigurationError, SynchronizationError, UserNotFoundError
from dailybrief.core.logging import get_logger
from dailybrief.models.delivery_record import DeliverySource, DeliveryStatus
from dailybrief.schemas.schedule import TriggerInfo, UserScheduleEntry
from dailybrief.services.brief_dispatch import BriefDispatcher
from dailybrief.services.brief_generator import BriefGenerator, get_brief_generator
from dailybrief.services.job_queue import enqueue_due_jobs, process_pending_jobs
from dailybrief.services.registry import (
    consume_changes,
    fetch_active_entries,
    get_entry,
    listen_for_changes,
)
from dailybrief.services.trigger_converter import UtcSchedule, convert_to_utc_schedule

logger = get_logger(__name__)

RESYNC_SCHEDULE_ID = "registry_resync"
QUEUE_ENQUEUE_SCHEDULE_ID = "queue_enqueue"
QUEUE_POLL_SCHEDULE_ID = "queue_poll"

# The running scheduler, used by the module-level job functions
_instance: "BriefScheduler | None" = None


def trigger_schedule_id(user_id: str) -> str:
    return f"brief:{user_id}"


@dataclass
class ActiveTrigger:
    """A user's installed daily trigger."""

    user_id: str
    schedule: UtcSchedule
    entry: UserScheduleEntry
    schedule_id: str
    installed_at: datetime = field(default_factory=utc_now)


@dataclass
class SyncResult:
    """Outcome of one completed sync cycle."""

    synced_at: datetime
    duration_seconds: float
    registry_entries: int
    installed: int = 0
    unchanged: int = 0
    cancelled: int = 0
    skipped: int = 0
    active_triggers: int = 0


class TriggerRegistry:
    """The set of per-user schedules this process has installed.

    One trigger per user. After ``close()`` no further installs are accepted.
    """

    def __init__(self, scheduler: AsyncScheduler, misfire_grace_seconds: int = 300) -> None:
        self._scheduler = scheduler
        self._misfire_grace = timedelta(seconds=misfire_grace_seconds)
        self._triggers: dict[str, ActiveTrigger] = {}
        self._closed = False

    async def install(self, entry: UserScheduleEntry, schedule: UtcSchedule) -> ActiveTrigger:
        """Install (or replace) the daily trigger for ``entry.user_id``."""
        if self._closed:
            raise RuntimeError("Trigger registry is closed")

        schedule_id = trigger_schedule_id(entry.user_id)
        await self._scheduler.add_schedule(
            fire_user_trigger,
            CronTrigger(hour=schedule.hour, minute=schedule.minute, timezone="UTC"),
            id=schedule_id,
            args=[entry.user_id],
            misfire_grace_time=self._misfire_grace,
            conflict_policy=ConflictPolicy.replace,
        )

        trigger = ActiveTrigger(
            user_id=entry.user_id,
            schedule=schedule,
            entry=entry,
            schedule_id=schedule_id,
        )
        self._triggers[entry.user_id] = trigger

        logger.bind(
            user_id=entry.user_id,
            cron=schedule.cron_expression,
            local_time=entry.delivery_time_local,
            timezone=entry.timezone,
        ).info("trigger_installed")
        return trigger

    async def cancel(self, user_id: str) -> bool:
        """Remove a user's trigger. Returns False if none was installed."""
        trigger = self._triggers.pop(user_id, None)
        if trigger is None:
            return False
        await self._scheduler.remove_schedule(trigger.schedule_id)
        logger.bind(user_id=user_id).info("trigger_cancelled")
        return True

    def get(self, user_id: str) -> ActiveTrigger | None:
        return self._triggers.get(user_id)

    def list(self) -> list[ActiveTrigger]:
        return sorted(self._triggers.values(), key=lambda t: t.user_id)

    def user_ids(self) -> set[str]:
        return set(self._triggers)

    async def clear(self) -> int:
        """Cancel every trigger. Returns how many were removed."""
        user_ids = list(self._triggers)
        for user_id in user_ids:
            await self.cancel(user_id)
        return len(user_ids)

    async def close(self) -> None:
        self._closed = True
        await self.clear()

    def __len__(self) -> int:
        return len(self._triggers)


class BriefScheduler:
    """Keeps per-user triggers in line with the registry and fires briefs."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        generator: BriefGenerator | None = None,
        dispatcher: BriefDispatcher | None = None,
        scheduler: AsyncScheduler | None = None,
    ) -> None:
        self.config = get_config()
        self.session_factory = session_factory
        self.generator = generator or get_brief_generator()
        self.dispatcher = dispatcher or BriefDispatcher(session_factory, self.generator)

        self._scheduler = scheduler or AsyncScheduler(data_store=MemoryDataStore())
        self.registry = TriggerRegistry(
            self._scheduler, misfire_grace_seconds=self.config.scheduler.misfire_grace_seconds
        )

        self._sync_lock = asyncio.Lock()
        self._listener_task: asyncio.Task | None = None
        self.running = False
        self.started_at: datetime | None = None
        self.last_sync: SyncResult | None = None
        self.last_sync_error: str | None = None
        self.dropped_syncs = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start APScheduler, register housekeeping schedules and sync once."""
        global _instance

        # APScheduler 4.x must be entered before any other call
        await self._scheduler.__aenter__()
        _instance = self

        await self._scheduler.add_schedule(
            scheduled_sync,
            CronTrigger(minute=self.config.scheduler.resync_cron_minute, timezone="UTC"),
            id=RESYNC_SCHEDULE_ID,
            conflict_policy=ConflictPolicy.replace,
        )

        schedule_ids = [RESYNC_SCHEDULE_ID]
        if self.config.queue.enabled:
            await self._scheduler.add_schedule(
                queue_enqueue_job,
                CronTrigger(minute="*", timezone="UTC"),
                id=QUEUE_ENQUEUE_SCHEDULE_ID,
                conflict_policy=ConflictPolicy.replace,
            )
            await self._scheduler.add_schedule(
                queue_poll_job,
                IntervalTrigger(seconds=self.config.queue.poll_interval_seconds),
                id=QUEUE_POLL_SCHEDULE_ID,
                conflict_policy=ConflictPolicy.replace,
            )
            schedule_ids += [QUEUE_ENQUEUE_SCHEDULE_ID, QUEUE_POLL_SCHEDULE_ID]

        await self._scheduler.start_in_background()
        self.running = True
        self.started_at = utc_now()
        logger.bind(schedules=schedule_ids).info("scheduler_started")

        if self.config.scheduler.sync_on_startup:
            try:
                await self.sync_now()
            except SynchronizationError as e:
                logger.bind(error=str(e)).error("startup_sync_failed")

        if self.config.scheduler.listen_for_changes:
            self._start_change_listener()

    async def shutdown(self) -> None:
        """Stop resync and every trigger, then release the scheduler."""
        global _instance

        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        if self.running:
            for schedule_id in (RESYNC_SCHEDULE_ID, QUEUE_ENQUEUE_SCHEDULE_ID, QUEUE_POLL_SCHEDULE_ID):
                await self._scheduler.remove_schedule(schedule_id)

        removed = len(self.registry)
        await self.registry.close()

        if self.running:
            await self._scheduler.__aexit__(None, None, None)
        self.running = False

        if _instance is self:
            _instance = None

        logger.bind(triggers_removed=removed).info("scheduler_stopped")

    def _start_change_listener(self) -> None:
        settings = get_settings()
        channel = settings.registry_notify_channel
        if not channel or not settings.database_url.startswith("postgresql"):
            logger.info("registry_change_listener_disabled")
            return
        self._listener_task = asyncio.create_task(
            self._listen_for_changes(settings.database_url, channel)
        )

    async def _listen_for_changes(self, database_url: str, channel: str) -> None:
        try:
            await consume_changes(listen_for_changes(database_url, channel), self.sync_now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Hourly resync keeps working without the stream
            logger.bind(channel=channel, error=str(e)).warning("registry_change_listener_failed")

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    async def sync_now(self) -> SyncResult | None:
        """
        Reconcile triggers with a fresh registry snapshot.

        Returns:
            The cycle's result, or None if a sync was already running
            (the request is dropped, not queued)

        Raises:
            SynchronizationError: If the registry could not be read; all
            existing triggers are left in place
        """
        if self._sync_lock.locked():
            self.dropped_syncs += 1
            logger.info("sync_dropped_already_running")
            return None

        async with self._sync_lock:
            try:
                result = await self._sync()
            except SynchronizationError as e:
                self.last_sync_error = str(e)
                logger.bind(error=str(e), active_triggers=len(self.registry)).error(
                    "sync_failed_keeping_triggers"
                )
                raise
            self.last_sync = result
            self.last_sync_error = None
            return result

    async def _sync(self) -> SyncResult:
        started = utc_now()

        async with self.session_factory() as db:
            entries = await fetch_active_entries(db)

        desired, skipped = plan_schedules(entries)

        cancelled = 0
        for trigger in self.registry.list():
            wanted = desired.get(trigger.user_id)
            if wanted is not None and not _trigger_changed(trigger, *wanted):
                continue
            await self.registry.cancel(trigger.user_id)
            cancelled += 1

        installed = 0
        unchanged = 0
        for user_id, (entry, schedule) in desired.items():
            if self.registry.get(user_id) is not None:
                unchanged += 1
                continue
            try:
                await self.registry.install(entry, schedule)
                installed += 1
            except Exception as e:
                logger.bind(user_id=user_id, error=str(e)).error("trigger_install_failed")
                skipped += 1

        result = SyncResult(
            synced_at=utc_now(),
            duration_seconds=(utc_now() - started).total_seconds(),
            registry_entries=len(entries),
            installed=installed,
            unchanged=unchanged,
            cancelled=cancelled,
            skipped=skipped,
            active_triggers=len(self.registry),
        )
        logger.bind(**{k: v for k, v in asdict(result).items() if k != "synced_at"}).info(
            "sync_completed"
        )
        return result

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def fire(self, user_id: str) -> DeliveryStatus | None:
        """Run the firing pipeline for an installed trigger."""
        trigger = self.registry.get(user_id)
        if trigger is None:
            logger.bind(user_id=user_id).warning("trigger_fired_for_unknown_user")
            return None

        logger.bind(user_id=user_id, cron=trigger.schedule.cron_expression).info("trigger_fired")
        return await self.dispatcher.run_brief_for_user(trigger.entry, source=DeliverySource.TRIGGER)

    async def trigger_once(self, user_id: str) -> bool:
        """
        Send a brief right now, bypassing dedup. Recorded with source=manual.

        Raises:
            UserNotFoundError: If the user has no active registry entry
            ConfigurationError: If the user has no recipient id
        """
        async with self.session_factory() as db:
            entry = await get_entry(db, user_id)

        if entry is None:
            raise UserNotFoundError(f"User {user_id} not found in active users")
        if not entry.recipient_id:
            raise ConfigurationError(f"User {user_id} has no recipient_id configured")

        logger.bind(user_id=user_id).info("manual_trigger_requested")
        status = await self.dispatcher.run_brief_for_user(
            entry, source=DeliverySource.MANUAL, enforce_dedup=False
        )
        return status == DeliveryStatus.SUCCESS

    async def run_queue_enqueue(self) -> int:
        async with self.session_factory() as db:
            entries = await fetch_active_entries(db)
            return await enqueue_due_jobs(db, entries)

    async def run_queue_poll(self) -> dict[str, int]:
        return await process_pending_jobs(
            self.session_factory, self.dispatcher, limit=self.config.queue.batch_size
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def list_triggers(self) -> list[TriggerInfo]:
        """Active triggers with their next fire time in the user's timezone."""
        next_fire: dict[str, datetime | None] = {}
        if self.running:
            for schedule in await self._scheduler.get_schedules():
                next_fire[schedule.id] = schedule.next_fire_time

        infos = []
        for trigger in self.registry.list():
            fire_at = next_fire.get(trigger.schedule_id)
            infos.append(
                TriggerInfo(
                    user_id=trigger.user_id,
                    cron=trigger.schedule.cron_expression,
                    utc_time=trigger.schedule.utc_time,
                    local_time=trigger.entry.delivery_time_local[:5],
                    timezone=trigger.entry.timezone,
                    next_fire_time=(
                        fire_at.astimezone(get_zone(trigger.entry.timezone)).isoformat()
                        if fire_at
                        else None
                    ),
                )
            )
        return infos

    def status(self) -> dict[str, Any]:
        uptime = (utc_now() - self.started_at).total_seconds() if self.started_at else 0.0
        return {
            "running": self.running,
            "active_triggers": len(self.registry),
            "user_ids": sorted(self.registry.user_ids()),
            "sync_in_progress": self._sync_lock.locked(),
            "last_sync": asdict(self.last_sync) if self.last_sync else None,
            "last_sync_error": self.last_sync_error,
            "dropped_syncs": self.dropped_syncs,
            "change_listener_active": (
                self._listener_task is not None and not self._listener_task.done()
            ),
            "queue_enabled": self.config.queue.enabled,
            "started_at": self.started_at,
            "uptime_seconds": round(uptime, 1),
            "generator": {
                "cache_size": self.generator.cache_size(),
                "in_flight": self.generator.in_flight_count(),
            },
        }


def plan_schedules(
    entries: list[UserScheduleEntry], now: datetime | None = None
) -> tuple[dict[str, tuple[UserScheduleEntry, UtcSchedule]], int]:
    """
    Compute today's UTC schedule for every valid entry.

    Returns:
        (user_id -> (entry, schedule), number of skipped entries)
    """
    now = now or datetime.now(UTC)
    desired: dict[str, tuple[UserScheduleEntry, UtcSchedule]] = {}
    skipped = 0

    for entry in entries:
        missing = entry.missing_fields()
        if missing:
            logger.bind(user_id=entry.user_id, missing=missing).warning("sync_entry_skipped")
            skipped += 1
            continue
        try:
            schedule = convert_to_utc_schedule(entry.delivery_time_local, entry.timezone, now)
        except ConfigurationError as e:
            logger.bind(user_id=entry.user_id, error=str(e)).warning("sync_entry_invalid")
            skipped += 1
            continue
        desired[entry.user_id] = (entry, schedule)

    return desired, skipped


def _trigger_changed(trigger: ActiveTrigger, entry: UserScheduleEntry, schedule: UtcSchedule) -> bool:
    if trigger.entry.schedule_fields != entry.schedule_fields:
        return True
    return (trigger.schedule.hour, trigger.schedule.minute) != (schedule.hour, schedule.minute)


# ----------------------------------------------------------------------
# Job functions (module-level so APScheduler can reference them)
# ----------------------------------------------------------------------


async def fire_user_trigger(user_id: str) -> None:
    """Daily per-user trigger. Never raises into APScheduler."""
    brief_scheduler = _instance
    if brief_scheduler is None:
        logger.bind(user_id=user_id).warning("trigger_fired_without_scheduler")
        return
    try:
        await brief_scheduler.fire(user_id)
    except Exception as e:
        logger.bind(user_id=user_id, error=str(e)).error("trigger_fire_failed")


async def scheduled_sync() -> None:
    """Hourly resync with the registry."""
    if _instance is None:
        return
    try:
        await _instance.sync_now()
    except SynchronizationError:
        # Already logged; triggers stay as they were
        return


async def queue_enqueue_job() -> None:
    if _instance is None:
        return
    try:
        await _instance.run_queue_enqueue()
    except Exception as e:
        logger.bind(error=str(e)).error("queue_enqueue_job_failed")
        raise


async def queue_poll_job() -> None:
    if _instance is None:
        return
    try:
        await _instance.run_queue_poll()
    except Exception as e:
        logger.bind(error=str(e)).error("queue_poll_job_failed")
        raise


# ----------------------------------------------------------------------
# Process-level handle
# ----------------------------------------------------------------------


def get_scheduler() -> BriefScheduler | None:
    return _instance


async def start_scheduler() -> BriefScheduler | None:
    """Create and start the process scheduler unless disabled by config."""
    if not get_settings().scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    brief_scheduler = BriefScheduler()
    await brief_scheduler.start()
    return brief_scheduler


async def stop_scheduler() -> None:
    """Gracefully stop the process scheduler."""
    if _instance is not None:
        await _instance.shutdown()
