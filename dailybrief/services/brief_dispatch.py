"""Firing pipeline: dedup check -> generate -> deliver -> record.

Every firing path (scheduled trigger, queue poll, manual test brief) goes
through ``BriefDispatcher.run_brief_for_user``. It never raises: any
failure is logged and written as a ``failed`` delivery record.
"""

import asyncio
from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from dailybrief.core.logging import get_logger
from dailybrief.models.delivery_record import DeliverySource, DeliveryStatus
from dailybrief.schemas.schedule import UserScheduleEntry
from dailybrief.services import delivery
from dailybrief.services.brief_generator import BriefGenerator
from dailybrief.services.dedup import DedupGuard

logger = get_logger(__name__)

MISSING_RECIPIENT = "No recipient_id configured"
DELIVERY_FAILED = "Failed to send via webhook"


class BriefDispatcher:
    """Runs firings, serialized per user.

    Two firings for the same user never interleave between the dedup check
    and the record write, so the second one always sees the first one's
    outcome.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        generator: BriefGenerator,
        dedup: DedupGuard | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.generator = generator
        self.dedup = dedup or DedupGuard()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def run_brief_for_user(
        self,
        entry: UserScheduleEntry,
        source: DeliverySource = DeliverySource.TRIGGER,
        enforce_dedup: bool = True,
    ) -> DeliveryStatus:
        """Fire one brief for one user and record the outcome."""
        user_id = entry.user_id or "unknown"
        log = logger.bind(user_id=user_id, source=source.value)

        async with self._lock_for(user_id):
            try:
                return await self._fire(entry, source, enforce_dedup)
            except Exception as e:
                log.bind(error=str(e)).exception("brief_firing_failed")
                try:
                    await self._record(user_id, DeliveryStatus.FAILED, str(e)[:500], source)
                except Exception as record_error:
                    log.bind(error=str(record_error)).error("brief_failure_record_failed")
                return DeliveryStatus.FAILED

    async def _fire(
        self,
        entry: UserScheduleEntry,
        source: DeliverySource,
        enforce_dedup: bool,
    ) -> DeliveryStatus:
        user_id = entry.user_id
        log = logger.bind(user_id=user_id, source=source.value)

        if enforce_dedup:
            async with self.session_factory() as db:
                decision = await self.dedup.check(db, user_id)
            if not decision.allowed:
                log.bind(reason=decision.reason).info("brief_skipped_dedup")
                await self._record(user_id, DeliveryStatus.SKIPPED, decision.reason, source)
                return DeliveryStatus.SKIPPED

        if not entry.recipient_id:
            log.warning("brief_skipped_missing_recipient")
            await self._record(user_id, DeliveryStatus.SKIPPED, MISSING_RECIPIENT, source)
            return DeliveryStatus.SKIPPED

        log.bind(contact=entry.contact_address).info("brief_firing_started")

        content = await self.generator.produce(user_id, entry.contact_address, entry.timezone)
        success = await delivery.deliver(entry.recipient_id, content)

        if success:
            await self._record(user_id, DeliveryStatus.SUCCESS, None, source)
            log.info("brief_delivered")
            return DeliveryStatus.SUCCESS

        await self._record(user_id, DeliveryStatus.FAILED, DELIVERY_FAILED, source)
        log.error("brief_delivery_failed")
        return DeliveryStatus.FAILED

    async def _record(
        self,
        user_id: str,
        status: DeliveryStatus,
        error_message: str | None,
        source: DeliverySource,
    ) -> None:
        async with self.session_factory() as db:
            await self.dedup.log(db, user_id, status, error_message=error_message, source=source)
