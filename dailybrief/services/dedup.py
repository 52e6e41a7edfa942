"""Delivery dedup: at most one brief per user per UTC day, plus a cooldown.

Both checks read the append-only ``delivery_records`` log, which is also
where every firing outcome (success, failed, skipped) is written. Only
delivery attempts made by the schedule count: ``skipped`` rows and manual
test briefs are history, not deliveries.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dailybrief.config import get_config
from dailybrief.core.datetime_utils import get_cutoff, start_of_utc_day, utc_now
from dailybrief.core.logging import get_logger
from dailybrief.models.delivery_record import DeliveryRecord, DeliverySource, DeliveryStatus

logger = get_logger(__name__)

ALREADY_SENT_TODAY = "already_sent_today"
SENT_RECENTLY = "sent_recently"


@dataclass
class DedupDecision:
    """Whether a firing may proceed, and why not if it may not."""

    allowed: bool
    reason: str | None = None


class DedupGuard:
    """Decides whether a user's brief may be sent now and records outcomes."""

    def __init__(self, cooldown_seconds: int | None = None) -> None:
        if cooldown_seconds is None:
            cooldown_seconds = get_config().dedup.cooldown_seconds
        self.cooldown_seconds = cooldown_seconds

    async def already_sent_today(
        self, db: AsyncSession, user_id: str, now: datetime | None = None
    ) -> bool:
        """Any counted attempt for the user since midnight UTC."""
        return await self._has_record_since(db, user_id, start_of_utc_day(now))

    async def sent_recently(
        self, db: AsyncSession, user_id: str, now: datetime | None = None
    ) -> bool:
        """Any counted attempt for the user within the cooldown window."""
        return await self._has_record_since(
            db, user_id, get_cutoff(seconds=self.cooldown_seconds, now=now)
        )

    async def check(
        self, db: AsyncSession, user_id: str, now: datetime | None = None
    ) -> DedupDecision:
        """Run both checks. The daily check wins when both would skip."""
        if await self.already_sent_today(db, user_id, now):
            return DedupDecision(allowed=False, reason=ALREADY_SENT_TODAY)
        if await self.sent_recently(db, user_id, now):
            return DedupDecision(allowed=False, reason=SENT_RECENTLY)
        return DedupDecision(allowed=True)

    async def log(
        self,
        db: AsyncSession,
        user_id: str,
        status: DeliveryStatus,
        error_message: str | None = None,
        source: DeliverySource = DeliverySource.TRIGGER,
    ) -> DeliveryRecord:
        """Append a delivery record and commit it."""
        record = DeliveryRecord(
            user_id=user_id,
            created_at=utc_now(),
            status=status,
            source=source,
            error_message=error_message,
        )
        db.add(record)
        await db.commit()

        logger.bind(
            user_id=user_id,
            status=status.value,
            source=source.value,
            error=error_message,
        ).debug("delivery_record_written")
        return record

    async def recent_history(
        self, db: AsyncSession, user_id: str | None = None, limit: int = 50
    ) -> list[DeliveryRecord]:
        """Latest records, newest first, optionally for one user."""
        query = select(DeliveryRecord).order_by(
            DeliveryRecord.created_at.desc(), DeliveryRecord.id.desc()
        )
        if user_id:
            query = query.where(DeliveryRecord.user_id == user_id)
        result = await db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def _has_record_since(self, db: AsyncSession, user_id: str, since: datetime) -> bool:
        result = await db.execute(
            select(DeliveryRecord.id)
            .where(
                and_(
                    DeliveryRecord.user_id == user_id,
                    DeliveryRecord.created_at >= since,
                    DeliveryRecord.status != DeliveryStatus.SKIPPED,
                    DeliveryRecord.source != DeliverySource.MANUAL,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
