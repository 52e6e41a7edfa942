"""Persisted brief queue: the fallback delivery path.

Every minute the due users (local wall clock == delivery time) are enqueued
as ``pending`` rows keyed by ``(user_id, scheduled_at)``; a poller claims a
small batch and runs each through the firing pipeline. A duplicate enqueue
for the same user and minute is a no-op, which makes the enqueue step safe
to run from more than one process.
"""

from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from dailybrief.config import get_config
from dailybrief.core.datetime_utils import (
    local_minute_matches,
    to_naive_utc,
    truncate_to_minute,
    utc_now,
)
from dailybrief.core.exceptions import ConfigurationError
from dailybrief.core.logging import get_logger
from dailybrief.models.delivery_record import DeliverySource, DeliveryStatus
from dailybrief.models.queue_job import QueueJob, QueueJobStatus
from dailybrief.schemas.schedule import UserScheduleEntry
from dailybrief.services.brief_dispatch import BriefDispatcher
from dailybrief.services.registry import get_entry

logger = get_logger(__name__)

REQUEUEABLE = (QueueJobStatus.FAILED, QueueJobStatus.PROCESSING)


def _insert_ignoring_duplicates(db: AsyncSession, rows: list[dict]):
    insert = sqlite.insert if db.get_bind().dialect.name == "sqlite" else postgresql.insert
    return (
        insert(QueueJob)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["user_id", "scheduled_at"])
        .returning(QueueJob.id)
    )


def due_entries(
    entries: Iterable[UserScheduleEntry], now: datetime | None = None
) -> list[UserScheduleEntry]:
    """Schedulable entries whose local wall clock reads their delivery minute at ``now``."""
    due = []
    for entry in entries:
        if not entry.is_schedulable:
            continue
        try:
            if local_minute_matches(entry.timezone, entry.delivery_time_local, now):
                due.append(entry)
        except ConfigurationError as e:
            logger.bind(user_id=entry.user_id, error=str(e)).warning("queue_entry_invalid")
    return due


async def enqueue_due_jobs(
    db: AsyncSession,
    entries: Iterable[UserScheduleEntry],
    now: datetime | None = None,
) -> int:
    """
    Enqueue a pending job for every entry due at ``now``.

    Returns:
        Number of rows actually inserted (duplicates are not counted)
    """
    reference = to_naive_utc(now) if now else utc_now()
    scheduled_at = truncate_to_minute(reference)

    due = due_entries(entries, reference)
    if not due:
        return 0

    rows = [
        {
            "user_id": entry.user_id,
            "scheduled_at": scheduled_at,
            "status": QueueJobStatus.PENDING,
            "attempts": 0,
            "created_at": reference,
            "updated_at": reference,
        }
        for entry in due
    ]
    result = await db.execute(_insert_ignoring_duplicates(db, rows))
    inserted = len(result.all())
    await db.commit()

    logger.bind(
        due=len(due), inserted=inserted, scheduled_at=scheduled_at.isoformat()
    ).info("queue_jobs_enqueued")
    return inserted


async def fetch_next_jobs(
    db: AsyncSession, limit: int = 5, now: datetime | None = None
) -> list[QueueJob]:
    """Oldest due pending jobs first."""
    reference = to_naive_utc(now) if now else utc_now()
    result = await db.execute(
        select(QueueJob)
        .where(
            QueueJob.status == QueueJobStatus.PENDING,
            QueueJob.scheduled_at <= reference,
        )
        .order_by(QueueJob.scheduled_at, QueueJob.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(result.scalars().all())


async def _set_status(
    db: AsyncSession,
    job_id: int,
    status: QueueJobStatus,
    error: str | None = None,
    count_attempt: bool = False,
) -> QueueJob | None:
    job = await db.get(QueueJob, job_id)
    if job is None:
        logger.bind(job_id=job_id).warning("queue_job_not_found")
        return None

    job.status = status
    job.updated_at = utc_now()
    if count_attempt:
        job.attempts += 1
    if error is not None:
        job.last_error = error[:1000]
    await db.commit()
    return job


async def mark_processing(db: AsyncSession, jobs: list[QueueJob]) -> None:
    """Claim a fetched batch in one commit, releasing the row locks together."""
    now = utc_now()
    for job in jobs:
        job.status = QueueJobStatus.PROCESSING
        job.updated_at = now
    await db.commit()


async def complete_job(db: AsyncSession, job_id: int) -> QueueJob | None:
    return await _set_status(db, job_id, QueueJobStatus.COMPLETED, count_attempt=True)


async def fail_job(db: AsyncSession, job_id: int, error: str) -> QueueJob | None:
    """Mark failed, count the attempt and keep the error. Not retried automatically."""
    return await _set_status(db, job_id, QueueJobStatus.FAILED, error=error, count_attempt=True)


async def requeue_job(db: AsyncSession, job_id: int) -> QueueJob | None:
    """
    Put a failed (or stuck processing) job back to pending.

    Returns:
        The job, or None if it does not exist

    Raises:
        ValueError: If the job is pending or completed
    """
    job = await db.get(QueueJob, job_id)
    if job is None:
        return None
    if job.status not in REQUEUEABLE:
        raise ValueError(
            f"Job {job_id} is {job.status.value}; only failed or processing jobs can be requeued"
        )

    job.status = QueueJobStatus.PENDING
    job.updated_at = utc_now()
    await db.commit()

    logger.bind(job_id=job_id, user_id=job.user_id, attempts=job.attempts).info("queue_job_requeued")
    return job


async def list_jobs(
    db: AsyncSession,
    status: QueueJobStatus | None = None,
    user_id: str | None = None,
    limit: int = 50,
) -> list[QueueJob]:
    """Newest jobs first, optionally filtered."""
    query = select(QueueJob).order_by(QueueJob.scheduled_at.desc(), QueueJob.id.desc())
    if status is not None:
        query = query.where(QueueJob.status == status)
    if user_id:
        query = query.where(QueueJob.user_id == user_id)
    result = await db.execute(query.limit(limit))
    return list(result.scalars().all())


async def _process_job(
    session_factory: Callable[[], AsyncSession],
    dispatcher: BriefDispatcher,
    job_id: int,
    user_id: str,
) -> bool:
    """Run one claimed job. Returns True if it was completed."""
    log = logger.bind(job_id=job_id, user_id=user_id)

    async with session_factory() as db:
        entry = await get_entry(db, user_id)

    if entry is None:
        async with session_factory() as db:
            await fail_job(db, job_id, "User not found in active registry")
        log.warning("queue_job_user_missing")
        return False

    status = await dispatcher.run_brief_for_user(entry, source=DeliverySource.QUEUE)

    async with session_factory() as db:
        if status == DeliveryStatus.FAILED:
            await fail_job(db, job_id, "Brief delivery failed")
        else:
            await complete_job(db, job_id)

    log.bind(outcome=status.value).info("queue_job_processed")
    return status != DeliveryStatus.FAILED


async def process_pending_jobs(
    session_factory: Callable[[], AsyncSession],
    dispatcher: BriefDispatcher,
    limit: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """
    Claim and run one batch of due jobs.

    success and skipped outcomes complete the job; failed outcomes fail it.

    Returns:
        Dict with claimed, completed and failed counts
    """
    limit = limit or get_config().queue.batch_size

    async with session_factory() as db:
        jobs = await fetch_next_jobs(db, limit=limit, now=now)
        claimed = [(job.id, job.user_id) for job in jobs]
        await mark_processing(db, jobs)

    stats = {"claimed": len(claimed), "completed": 0, "failed": 0}

    for job_id, user_id in claimed:
        log = logger.bind(job_id=job_id, user_id=user_id)
        try:
            completed = await _process_job(session_factory, dispatcher, job_id, user_id)
        except Exception as e:
            log.bind(error=str(e)).exception("queue_job_crashed")
            completed = False
            # A claimed job must leave processing or no poll will fetch it again
            try:
                async with session_factory() as db:
                    await fail_job(db, job_id, str(e))
            except Exception as mark_error:
                log.bind(error=str(mark_error)).error("queue_job_fail_mark_failed")

        stats["completed" if completed else "failed"] += 1

    if claimed:
        logger.bind(**stats).info("queue_batch_processed")
    return stats
