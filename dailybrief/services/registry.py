"""Preference registry reader and change stream.

The registry is the ``user_preferences`` table. The scheduler only reads it:
one snapshot per sync cycle, plus an optional PostgreSQL ``LISTEN`` stream
that signals "something changed, resync".
"""

import asyncio
import ssl
from collections.abc import AsyncIterator, Awaitable, Callable

import asyncpg
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dailybrief.core.database import normalize_database_url, to_asyncpg_dsn
from dailybrief.core.exceptions import SynchronizationError
from dailybrief.core.logging import get_logger
from dailybrief.models.user_preference import UserPreference
from dailybrief.schemas.schedule import UserScheduleEntry

logger = get_logger(__name__)


def to_entry(preference: UserPreference) -> UserScheduleEntry:
    return UserScheduleEntry(
        user_id=preference.user_id,
        timezone=preference.timezone,
        delivery_time_local=preference.delivery_time,
        recipient_id=preference.recipient_id,
        contact_address=preference.contact_address,
    )


async def fetch_active_entries(db: AsyncSession) -> list[UserScheduleEntry]:
    """
    Snapshot all active registry rows.

    Entries without a recipient are returned too; the caller decides to
    skip them so the skip is visible in its logs and counts.

    Raises:
        SynchronizationError: If the registry cannot be read
    """
    try:
        result = await db.execute(
            select(UserPreference)
            .where(UserPreference.is_active == True)  # noqa: E712
            .order_by(UserPreference.user_id)
        )
        preferences = result.scalars().all()
    except (SQLAlchemyError, OSError) as e:
        logger.bind(error=str(e)).error("registry_fetch_failed")
        raise SynchronizationError(f"Registry unreachable: {e}") from e

    entries = [to_entry(p) for p in preferences]
    without_recipient = sum(1 for e in entries if not e.recipient_id)
    if without_recipient:
        logger.bind(count=without_recipient).warning("registry_entries_without_recipient")

    logger.bind(count=len(entries)).debug("registry_snapshot_fetched")
    return entries


async def get_entry(db: AsyncSession, user_id: str) -> UserScheduleEntry | None:
    """The active registry entry for one user, or None."""
    result = await db.execute(
        select(UserPreference).where(
            UserPreference.user_id == user_id,
            UserPreference.is_active == True,  # noqa: E712
        )
    )
    preference = result.scalar_one_or_none()
    return to_entry(preference) if preference else None


async def check_connection(db: AsyncSession) -> bool:
    """Check the registry table is reachable."""
    try:
        await db.execute(select(UserPreference.id).limit(1))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.bind(error=str(e)).error("registry_connection_failed")
        return False


async def listen_for_changes(database_url: str, channel: str) -> AsyncIterator[str]:
    """
    Yield one payload per ``NOTIFY`` on ``channel``.

    Holds a dedicated asyncpg connection for the lifetime of the iterator.
    Only PostgreSQL URLs are supported; connection errors propagate to the
    caller, which falls back to hourly resync.
    """
    url, connect_args = normalize_database_url(database_url)
    if not url.startswith("postgresql"):
        raise ValueError("Change notifications require a PostgreSQL database")

    queue: asyncio.Queue[str] = asyncio.Queue()

    def on_notify(connection, pid, notify_channel, payload) -> None:
        queue.put_nowait(payload or "")

    ssl_context: ssl.SSLContext | None = connect_args.get("ssl")
    connection = await asyncpg.connect(to_asyncpg_dsn(url), ssl=ssl_context)
    try:
        await connection.add_listener(channel, on_notify)
        logger.bind(channel=channel).info("registry_change_listener_started")
        while True:
            yield await queue.get()
    finally:
        try:
            await connection.remove_listener(channel, on_notify)
        finally:
            await connection.close()
            logger.bind(channel=channel).info("registry_change_listener_stopped")


async def consume_changes(
    stream: AsyncIterator[str],
    on_change: Callable[[], Awaitable[object]],
) -> None:
    """Call ``on_change`` once per message until the stream ends or is cancelled."""
    async for payload in stream:
        logger.bind(payload=payload[:200]).info("registry_change_received")
        try:
            await on_change()
        except Exception as e:
            logger.bind(error=str(e)).error("registry_change_handler_failed")
