"""Centralized datetime utilities for consistent timezone handling.

All "now" values handled by the database layer are naive UTC datetimes
(SQLAlchemy models store naive UTC). Per-user helpers work with aware
datetimes in the user's IANA timezone.

Usage:
    from dailybrief.core.datetime_utils import utc_now, start_of_utc_day

    # Records written since midnight UTC
    query.where(DeliveryRecord.created_at >= start_of_utc_day())

    # Per-user timezone support
    from dailybrief.core.datetime_utils import local_minute_matches

    if local_minute_matches(entry.timezone, entry.delivery_time_local):
        enqueue(entry)
"""

import re
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dailybrief.core.exceptions import ConfigurationError

_DELIVERY_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def utc_now() -> datetime:
    """Get current UTC time as naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be aware or naive)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(dt: datetime) -> datetime:
    """Convert a datetime (naive means UTC) to an aware UTC datetime."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def get_cutoff(seconds: int = 0, hours: int = 0, days: int = 0, now: datetime | None = None) -> datetime:
    """Get cutoff datetime for filtering queries.

    Args:
        seconds: Seconds to subtract from now
        hours: Hours to subtract from now
        days: Days to subtract from now
        now: Reference instant (defaults to current time)

    Returns:
        Naive UTC datetime representing the cutoff point
    """
    reference = to_naive_utc(now) if now else utc_now()
    return reference - timedelta(seconds=seconds, hours=hours, days=days)


def start_of_utc_day(now: datetime | None = None) -> datetime:
    """Midnight of the current UTC calendar day, as naive UTC."""
    reference = to_naive_utc(now) if now else utc_now()
    return reference.replace(hour=0, minute=0, second=0, microsecond=0)


def truncate_to_minute(dt: datetime) -> datetime:
    """Drop seconds and microseconds."""
    return dt.replace(second=0, microsecond=0)


# =============================================================================
# Per-user timezone utilities
# =============================================================================


def is_valid_timezone(tz_name: str) -> bool:
    """Check if a timezone name is a valid IANA identifier."""
    try:
        get_zone(tz_name)
        return True
    except ConfigurationError:
        return False


def get_zone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        ConfigurationError: If the name is empty or unknown
    """
    if not tz_name:
        raise ConfigurationError("Timezone is required")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, KeyError) as e:
        raise ConfigurationError(f"Unknown timezone: {tz_name!r}") from e


def parse_delivery_time(delivery_time_local: str) -> time:
    """Parse a delivery time string into a time object.

    Accepts "HH:MM" and the "HH:MM:SS" form returned by SQL TIME columns;
    seconds are ignored.

    Raises:
        ConfigurationError: If the string is not a valid wall-clock time
    """
    match = _DELIVERY_TIME_RE.match((delivery_time_local or "").strip())
    if not match:
        raise ConfigurationError(f"Malformed delivery time: {delivery_time_local!r}")

    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigurationError(f"Delivery time out of range: {delivery_time_local!r}")
    return time(hour=hour, minute=minute)


def user_local_time(timezone: str, now: datetime | None = None) -> datetime:
    """Get the current (or given) instant in a user's timezone.

    Args:
        timezone: IANA timezone string (e.g., "America/New_York")
        now: Reference instant; naive values are treated as UTC

    Returns:
        Aware datetime in the user's local timezone

    Raises:
        ConfigurationError: If the timezone is unknown
    """
    tz = get_zone(timezone)
    if now is None:
        return datetime.now(tz)
    return to_aware_utc(now).astimezone(tz)


def local_minute_matches(
    timezone: str,
    delivery_time_local: str,
    now: datetime | None = None,
) -> bool:
    """Check whether the user's local wall clock currently reads their delivery minute."""
    local_now = user_local_time(timezone, now)
    target = parse_delivery_time(delivery_time_local)
    return local_now.hour == target.hour and local_now.minute == target.minute
