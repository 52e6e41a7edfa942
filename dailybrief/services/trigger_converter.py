"""Local delivery time -> daily UTC trigger conversion.

The UTC offset is derived from *today's* date in the user's timezone, so a
schedule computed in January and one computed in July for the same
preference differ by the DST shift. Nothing here is cached; the scheduler
recomputes on every sync cycle.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from dailybrief.core.datetime_utils import get_zone, parse_delivery_time
from dailybrief.core.logging import get_logger

logger = get_logger(__name__)

NONEXISTENT = "nonexistent"
AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class UtcSchedule:
    """A daily firing time in UTC, plus the local context it was derived from."""

    hour: int
    minute: int
    local_date: date
    utc_offset: timedelta
    adjustment: str | None = None  # NONEXISTENT / AMBIGUOUS when DST interfered

    @property
    def cron_expression(self) -> str:
        return f"{self.minute} {self.hour} * * *"

    @property
    def utc_time(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def convert_to_utc_schedule(
    delivery_time_local: str,
    timezone: str,
    now: datetime | None = None,
) -> UtcSchedule:
    """Convert a local HH:MM delivery time into today's UTC hour/minute.

    Args:
        delivery_time_local: Local wall-clock time ("HH:MM", "HH:MM:SS" tolerated)
        timezone: IANA timezone name
        now: Reference instant; naive values are UTC. Defaults to now.

    Returns:
        UtcSchedule for a daily trigger

    Raises:
        ConfigurationError: If the timezone is unknown or the time is malformed
    """
    tz = get_zone(timezone)
    target = parse_delivery_time(delivery_time_local)

    reference = now or datetime.now(UTC)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)
    today_local = reference.astimezone(tz).date()

    # fold=0: zoneinfo's default disambiguation for gaps and overlaps
    local_dt = datetime.combine(today_local, target, tzinfo=tz)
    utc_dt = local_dt.astimezone(UTC)

    adjustment = None
    if utc_dt.astimezone(tz).replace(tzinfo=None) != local_dt.replace(tzinfo=None):
        adjustment = NONEXISTENT
    elif local_dt.replace(fold=1).utcoffset() != local_dt.utcoffset():
        adjustment = AMBIGUOUS

    if adjustment:
        logger.bind(
            timezone=timezone,
            delivery_time=delivery_time_local,
            local_date=str(today_local),
            resolved_utc=utc_dt.strftime("%H:%M"),
            adjustment=adjustment,
        ).warning("delivery_time_dst_adjusted")

    utc_offset = local_dt.utcoffset() or timedelta(0)
    schedule = UtcSchedule(
        hour=utc_dt.hour,
        minute=utc_dt.minute,
        local_date=today_local,
        utc_offset=utc_offset,
        adjustment=adjustment,
    )

    logger.bind(
        timezone=timezone,
        delivery_time=delivery_time_local,
        local_date=str(today_local),
        cron=schedule.cron_expression,
    ).debug("delivery_time_converted")

    return schedule
