"""
Daily brief generation with caching and request coalescing.

``BriefGenerator.produce`` is the only entry point. Per cache key
(user id + contact address) it keeps:

- a short-TTL cache of the last generated brief, absorbing bursts of
  duplicate requests;
- an in-flight map of running generation tasks, so concurrent callers for
  the same key share one upstream pipeline run.

Both maps are plain dicts mutated only from the event loop; the in-flight
map is the serialization point.

Pipeline: mail data, then calendar data (sequential, with fixed delays
between calls to respect upstream rate limits), then one LLM completion.
Any section that cannot be gathered is reported as unavailable; if the LLM
call fails, or nothing could be gathered, a templated degraded brief is
returned instead.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime

import backoff
from openai import AsyncOpenAI, RateLimitError

from dailybrief.config import get_config, get_settings
from dailybrief.core.datetime_utils import get_zone, is_valid_timezone
from dailybrief.core.logging import get_logger
from dailybrief.core.retry import RetryConfig, retry_with_backoff
from dailybrief.schemas.brief import BusinessPeriod, CalendarSummary, EmailSummary
from dailybrief.services.data_sources import DataSourceClient

logger = get_logger(__name__)

UNAVAILABLE_NOTICE = "Not available (connection issue)"

SYSTEM_PROMPT = """You are an executive assistant writing a user's morning brief.
Write EXACTLY two sections and nothing else:

1) 📧 Email Brief
   - Inbox at a glance: unread, important/starred and VIP counts.
   - Up to 5 important emails, one per line: "subject | from | [View Thread](threadLink)".

2) 📅 Calendar Brief
   - Today's meetings as a numbered list in chronological order:
     1. Event Title | 8:00 - 9:00
        1.1 related email context, or "No specific email context available"

Rules:
- If a section's data is marked as not available, say so in one line for that section.
- Professional, concise, action-oriented.
- Always render thread links as markdown links."""


@dataclass
class CachedBrief:
    """A generated brief and the clock reading it was produced at."""

    content: str
    created_at: float


def cache_key(user_id: str | None, contact_address: str | None) -> str:
    return f"{user_id or 'unknown'}:{contact_address or 'unknown'}"


def format_brief_date(now: datetime) -> str:
    """"Monday, October 19, 2026"."""
    return f"{now:%A, %B} {now.day}, {now.year}"


def brief_header(today_formatted: str) -> str:
    return f"📋 *Daily Brief - {today_formatted}*\n\n"


def _parse_timestamp(value: str | None) -> datetime | None:
    """Parse RFC 2822 mail dates or ISO 8601 timestamps; None if unparseable."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return parsed


def filter_by_period(emails: list[dict], start: datetime, end: datetime) -> list[dict]:
    """Keep emails whose ``date`` falls inside [start, end]. Naive dates are UTC."""
    kept = []
    for email in emails or []:
        sent_at = _parse_timestamp(email.get("date"))
        if sent_at is None:
            continue
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=get_zone("UTC"))
        if start <= sent_at <= end:
            kept.append(email)
    return kept


def _event_start(event: dict, tz) -> datetime | None:
    start = event.get("start") or {}
    if start.get("dateTime"):
        parsed = _parse_timestamp(start["dateTime"])
    elif start.get("date"):
        try:
            parsed = datetime.fromisoformat(start["date"])
        except ValueError:
            return None
    else:
        return None
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def build_briefing_data(
    email: EmailSummary | None,
    calendar: CalendarSummary | None,
    today_formatted: str,
    timezone: str,
) -> str:
    """Render gathered data as the plain-text digest handed to the LLM."""
    lines = [f"DATE: {today_formatted}", f"TIMEZONE: {timezone}", ""]

    if email:
        lines += [
            "EMAIL DATA:",
            f"- Unread emails: {email.unread_count}",
            f"- Important emails: {email.important_count}",
            f"- VIP emails: {email.vip_count}",
        ]
        for title, items in (
            ("IMPORTANT EMAIL SUBJECTS", email.important_emails),
            ("VIP EMAIL SUBJECTS", email.vip_emails),
        ):
            if items:
                lines += ["", f"{title}:"]
                for index, item in enumerate(items[:5], start=1):
                    lines.append(
                        f"{index}. {item.get('subject')} (from: {item.get('from')}) - "
                        f"Thread: {item.get('threadLink') or 'N/A'}"
                    )
    else:
        lines.append(f"EMAIL DATA: {UNAVAILABLE_NOTICE}")

    lines.append("")

    if calendar:
        lines += [
            "CALENDAR DATA:",
            f"- Today's events: {calendar.todays_event_count}",
            f"- Upcoming events: {calendar.upcoming_event_count}",
        ]
        if calendar.todays_events:
            lines += ["", "TODAY'S EVENTS:"]
            for index, event in enumerate(calendar.todays_events, start=1):
                start = (event.get("start") or {}).get("dateTime") or "All day"
                lines.append(f"{index}. {event.get('summary')} at {start}")
    else:
        lines.append(f"CALENDAR DATA: {UNAVAILABLE_NOTICE}")

    return "\n".join(lines)


def render_degraded_brief(
    today_formatted: str,
    timezone: str,
    generated_at: datetime,
    email: EmailSummary | None = None,
    calendar: CalendarSummary | None = None,
    reason: str | None = None,
) -> str:
    """Templated brief used when the LLM or the data sources are unavailable."""
    parts = [brief_header(today_formatted)]

    if reason:
        parts.append(f"⚠️ *Notice: Limited functionality due to: {reason}*\n\n")

    parts.append("📧 *Email Brief:*\n")
    if email:
        parts.append(
            f"• {email.unread_count} unread, {email.important_count} important, "
            f"{email.vip_count} VIP\n"
        )
        for item in email.important_emails[:5]:
            parts.append(f"• {item.get('subject')} | {item.get('from')}\n")
        parts.append("\n")
    else:
        parts.append("• Email data is unavailable at this time\n")
        parts.append("• Please check your email manually\n\n")

    parts.append("📅 *Calendar Brief:*\n")
    if calendar:
        if not calendar.todays_events:
            parts.append("• No events today\n")
        for index, event in enumerate(calendar.todays_events, start=1):
            start = (event.get("start") or {}).get("dateTime") or "All day"
            parts.append(f"{index}. {event.get('summary')} | {start}\n")
        parts.append("\n")
    else:
        parts.append("• Calendar data is unavailable at this time\n")
        parts.append("• Please check your calendar manually\n\n")

    parts.append(f"💡 *Generated at {generated_at:%I:%M %p} {timezone}*")
    return "".join(parts)


class BriefGenerator:
    """Per-process brief producer: cache, coalescing, retry, degradation."""

    def __init__(
        self,
        data_client: DataSourceClient | None = None,
        llm_client: AsyncOpenAI | None = None,
        *,
        cache_ttl_seconds: float | None = None,
        retry_config: RetryConfig | None = None,
        source_delay_seconds: float | None = None,
        call_delay_seconds: float | None = None,
        max_output_tokens: int | None = None,
        default_timezone: str | None = None,
        model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = get_config().generation
        settings = get_settings()

        self.data_client = data_client or DataSourceClient()
        if llm_client is None and settings.openai_api_key:
            llm_client = AsyncOpenAI(api_key=settings.openai_api_key)
        self.llm_client = llm_client
        self.model = model or settings.llm_model

        self.cache_ttl = cache_ttl_seconds if cache_ttl_seconds is not None else config.cache_ttl_seconds
        self.retry_config = retry_config or RetryConfig(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base_seconds,
            jitter=False,
        )
        self.source_delay = (
            source_delay_seconds if source_delay_seconds is not None else config.source_delay_seconds
        )
        self.call_delay = call_delay_seconds if call_delay_seconds is not None else config.call_delay_seconds
        self.max_output_tokens = max_output_tokens or config.max_output_tokens
        self.default_timezone = default_timezone or config.default_timezone
        self._clock = clock

        self._cache: dict[str, CachedBrief] = {}
        self._in_flight: dict[str, asyncio.Task[str]] = {}

        logger.bind(cache_ttl_seconds=self.cache_ttl).debug("brief_generator_initialized")

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    async def produce(
        self,
        user_id: str | None,
        contact_address: str | None,
        timezone: str | None = None,
    ) -> str:
        """Return a brief for the user, generating at most once per burst."""
        key = cache_key(user_id, contact_address)
        log = logger.bind(user_id=user_id, contact=contact_address)

        while True:
            cached = self._get_cached(key)
            if cached is not None:
                log.debug("brief_cache_hit")
                return cached

            task = self._in_flight.get(key)
            if task is None:
                break

            log.debug("brief_awaiting_in_flight")
            try:
                return await asyncio.shield(task)
            except Exception as e:
                log.bind(error=str(e)).warning("brief_in_flight_failed_regenerating")
                if self._in_flight.get(key) is task:
                    del self._in_flight[key]

        task = asyncio.create_task(self._run(key, contact_address, timezone))
        self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _run(self, key: str, contact_address: str | None, timezone: str | None) -> str:
        try:
            brief = await self.generate(contact_address, timezone)
            self._cache[key] = CachedBrief(content=brief, created_at=self._clock())
            logger.bind(key=key, ttl_seconds=self.cache_ttl).debug("brief_cached")
            self.cleanup_cache()
            return brief
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

    def _get_cached(self, key: str) -> str | None:
        cached = self._cache.get(key)
        if cached is None:
            return None
        if self._clock() - cached.created_at < self.cache_ttl:
            return cached.content
        del self._cache[key]
        return None

    def cleanup_cache(self) -> int:
        """Evict expired entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, v in self._cache.items() if now - v.created_at >= self.cache_ttl]
        for k in expired:
            del self._cache[k]
        if expired:
            logger.bind(removed=len(expired)).debug("brief_cache_cleaned")
        return len(expired)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_size(self) -> int:
        return len(self._cache)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def generate(self, contact_address: str | None, timezone: str | None = None) -> str:
        """Run the full pipeline once, without cache or coalescing."""
        tz_name = timezone if timezone and is_valid_timezone(timezone) else self.default_timezone
        now = datetime.now(get_zone(tz_name))
        today_formatted = format_brief_date(now)

        logger.bind(contact=contact_address, timezone=tz_name).info("brief_generation_started")

        email = await self.gather_email_data(contact_address, tz_name, now)
        await asyncio.sleep(self.source_delay)
        calendar = await self.gather_calendar_data(contact_address, tz_name, now)

        if email is None and calendar is None:
            logger.bind(contact=contact_address).warning("brief_all_sources_unavailable")
            return render_degraded_brief(
                today_formatted, tz_name, now, reason="mail and calendar data unavailable"
            )

        try:
            return await self.generate_ai_brief(email, calendar, today_formatted, tz_name)
        except Exception as e:
            logger.bind(contact=contact_address, error=str(e)).error("brief_ai_generation_failed")
            return render_degraded_brief(
                today_formatted, tz_name, now, email=email, calendar=calendar, reason=str(e)
            )

    async def _fetch(self, fn, operation: str, essential: bool):
        """Retry one upstream call; non-essential calls yield [] after exhaustion."""
        config = RetryConfig(
            max_attempts=self.retry_config.max_attempts,
            backoff_base=self.retry_config.backoff_base,
            backoff_max=self.retry_config.backoff_max,
            jitter=self.retry_config.jitter,
            retryable_exceptions=self.retry_config.retryable_exceptions,
            raise_on_failure=essential,
            fallback=list,
        )
        return await retry_with_backoff(fn, config=config, operation_name=operation)

    async def gather_email_data(
        self, contact_address: str | None, timezone: str, now: datetime
    ) -> EmailSummary | None:
        """Mail received since 18:00 local yesterday. None if the inbox is unreachable."""
        if not contact_address:
            return None

        period_start = (now - timedelta(days=1)).replace(hour=18, minute=0, second=0, microsecond=0)
        period_end = now
        time_query = (
            f"after:{period_start:%Y/%m/%d} before:{(period_end + timedelta(days=1)):%Y/%m/%d}"
        )

        try:
            unread = await self._fetch(
                lambda: self.data_client.get_recent_emails(
                    contact_address, 30, f"is:unread {time_query}"
                ),
                "gmail:unread",
                essential=True,
            )
            await asyncio.sleep(self.call_delay)
            important = await self._fetch(
                lambda: self.data_client.get_recent_emails(
                    contact_address, 15, f"(is:important OR is:starred) {time_query}"
                ),
                "gmail:important",
                essential=False,
            )
            await asyncio.sleep(self.call_delay)
            vip = await self._fetch(
                lambda: self.data_client.get_recent_emails(
                    contact_address, 10, f'label:"VIP" {time_query}'
                ),
                "gmail:vip",
                essential=False,
            )
        except Exception as e:
            logger.bind(contact=contact_address, error=str(e)).error("email_data_unavailable")
            return None

        unread = filter_by_period(unread, period_start, period_end)
        important = filter_by_period(important, period_start, period_end)
        vip = filter_by_period(vip, period_start, period_end)

        logger.bind(
            unread=len(unread), important=len(important), vip=len(vip)
        ).debug("email_data_gathered")

        return EmailSummary(
            unread_emails=unread[:20],
            important_emails=important[:10],
            vip_emails=vip[:5],
            unread_count=len(unread),
            important_count=len(important),
            vip_count=len(vip),
            business_period=BusinessPeriod(
                start=f"{period_start:%b %d, %I:%M %p}",
                end=f"{period_end:%b %d, %I:%M %p}",
                timezone=timezone,
            ),
        )

    async def gather_calendar_data(
        self, contact_address: str | None, timezone: str, now: datetime
    ) -> CalendarSummary | None:
        """Today's events plus upcoming ones after today. None if unreachable."""
        if not contact_address:
            return None

        try:
            todays = await self._fetch(
                lambda: self.data_client.get_todays_events(contact_address),
                "calendar:today",
                essential=True,
            )
            await asyncio.sleep(self.call_delay)
            upcoming = await self._fetch(
                lambda: self.data_client.get_upcoming_events(contact_address, 10),
                "calendar:upcoming",
                essential=False,
            )
        except Exception as e:
            logger.bind(contact=contact_address, error=str(e)).error("calendar_data_unavailable")
            return None

        tz = get_zone(timezone)
        tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        future = [
            event
            for event in upcoming
            if (start := _event_start(event, tz)) is not None and start >= tomorrow
        ]

        logger.bind(today=len(todays), upcoming=len(future)).debug("calendar_data_gathered")

        return CalendarSummary(
            todays_events=todays,
            upcoming_events=future[:5],
            todays_event_count=len(todays),
            upcoming_event_count=len(future),
        )

    @backoff.on_exception(backoff.expo, RateLimitError, max_tries=3, max_time=60)
    async def generate_ai_brief(
        self,
        email: EmailSummary | None,
        calendar: CalendarSummary | None,
        today_formatted: str,
        timezone: str,
    ) -> str:
        """One chat completion turning the gathered data into the brief text."""
        if self.llm_client is None:
            raise RuntimeError("LLM client not configured")

        briefing_data = build_briefing_data(email, calendar, today_formatted, timezone)
        user_prompt = (
            f"Please create a daily brief for {today_formatted} with EXACTLY two sections "
            f"(Email Brief, Calendar Brief). Here's the data:\n\n{briefing_data}\n\n"
            "Keep it concise and help the user prioritize their day."
        )

        response = await self.llm_client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_output_tokens,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        )

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise RuntimeError("LLM returned an empty brief")

        if response.usage:
            logger.bind(
                total_tokens=response.usage.total_tokens,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            ).info("brief_ai_generated")

        return f"{brief_header(today_formatted)}{content}"


_generator_instance: BriefGenerator | None = None


def get_brief_generator() -> BriefGenerator:
    """Process-wide generator; the cache only works if it is shared."""
    global _generator_instance
    if _generator_instance is None:
        _generator_instance = BriefGenerator()
    return _generator_instance


def reset_brief_generator() -> None:
    """Drop the shared generator. Useful for testing."""
    global _generator_instance
    _generator_instance = None
