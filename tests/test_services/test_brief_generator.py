"""Tests for the brief generation coordinator."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from dailybrief.core.exceptions import UpstreamError
from dailybrief.core.retry import RetryConfig
from dailybrief.schemas.brief import EmailSummary
from dailybrief.services.brief_generator import (
    UNAVAILABLE_NOTICE,
    BriefGenerator,
    build_briefing_data,
    cache_key,
    filter_by_period,
)
from dailybrief.services.data_sources import DataSourceClient

pytestmark = pytest.mark.asyncio


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _llm_response(content: str = "📧 Email Brief\n...\n📅 Calendar Brief\n...") -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    response.usage = None
    return response


@pytest.fixture
def data_client() -> AsyncMock:
    recent = (datetime.now(UTC) - timedelta(minutes=5)).isoformat()
    client = AsyncMock(spec=DataSourceClient)
    client.get_recent_emails.return_value = [
        {"subject": "Board deck", "from": "ceo@example.com", "date": recent, "threadLink": "https://mail/1"}
    ]
    client.get_todays_events.return_value = [
        {"summary": "Standup", "start": {"dateTime": "2026-10-19T09:00:00-04:00"}}
    ]
    client.get_upcoming_events.return_value = []
    return client


@pytest.fixture
def llm_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_llm_response())
    return client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generator(data_client, llm_client, clock) -> BriefGenerator:
    return BriefGenerator(
        data_client=data_client,
        llm_client=llm_client,
        cache_ttl_seconds=30,
        retry_config=RetryConfig(max_attempts=3, backoff_base=0, jitter=False),
        source_delay_seconds=0,
        call_delay_seconds=0,
        default_timezone="America/New_York",
        model="test-model",
        clock=clock,
    )


class TestCaching:
    async def test_second_call_within_ttl_hits_cache(self, generator, llm_client, data_client):
        first = await generator.produce("user-1", "user-1@example.com")
        calls_after_first = data_client.get_recent_emails.await_count

        second = await generator.produce("user-1", "user-1@example.com")

        assert first == second
        assert llm_client.chat.completions.create.await_count == 1
        assert data_client.get_recent_emails.await_count == calls_after_first

    async def test_expired_entry_regenerates(self, generator, llm_client, clock):
        await generator.produce("user-1", "user-1@example.com")
        clock.now += 31

        await generator.produce("user-1", "user-1@example.com")

        assert llm_client.chat.completions.create.await_count == 2

    async def test_keys_are_per_user_and_contact(self, generator, llm_client):
        await generator.produce("user-1", "a@example.com")
        await generator.produce("user-1", "b@example.com")

        assert llm_client.chat.completions.create.await_count == 2
        assert generator.cache_size() == 2

    async def test_cleanup_evicts_expired_entries(self, generator, clock):
        await generator.produce("user-1", "a@example.com")
        clock.now += 60

        assert generator.cleanup_cache() == 1
        assert generator.cache_size() == 0

    def test_cache_key_defaults_unknown(self):
        assert cache_key(None, None) == "unknown:unknown"


class TestCoalescing:
    async def test_concurrent_requests_share_one_generation(self, generator, llm_client, data_client):
        async def slow_emails(*args, **kwargs):
            await asyncio.sleep(0.01)
            return []

        data_client.get_recent_emails.side_effect = slow_emails

        results = await asyncio.gather(
            *[generator.produce("user-1", "user-1@example.com") for _ in range(5)]
        )

        assert len(set(results)) == 1
        assert llm_client.chat.completions.create.await_count == 1
        assert generator.in_flight_count() == 0

    async def test_waiter_starts_new_attempt_when_in_flight_fails(self, generator):
        calls = 0

        async def flaky(contact_address, timezone=None):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            if calls == 1:
                raise RuntimeError("pipeline exploded")
            return "fresh brief"

        generator.generate = flaky

        owner = asyncio.create_task(generator.produce("user-1", "user-1@example.com"))
        await asyncio.sleep(0)

        waiter_result = await generator.produce("user-1", "user-1@example.com")

        assert waiter_result == "fresh brief"
        with pytest.raises(RuntimeError):
            await owner
        assert calls == 2


class TestPipeline:
    async def test_successful_brief_has_dated_header(self, generator, llm_client):
        brief = await generator.produce("user-1", "user-1@example.com", "America/New_York")

        assert brief.startswith("📋 *Daily Brief - ")
        assert "📧 Email Brief" in brief
        kwargs = llm_client.chat.completions.create.await_args.kwargs
        assert kwargs["max_tokens"] == 800
        assert kwargs["model"] == "test-model"

    async def test_all_data_sources_failing_yields_degraded_brief(
        self, generator, data_client, llm_client
    ):
        data_client.get_recent_emails.side_effect = UpstreamError("bridge down", source="data_source")
        data_client.get_todays_events.side_effect = UpstreamError("bridge down", source="data_source")

        brief = await generator.produce("user-1", "user-1@example.com")

        assert "Email data is unavailable" in brief
        assert "Calendar data is unavailable" in brief
        assert "Limited functionality" in brief
        llm_client.chat.completions.create.assert_not_awaited()
        # Essential calls were retried up to the attempt limit
        assert data_client.get_recent_emails.await_count == 3
        assert data_client.get_todays_events.await_count == 3

    async def test_llm_failure_yields_degraded_brief_with_gathered_data(
        self, generator, llm_client
    ):
        llm_client.chat.completions.create.side_effect = RuntimeError("model overloaded")

        brief = await generator.produce("user-1", "user-1@example.com")

        assert "model overloaded" in brief
        assert "1 unread" in brief
        assert "Standup" in brief

    async def test_non_essential_failure_keeps_section(self, generator, data_client):
        recent = (datetime.now(UTC) - timedelta(minutes=5)).isoformat()

        async def emails(contact, limit=20, query=""):
            if query.startswith("is:unread"):
                return [{"subject": "Hello", "from": "a@example.com", "date": recent}]
            raise UpstreamError("label search failed", source="data_source")

        data_client.get_recent_emails.side_effect = emails
        now = datetime.now(UTC)

        summary = await generator.gather_email_data("user-1@example.com", "UTC", now)

        assert summary is not None
        assert summary.unread_count == 1
        assert summary.important_count == 0
        assert summary.vip_count == 0

    async def test_upcoming_events_exclude_today(self, generator, data_client):
        tomorrow = (datetime.now(UTC) + timedelta(days=2)).isoformat()
        today = datetime.now(UTC).isoformat()
        data_client.get_upcoming_events.return_value = [
            {"summary": "Later", "start": {"dateTime": tomorrow}},
            {"summary": "Today", "start": {"dateTime": today}},
        ]

        summary = await generator.gather_calendar_data(
            "user-1@example.com", "UTC", datetime.now(UTC)
        )

        assert [e["summary"] for e in summary.upcoming_events] == ["Later"]

    async def test_missing_contact_address_is_unavailable(self, generator, data_client):
        brief = await generator.produce("user-1", None)

        assert "Email data is unavailable" in brief
        data_client.get_recent_emails.assert_not_awaited()


class TestHelpers:
    def test_filter_by_period_keeps_window_only(self):
        start = datetime(2026, 10, 18, 22, 0, tzinfo=UTC)
        end = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        emails = [
            {"subject": "in", "date": "Mon, 19 Oct 2026 08:00:00 +0000"},
            {"subject": "before", "date": "Sun, 18 Oct 2026 12:00:00 +0000"},
            {"subject": "iso", "date": "2026-10-19T09:00:00Z"},
            {"subject": "garbage", "date": "yesterday-ish"},
            {"subject": "missing"},
        ]

        kept = filter_by_period(emails, start, end)

        assert [e["subject"] for e in kept] == ["in", "iso"]

    def test_briefing_data_marks_missing_sources(self):
        data = build_briefing_data(
            EmailSummary(unread_count=2), None, "Monday, October 19, 2026", "UTC"
        )

        assert "Unread emails: 2" in data
        assert f"CALENDAR DATA: {UNAVAILABLE_NOTICE}" in data


async def test_clear_cache_forces_regeneration(generator, llm_client):
    await generator.produce("user-1", "user-1@example.com")

    generator.clear_cache()
    await generator.produce("user-1", "user-1@example.com")

    assert llm_client.chat.completions.create.await_count == 2
