"""Tests for the firing pipeline."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from dailybrief.models.delivery_record import DeliverySource, DeliveryStatus
from dailybrief.services import delivery
from dailybrief.services.brief_dispatch import (
    DELIVERY_FAILED,
    MISSING_RECIPIENT,
    BriefDispatcher,
)
from dailybrief.services.dedup import ALREADY_SENT_TODAY, DedupGuard

pytestmark = pytest.mark.asyncio


@pytest.fixture
def deliver(monkeypatch) -> AsyncMock:
    mock = AsyncMock(return_value=True)
    monkeypatch.setattr(delivery, "deliver", mock)
    return mock


@pytest.fixture
def dispatcher(session_factory, mock_generator) -> BriefDispatcher:
    return BriefDispatcher(session_factory, mock_generator, DedupGuard(cooldown_seconds=3000))


async def _history(session_factory, user_id="user-1"):
    async with session_factory() as db:
        return await DedupGuard().recent_history(db, user_id)


class TestRunBriefForUser:
    async def test_success_records_and_delivers(
        self, dispatcher, deliver, mock_generator, make_entry, session_factory
    ):
        status = await dispatcher.run_brief_for_user(make_entry())

        assert status == DeliveryStatus.SUCCESS
        mock_generator.produce.assert_awaited_once_with(
            "user-1", "user-1@example.com", "America/New_York"
        )
        deliver.assert_awaited_once()
        assert deliver.await_args.args[0] == "U0RECIPIENT"

        records = await _history(session_factory)
        assert [(r.status, r.source) for r in records] == [
            (DeliveryStatus.SUCCESS, DeliverySource.TRIGGER)
        ]

    async def test_second_firing_same_day_is_skipped(
        self, dispatcher, deliver, make_entry, session_factory
    ):
        await dispatcher.run_brief_for_user(make_entry())

        status = await dispatcher.run_brief_for_user(make_entry(), source=DeliverySource.QUEUE)

        assert status == DeliveryStatus.SKIPPED
        assert deliver.await_count == 1
        records = await _history(session_factory)
        skipped = [r for r in records if r.status == DeliveryStatus.SKIPPED]
        assert len(skipped) == 1
        assert skipped[0].error_message == ALREADY_SENT_TODAY

    async def test_concurrent_firings_deliver_once(self, dispatcher, deliver, make_entry):
        statuses = await asyncio.gather(
            dispatcher.run_brief_for_user(make_entry()),
            dispatcher.run_brief_for_user(make_entry(), source=DeliverySource.QUEUE),
        )

        assert sorted(s.value for s in statuses) == ["skipped", "success"]
        assert deliver.await_count == 1

    async def test_missing_recipient_is_skipped(
        self, dispatcher, deliver, mock_generator, make_entry, session_factory
    ):
        status = await dispatcher.run_brief_for_user(make_entry(recipient_id=None))

        assert status == DeliveryStatus.SKIPPED
        mock_generator.produce.assert_not_awaited()
        deliver.assert_not_awaited()
        records = await _history(session_factory)
        assert records[0].error_message == MISSING_RECIPIENT

    async def test_delivery_failure_is_recorded(
        self, dispatcher, deliver, make_entry, session_factory
    ):
        deliver.return_value = False

        status = await dispatcher.run_brief_for_user(make_entry())

        assert status == DeliveryStatus.FAILED
        records = await _history(session_factory)
        assert records[0].status == DeliveryStatus.FAILED
        assert records[0].error_message == DELIVERY_FAILED

    async def test_generation_exception_is_recorded_not_raised(
        self, dispatcher, deliver, mock_generator, make_entry, session_factory
    ):
        mock_generator.produce.side_effect = RuntimeError("generator blew up")

        status = await dispatcher.run_brief_for_user(make_entry())

        assert status == DeliveryStatus.FAILED
        deliver.assert_not_awaited()
        records = await _history(session_factory)
        assert records[0].status == DeliveryStatus.FAILED
        assert "generator blew up" in records[0].error_message

    async def test_manual_firing_ignores_dedup(
        self, dispatcher, deliver, make_entry, session_factory
    ):
        await dispatcher.run_brief_for_user(make_entry())

        status = await dispatcher.run_brief_for_user(
            make_entry(), source=DeliverySource.MANUAL, enforce_dedup=False
        )

        assert status == DeliveryStatus.SUCCESS
        assert deliver.await_count == 2
