"""Tests for delivery endpoints."""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from dailybrief.api import delivery as delivery_api
from dailybrief.models.delivery_record import DeliverySource, DeliveryStatus

pytestmark = pytest.mark.asyncio


class TestWebhookTest:
    async def test_success(self, client: AsyncClient, monkeypatch):
        send = AsyncMock(return_value=True)
        monkeypatch.setattr(delivery_api, "send_test_message", send)

        response = await client.post("/api/delivery/test", json={"recipient_id": "U123"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        send.assert_awaited_once_with("U123")

    async def test_failure_is_502(self, client: AsyncClient, monkeypatch):
        monkeypatch.setattr(delivery_api, "send_test_message", AsyncMock(return_value=False))

        response = await client.post("/api/delivery/test", json={"recipient_id": "U123"})

        assert response.status_code == 502

    async def test_recipient_is_required(self, client: AsyncClient):
        response = await client.post("/api/delivery/test", json={})

        assert response.status_code == 422


class TestDeliveryHistory:
    async def test_lists_records_for_user(self, client: AsyncClient, delivery_record_factory):
        await delivery_record_factory(user_id="alice")
        await delivery_record_factory(
            user_id="alice",
            status=DeliveryStatus.SKIPPED,
            source=DeliverySource.QUEUE,
            error_message="already_sent_today",
        )
        await delivery_record_factory(user_id="bob")

        response = await client.get("/api/deliveries", params={"user_id": "alice"})

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 2
        assert {r["status"] for r in data} == {"success", "skipped"}
        assert all(r["user_id"] == "alice" for r in data)

    async def test_limit_is_bounded(self, client: AsyncClient):
        response = await client.get("/api/deliveries", params={"limit": 0})

        assert response.status_code == 422
