"""Delivery history and webhook test endpoints."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from dailybrief.dependencies import DBSession
from dailybrief.services.dedup import DedupGuard
from dailybrief.services.delivery import send_test_message

router = APIRouter()


class TestDeliveryRequest(BaseModel):
    """Request body for a webhook test message."""

    recipient_id: str


class TestDeliveryResponse(BaseModel):
    success: bool
    message: str


class DeliveryRecordResponse(BaseModel):
    """Response model for a delivery record."""

    id: int
    user_id: str
    created_at: datetime
    status: str
    source: str
    error_message: str | None


@router.post("/delivery/test", response_model=TestDeliveryResponse)
async def test_delivery(request: TestDeliveryRequest) -> TestDeliveryResponse:
    """Send the configured test message to a recipient through the webhook."""
    success = await send_test_message(request.recipient_id)
    if not success:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to send test message",
        )
    return TestDeliveryResponse(success=True, message="Test message sent successfully")


@router.get("/deliveries", response_model=list[DeliveryRecordResponse])
async def list_deliveries(
    db: DBSession,
    user_id: str | None = Query(default=None, description="Filter by user ID"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[DeliveryRecordResponse]:
    """Recent delivery records, newest first."""
    records = await DedupGuard().recent_history(db, user_id=user_id, limit=limit)
    return [
        DeliveryRecordResponse(
            id=r.id,
            user_id=r.user_id,
            created_at=r.created_at,
            status=r.status.value,
            source=r.source.value,
            error_message=r.error_message,
        )
        for r in records
    ]
