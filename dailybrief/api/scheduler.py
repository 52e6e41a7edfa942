"""Scheduler control and monitoring endpoints."""

from typing import Any

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from dailybrief.core.exceptions import ConfigurationError, SynchronizationError, UserNotFoundError
from dailybrief.core.scheduler import get_scheduler
from dailybrief.dependencies import RunningScheduler
from dailybrief.schemas.schedule import TriggerInfo

router = APIRouter()


class SyncResponse(BaseModel):
    """Response model for a manual sync request."""

    status: str  # "completed" or "dropped"
    installed: int = 0
    unchanged: int = 0
    cancelled: int = 0
    skipped: int = 0
    active_triggers: int = 0


class TriggerOnceResponse(BaseModel):
    """Response model for a manual brief."""

    user_id: str
    success: bool
    message: str


@router.get("/scheduler/status")
async def scheduler_status() -> dict[str, Any]:
    """Current scheduler state, last sync and generator counters."""
    brief_scheduler = get_scheduler()
    if brief_scheduler is None:
        return {"running": False, "active_triggers": 0, "last_sync": None}
    return brief_scheduler.status()


@router.get("/scheduler/triggers", response_model=list[TriggerInfo])
async def list_triggers(brief_scheduler: RunningScheduler) -> list[TriggerInfo]:
    """Active per-user triggers with their next local fire time."""
    return await brief_scheduler.list_triggers()


@router.post("/scheduler/sync", response_model=SyncResponse)
async def sync_now(brief_scheduler: RunningScheduler) -> SyncResponse:
    """
    Reconcile triggers with the registry now.

    A request arriving while a sync runs is dropped, not queued.
    """
    try:
        result = await brief_scheduler.sync_now()
    except SynchronizationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e

    if result is None:
        return SyncResponse(status="dropped", active_triggers=len(brief_scheduler.registry))

    return SyncResponse(
        status="completed",
        installed=result.installed,
        unchanged=result.unchanged,
        cancelled=result.cancelled,
        skipped=result.skipped,
        active_triggers=result.active_triggers,
    )


@router.post("/scheduler/trigger/{user_id}", response_model=TriggerOnceResponse)
async def trigger_once(user_id: str, brief_scheduler: RunningScheduler) -> TriggerOnceResponse:
    """Generate and deliver a brief for one user immediately, ignoring dedup."""
    try:
        success = await brief_scheduler.trigger_once(user_id)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return TriggerOnceResponse(
        user_id=user_id,
        success=success,
        message=(
            f"Test brief sent successfully for user {user_id}"
            if success
            else f"Failed to send test brief for user {user_id}"
        ),
    )
