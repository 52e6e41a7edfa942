from typing import Annotated

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from dailybrief.config import Settings, get_settings
from dailybrief.core.database import get_db
from dailybrief.core.scheduler import BriefScheduler, get_scheduler
from dailybrief.services.brief_generator import BriefGenerator, get_brief_generator

# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Generator = Annotated[BriefGenerator, Depends(get_brief_generator)]


def get_running_scheduler() -> BriefScheduler:
    """The process scheduler, or 503 if it is not running."""
    brief_scheduler = get_scheduler()
    if brief_scheduler is None or not brief_scheduler.running:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler not running",
        )
    return brief_scheduler


RunningScheduler = Annotated[BriefScheduler, Depends(get_running_scheduler)]
