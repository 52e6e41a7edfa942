"""Brief preview endpoint."""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from dailybrief.dependencies import DBSession, Generator
from dailybrief.services.registry import get_entry

router = APIRouter()


class BriefPreviewResponse(BaseModel):
    user_id: str
    timezone: str | None
    content: str


@router.get("/briefs/{user_id}/preview", response_model=BriefPreviewResponse)
async def preview_brief(user_id: str, db: DBSession, generator: Generator) -> BriefPreviewResponse:
    """
    Generate a user's brief without delivering or recording it.

    Shares the generator cache, so a preview followed by a send within the
    cache TTL costs one generation.
    """
    entry = await get_entry(db, user_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {user_id} not found in active users",
        )

    content = await generator.produce(entry.user_id, entry.contact_address, entry.timezone)
    return BriefPreviewResponse(user_id=user_id, timezone=entry.timezone, content=content)
