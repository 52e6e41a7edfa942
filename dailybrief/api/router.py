from fastapi import APIRouter

from dailybrief.api.briefs import router as briefs_router
from dailybrief.api.delivery import router as delivery_router
from dailybrief.api.queue import router as queue_router
from dailybrief.api.scheduler import router as scheduler_router

api_router = APIRouter()

api_router.include_router(scheduler_router, prefix="/api", tags=["scheduler"])
api_router.include_router(delivery_router, prefix="/api", tags=["delivery"])
api_router.include_router(briefs_router, prefix="/api", tags=["briefs"])
api_router.include_router(queue_router, prefix="/api", tags=["queue"])
