from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from dailybrief.api.router import api_router
from dailybrief.config import get_settings
from dailybrief.core.logging import get_logger, setup_logging
from dailybrief.core.scheduler import get_scheduler, start_scheduler, stop_scheduler
from dailybrief.dependencies import AppSettings, DBSession
from dailybrief.services.registry import check_connection

logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    await start_scheduler()
    yield
    # Shutdown
    await stop_scheduler()


app = FastAPI(
    title="Daily Brief Scheduler",
    description="Per-user daily brief triggers, generation and delivery",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

app.include_router(api_router)


@app.get("/health")
async def health_check(db: DBSession, app_settings: AppSettings) -> JSONResponse:
    """Health check for load balancers: 200 healthy, 503 unhealthy."""
    brief_scheduler = get_scheduler()
    scheduler_running = brief_scheduler is not None and brief_scheduler.running

    registry_ok = await check_connection(db)

    scheduler_ok = scheduler_running or not app_settings.scheduler_enabled
    healthy = scheduler_ok and registry_ok

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "scheduler": {
            "running": scheduler_running,
            "active_triggers": len(brief_scheduler.registry) if brief_scheduler else 0,
            "uptime_seconds": (
                brief_scheduler.status()["uptime_seconds"] if brief_scheduler else 0.0
            ),
        },
        "registry": "connected" if registry_ok else "disconnected",
        "integrations": {
            "data_source": bool(app_settings.data_source_url),
            "delivery_webhook": bool(app_settings.delivery_webhook_url),
            "llm": bool(app_settings.openai_api_key),
        },
    }

    if not healthy:
        logger.bind(scheduler_running=scheduler_running, registry_ok=registry_ok).warning(
            "health_check_unhealthy"
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )
