"""Fallback job queue inspection endpoints."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from dailybrief.dependencies import DBSession
from dailybrief.models.queue_job import QueueJob, QueueJobStatus
from dailybrief.services.job_queue import list_jobs, requeue_job

router = APIRouter()


class QueueJobResponse(BaseModel):
    """Response model for a queue job."""

    id: int
    user_id: str
    scheduled_at: datetime
    status: str
    attempts: int
    last_error: str | None
    updated_at: datetime

    @classmethod
    def from_job(cls, job: QueueJob) -> "QueueJobResponse":
        return cls(
            id=job.id,
            user_id=job.user_id,
            scheduled_at=job.scheduled_at,
            status=job.status.value,
            attempts=job.attempts,
            last_error=job.last_error,
            updated_at=job.updated_at,
        )


@router.get("/queue/jobs", response_model=list[QueueJobResponse])
async def get_queue_jobs(
    db: DBSession,
    job_status: QueueJobStatus | None = Query(default=None, alias="status"),
    user_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[QueueJobResponse]:
    """Queue jobs, newest first."""
    jobs = await list_jobs(db, status=job_status, user_id=user_id, limit=limit)
    return [QueueJobResponse.from_job(job) for job in jobs]


@router.post("/queue/jobs/{job_id}/requeue", response_model=QueueJobResponse)
async def requeue(job_id: int, db: DBSession) -> QueueJobResponse:
    """Move a failed job back to pending."""
    try:
        job = await requeue_job(db, job_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return QueueJobResponse.from_job(job)
