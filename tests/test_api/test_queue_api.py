"""Tests for queue inspection endpoints."""

from datetime import datetime

import pytest
from httpx import AsyncClient

from dailybrief.models.queue_job import QueueJob, QueueJobStatus

pytestmark = pytest.mark.asyncio


@pytest.fixture
def job_factory(db_session):
    async def _create(user_id="alice", status=QueueJobStatus.FAILED, minute=0):
        job = QueueJob(
            user_id=user_id,
            scheduled_at=datetime(2026, 10, 19, 12, minute),
            status=status,
            attempts=1,
            last_error="Brief delivery failed" if status == QueueJobStatus.FAILED else None,
        )
        db_session.add(job)
        await db_session.commit()
        return job

    return _create


class TestListJobs:
    async def test_filters_by_status(self, client: AsyncClient, job_factory):
        await job_factory(user_id="alice", status=QueueJobStatus.FAILED)
        await job_factory(user_id="bob", status=QueueJobStatus.COMPLETED)

        response = await client.get("/api/queue/jobs", params={"status": "failed"})

        assert response.status_code == 200
        data = response.json()
        assert [j["user_id"] for j in data] == ["alice"]
        assert data[0]["last_error"] == "Brief delivery failed"

    async def test_invalid_status_is_422(self, client: AsyncClient):
        response = await client.get("/api/queue/jobs", params={"status": "exploded"})

        assert response.status_code == 422


class TestRequeue:
    async def test_failed_job_goes_back_to_pending(self, client: AsyncClient, job_factory):
        job = await job_factory(status=QueueJobStatus.FAILED)

        response = await client.post(f"/api/queue/jobs/{job.id}/requeue")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    async def test_completed_job_is_409(self, client: AsyncClient, job_factory):
        job = await job_factory(status=QueueJobStatus.COMPLETED)

        response = await client.post(f"/api/queue/jobs/{job.id}/requeue")

        assert response.status_code == 409

    async def test_missing_job_is_404(self, client: AsyncClient):
        response = await client.post("/api/queue/jobs/9999/requeue")

        assert response.status_code == 404
