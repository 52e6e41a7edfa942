"""
Pytest configuration and fixtures for daily brief tests.

Provides:
- Async test database with SQLite
- Test client for API testing
- Factory fixtures for registry rows and delivery records
- A BriefScheduler wired to a mocked APScheduler
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dailybrief.core.database import get_db
from dailybrief.core.datetime_utils import utc_now
from dailybrief.main import app
from dailybrief.models import Base
from dailybrief.models.delivery_record import DeliveryRecord, DeliverySource, DeliveryStatus
from dailybrief.models.user_preference import UserPreference
from dailybrief.schemas.schedule import UserScheduleEntry
from dailybrief.services.brief_generator import BriefGenerator, reset_brief_generator

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Sessionmaker bound to the test engine, for code that opens its own sessions."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database override."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_generator():
    """Each test starts with an empty shared generator cache."""
    reset_brief_generator()
    yield
    reset_brief_generator()


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def preference_factory(db_session: AsyncSession):
    """Factory for creating committed registry rows."""

    async def _create_preference(
        user_id: str | None = None,
        timezone: str | None = "America/New_York",
        delivery_time: str | None = "08:00",
        recipient_id: str | None = "U0RECIPIENT",
        contact_address: str | None = None,
        is_active: bool = True,
    ) -> UserPreference:
        if user_id is None:
            user_id = f"user-{uuid.uuid4().hex[:8]}"
        if contact_address is None:
            contact_address = f"{user_id}@example.com"

        preference = UserPreference(
            user_id=user_id,
            timezone=timezone,
            delivery_time=delivery_time,
            recipient_id=recipient_id,
            contact_address=contact_address,
            is_active=is_active,
        )
        db_session.add(preference)
        await db_session.commit()
        return preference

    return _create_preference


@pytest_asyncio.fixture
async def delivery_record_factory(db_session: AsyncSession):
    """Factory for creating committed delivery records."""

    async def _create_record(
        user_id: str = "user-1",
        status: DeliveryStatus = DeliveryStatus.SUCCESS,
        source: DeliverySource = DeliverySource.TRIGGER,
        created_at: datetime | None = None,
        error_message: str | None = None,
    ) -> DeliveryRecord:
        record = DeliveryRecord(
            user_id=user_id,
            status=status,
            source=source,
            created_at=created_at or utc_now(),
            error_message=error_message,
        )
        db_session.add(record)
        await db_session.commit()
        return record

    return _create_record


# ============================================================================
# In-Memory Test Helpers (no DB)
# ============================================================================


@pytest.fixture
def make_entry():
    """Factory for in-memory UserScheduleEntry snapshots."""

    def _make(
        user_id: str = "user-1",
        timezone: str | None = "America/New_York",
        delivery_time_local: str | None = "08:00",
        recipient_id: str | None = "U0RECIPIENT",
        contact_address: str | None = "user-1@example.com",
    ) -> UserScheduleEntry:
        return UserScheduleEntry(
            user_id=user_id,
            timezone=timezone,
            delivery_time_local=delivery_time_local,
            recipient_id=recipient_id,
            contact_address=contact_address,
        )

    return _make


# ============================================================================
# Mock Fixtures
# ============================================================================


@pytest.fixture
def mock_generator() -> MagicMock:
    """BriefGenerator stand-in whose produce() returns a fixed brief."""
    generator = MagicMock(spec=BriefGenerator)
    generator.produce = AsyncMock(return_value="📋 *Daily Brief - test*\n\nAll clear.")
    generator.cache_size.return_value = 0
    generator.in_flight_count.return_value = 0
    return generator


@pytest.fixture
def mock_async_scheduler() -> AsyncMock:
    """APScheduler AsyncScheduler stand-in that records schedule calls."""
    scheduler = AsyncMock()
    scheduler.get_schedules.return_value = []
    return scheduler


@pytest_asyncio.fixture
async def brief_scheduler(session_factory, mock_generator, mock_async_scheduler, monkeypatch):
    """A running BriefScheduler installed as the process scheduler."""
    from dailybrief.core import scheduler as scheduler_module
    from dailybrief.core.scheduler import BriefScheduler

    instance = BriefScheduler(
        session_factory=session_factory,
        generator=mock_generator,
        scheduler=mock_async_scheduler,
    )
    instance.running = True
    instance.started_at = utc_now()
    monkeypatch.setattr(scheduler_module, "_instance", instance)
    yield instance
    instance.running = False
