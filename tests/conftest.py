import os
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Load environment variables from .env file
load_dotenv()

from practice_scheduler.config import Settings
from practice_scheduler.core.clock import FixedClock
from practice_scheduler.core.locks import InMemoryLockManager
from practice_scheduler.dependencies import get_booking_service
from practice_scheduler.main import app
from practice_scheduler.models import metadata
from practice_scheduler.repositories.appointment_repository import (
    InMemoryAppointmentRepository,
    SQLAppointmentRepository,
)
from practice_scheduler.schemas.appointments import AppointmentCreate, AppointmentSource, ResourceType
from practice_scheduler.services.booking_service import BookingService
from practice_scheduler.services.event_service import EventPublisher
from practice_scheduler.services.resource_directory import StaticResourceDirectory

# Monday 08:00 UTC; every scenario is expressed relative to this instant.
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

ACTOR_ID = UUID("00000000-0000-4000-8000-000000000001")

# Set TEST_DATABASE_URL to run the SQL tests against PostgreSQL instead of SQLite
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def clock() -> FixedClock:
    """Clock frozen at NOW."""
    return FixedClock(NOW)


@pytest.fixture
def scheduler_settings() -> Settings:
    """Scheduling policy with the production defaults, independent of the environment."""
    return Settings(
        min_lead_time_hours=2.0,
        min_duration_minutes=15,
        max_duration_minutes=480,
        default_duration_minutes=60,
        default_timezone="Europe/Madrid",
        auto_confirm_sources_str="admin",
        enforce_patient_overlap=False,
        version_retry_attempts=3,
        lock_backend="memory",
        lock_timeout_seconds=2.0,
    )


@pytest.fixture
def resources() -> dict[str, UUID]:
    """IDs of the practice's patients, professionals, rooms and services."""
    return {
        "patient": uuid4(),
        "other_patient": uuid4(),
        "professional": uuid4(),
        "other_professional": uuid4(),
        "room": uuid4(),
        "other_room": uuid4(),
        "service": uuid4(),
        "short_service": uuid4(),
    }


@pytest.fixture
def directory(resources: dict[str, UUID]) -> StaticResourceDirectory:
    """Directory knowing every resource in ``resources``."""
    directory = StaticResourceDirectory()
    for key in ("patient", "other_patient"):
        directory.register(ResourceType.PATIENT, resources[key])
    for key in ("professional", "other_professional"):
        directory.register(ResourceType.PROFESSIONAL, resources[key])
    for key in ("room", "other_room"):
        directory.register(ResourceType.ROOM, resources[key])
    directory.register_service(resources["service"])
    directory.register_service(resources["short_service"], duration_minutes=30)
    return directory


@pytest.fixture
def repository() -> InMemoryAppointmentRepository:
    return InMemoryAppointmentRepository()


@pytest.fixture
def events() -> EventPublisher:
    return EventPublisher()


@pytest.fixture
def booking_service(
    repository: InMemoryAppointmentRepository,
    directory: StaticResourceDirectory,
    events: EventPublisher,
    clock: FixedClock,
    scheduler_settings: Settings,
) -> BookingService:
    """Booking service over an in-memory repository."""
    return BookingService(
        repository=repository,
        directory=directory,
        locks=InMemoryLockManager(timeout=scheduler_settings.lock_timeout_seconds),
        events=events,
        clock=clock,
        config=scheduler_settings,
    )


@pytest.fixture
def appointment_data(resources: dict[str, UUID]) -> Callable[..., AppointmentCreate]:
    """Factory for creation requests; defaults to one hour tomorrow at 10:00 UTC."""

    def make(
        start_at: datetime | None = None,
        minutes: int | None = 60,
        **overrides,
    ) -> AppointmentCreate:
        start = start_at or NOW + timedelta(days=1, hours=2)
        values = {
            "patient_id": resources["patient"],
            "professional_id": resources["professional"],
            "service_id": resources["service"],
            "room_id": resources["room"],
            "start_at": start,
            "end_at": start + timedelta(minutes=minutes) if minutes else None,
            "source": AppointmentSource.ADMIN,
        }
        values.update(overrides)
        return AppointmentCreate(**values)

    return make


@pytest_asyncio.fixture
async def db_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a fresh schema; each session gets its own connection."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}"
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    # NullPool avoids sharing connections across event loops
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session on a fresh schema."""
    async with db_session_factory() as session:
        yield session


@pytest.fixture
def sql_repository(db_session: AsyncSession) -> SQLAppointmentRepository:
    return SQLAppointmentRepository(db_session)


@pytest_asyncio.fixture
async def client(
    sql_repository: SQLAppointmentRepository,
    directory: StaticResourceDirectory,
    events: EventPublisher,
    clock: FixedClock,
    scheduler_settings: Settings,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client backed by the SQL repository."""

    async def override_get_booking_service() -> BookingService:
        return BookingService(
            repository=sql_repository,
            directory=directory,
            events=events,
            clock=clock,
            config=scheduler_settings,
        )

    app.dependency_overrides[get_booking_service] = override_get_booking_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def actor_headers() -> dict:
    """Headers identifying the acting user."""
    return {"X-Actor-Id": str(ACTOR_ID)}
