import os
import sys
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

# Load environment variables from .env file
load_dotenv()

from app.config import settings
from app.core.redis_client import CacheManager, get_cache_manager
from app.database import combined_metadata, get_db
from app.dependencies import get_clock, get_delivery_dispatcher
from app.main import app
from app.schemas.deliveries import DeliveryChannel
from app.schemas.patients import PatientCreate, PatientResponse
from app.services.appointment_service import AppointmentService, build_appointment_service
from app.services.delivery_service import DeliveryDispatcher
from app.services.patient_service import PatientService

metadata = combined_metadata()

# In-memory SQLite unless TEST_DATABASE_URL points at a PostgreSQL test database
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")

if TEST_DATABASE_URL.startswith("sqlite"):
    # One shared connection so every session sees the same in-memory database
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    # Additional safety: ensure we're not using production database
    if settings.database_url == TEST_DATABASE_URL:
        print("\n❌ CRITICAL ERROR: Test database URL is same as production database!")
        print("This would DROP all production data during tests.")
        sys.exit(1)

    if not TEST_DATABASE_URL.startswith("postgresql+asyncpg://"):
        TEST_DATABASE_URL = TEST_DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")

    # Use NullPool to avoid event loop issues with remote databases
    test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

# Create test session factory
TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Tuesday; every scenario books relative to this instant
CLINIC_NOW = datetime(2025, 7, 1, 8, 0)


class FrozenClock:
    """Clinic clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at CLINIC_NOW."""
    return FrozenClock(CLINIC_NOW)


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis client that always misses."""
    redis = MagicMock()
    redis.get.return_value = None
    redis.keys.return_value = []
    redis.delete.return_value = 0
    return redis


@pytest.fixture
def cache_manager(mock_redis: MagicMock) -> CacheManager:
    """Cache manager over the mocked Redis client."""
    return CacheManager(redis_client=mock_redis)


@pytest.fixture
def adapters() -> dict[DeliveryChannel, AsyncMock]:
    """Channel adapters that accept every message."""
    return {channel: AsyncMock() for channel in DeliveryChannel}


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    # Create tables
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    # Create session
    async with TestSessionLocal() as session:
        yield session

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    cache_manager: CacheManager,
    clock: FrozenClock,
    adapters: dict[DeliveryChannel, AsyncMock],
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_manager] = lambda: cache_manager
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_delivery_dispatcher] = lambda: DeliveryDispatcher(
        db_session, adapters, clock=clock
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def appointment_service(db_session: AsyncSession, clock: FrozenClock) -> AppointmentService:
    """Appointment service with reminders wired and no cache."""
    return build_appointment_service(db_session, clock=clock)


@pytest.fixture
def dispatcher(
    db_session: AsyncSession,
    clock: FrozenClock,
    adapters: dict[DeliveryChannel, AsyncMock],
) -> DeliveryDispatcher:
    """Dispatcher over the mocked channel adapters."""
    return DeliveryDispatcher(db_session, adapters, clock=clock)


@pytest_asyncio.fixture
async def patient(db_session: AsyncSession) -> PatientResponse:
    """Patient reachable by email."""
    return await PatientService(db_session).create_patient(
        PatientCreate(
            name="Hanako Sato",
            email="hanako@example.com",
            phone="+819012345678",
            preferred_channel=DeliveryChannel.EMAIL,
        )
    )


@pytest_asyncio.fixture
async def other_patient(db_session: AsyncSession) -> PatientResponse:
    """Second patient, reachable by SMS only."""
    return await PatientService(db_session).create_patient(
        PatientCreate(name="Taro Suzuki", phone="+819087654321")
    )


@pytest.fixture
def sample_appointment_data(patient: PatientResponse) -> dict:
    """Sample booking payload for testing."""
    return {
        "patient_id": str(patient.id),
        "scheduled_at": "2025-07-10T10:00:00",
        "duration_minutes": 60,
        "treatment_type": "Cleaning",
        "notes": "First visit",
    }
