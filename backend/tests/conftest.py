"""Shared test infrastructure for the RideRescue test suite.

Provides:
- clock: controllable UTC clock shared by the store, reconciler and coordinator
- engine / session_factory: file-backed async SQLite per test (separate
  connections, so conditional writes really race)
- store: SqlPersistence wired to a fresh ChangeFeed
- settings: Settings with the .env file ignored
- make_emergency / make_profile: row factories
- north_of: coordinate helper for distance-based fixtures
"""

import math
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from riderescue.infra.database import Base
import riderescue.domain.models  # noqa: F401

from riderescue.app.config import Settings
from riderescue.domain.enums import EmergencyStatus, ServiceCategory
from riderescue.domain.models import Emergency
from riderescue.domain.schemas import EmergencyRow, ProfileRow
from riderescue.infra.change_feed import ChangeFeed
from riderescue.infra.store import SqlPersistence
from riderescue.services.geo import EARTH_RADIUS_KM, Coordinates
from riderescue.services.visibility_gate import VisibilityPolicy

# Manila city hall; all fixtures are placed relative to it
BASE = Coordinates(14.5995, 120.9842)
KM_PER_DEGREE_LAT = EARTH_RADIUS_KM * math.pi / 180.0


def north_of(point: Coordinates, km: float) -> Coordinates:
    """Point *km* due north of *point* (exact along a meridian)."""
    return Coordinates(point.lat + km / KM_PER_DEGREE_LAT, point.lon)


class FakeClock:
    """Callable clock that advances 1 ms per reading so write versions stay ordered."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(milliseconds=1)
        return self.current

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.current += timedelta(minutes=minutes, seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(_env_file=None, google_maps_api_key="", refresh_interval_seconds=3600)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    """File-backed async SQLite engine with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'riderescue-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory, clock):
    return SqlPersistence(session_factory, ChangeFeed(), VisibilityPolicy(), now=clock)


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_emergency(session_factory, clock):
    """Factory that inserts an Emergency row directly (no change event).

    Usage:
        row = await make_emergency(at=north_of(BASE, 1.2), minutes_ago=3)
    """
    async def _factory(
        at: Coordinates = BASE,
        minutes_ago: float = 0,
        category: ServiceCategory = ServiceCategory.REPAIR,
        status: EmergencyStatus = EmergencyStatus.WAITING,
        user_id: str = "reporter-1",
        accepted_by: str = None,
    ) -> EmergencyRow:
        now = clock()
        emergency = Emergency(
            emergency_id=str(uuid.uuid4()),
            user_id=user_id,
            vehicle_type="Motorcycle",
            breakdown_cause="Flat tire",
            attachments=[],
            service_category=category.value,
            emergency_status=status.value,
            latitude=at.lat,
            longitude=at.lon,
            created_at=now - timedelta(minutes=minutes_ago),
            accepted_by=accepted_by,
            updated_at=now,
        )
        async with session_factory() as session:
            session.add(emergency)
            await session.commit()
            return EmergencyRow.model_validate(emergency)

    return _factory


@pytest.fixture
def make_profile(store):
    async def _factory(user_id: str = "reporter-1", full_name: str = "Juan Dela Cruz", photo_url: str = None):
        return await store.save_profile(
            ProfileRow(user_id=user_id, full_name=full_name, photo_url=photo_url)
        )

    return _factory
