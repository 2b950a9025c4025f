"""
Shared pytest configuration for pickup tests.

Service tests run against MemoryPersistence with a fixed clock. SQL adapter
tests use TEST_DATABASE_URL when set, otherwise a throwaway SQLite file.

SAFETY: SQL tests REFUSE to run against any database whose name does not
contain the substring "test", because tables are dropped after each test.
"""

import os

# Rate limiting is disabled for the test run; must be set before routes import
os.environ.setdefault("ENV", "test")

from datetime import datetime, timedelta
from typing import Dict, Optional

import pytest
import pytest_asyncio
import pytz
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from pickup.database.db import Base
from pickup.database.memory_persistence import MemoryPersistence
from pickup.models.domain import GameLocation, PlayerProfile, Sport
from pickup.services.game_service import GameLifecycleManager
from pickup.services.position_service import PositionProvider
from pickup.utils.geo_utils import Coordinates

# Fixed "now" for every service test
NOW = datetime(2026, 6, 1, 12, 0, tzinfo=pytz.UTC)

# Game location and positions relative to it
COURT = GameLocation(latitude=40.7128, longitude=-74.0060, address="1 Court St", name="Rucker Park")
NEAR_COURT = Coordinates(40.7130, -74.0062)  # ~30m away
FAR_FROM_COURT = Coordinates(40.7228, -74.0060)  # ~1.1km away


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class StaticPositionProvider(PositionProvider):
    """Returns a configured position per player (or a default)."""

    def __init__(self, default: Optional[Coordinates] = None):
        self.default = default
        self.positions: Dict[str, Coordinates] = {}

    async def current_position(self, player_id: str) -> Coordinates:
        return self.positions.get(player_id, self.default)


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def persistence():
    return MemoryPersistence()


@pytest.fixture
def positions():
    return StaticPositionProvider(default=NEAR_COURT)


@pytest.fixture
def background_errors():
    """(game_id, error) pairs reported by background recurrence spawns."""
    return []


@pytest.fixture
def manager(persistence, clock, positions, background_errors):
    return GameLifecycleManager(
        persistence,
        clock=clock,
        position_provider=positions,
        on_background_error=lambda game_id, error: background_errors.append((game_id, error)),
    )


@pytest.fixture
def create_player(persistence):
    """Factory: store a profile and return it."""

    async def _create(
        player_id: str,
        rating: int = 1200,
        reliability: int = 100,
        sport: Sport = Sport.BASKETBALL,
    ) -> PlayerProfile:
        profile = PlayerProfile(
            id=player_id,
            display_name=player_id.title(),
            reliability_score=reliability,
        )
        profile.ratings[sport] = rating
        async with persistence.transaction() as tx:
            tx.add_player(profile)
        return profile

    return _create


@pytest.fixture
def create_game(manager, clock):
    """Factory: create a basketball game at COURT starting two hours from now."""

    async def _create(host_id: str = "host", **overrides):
        params = dict(
            sport=Sport.BASKETBALL,
            location=COURT,
            start_time=clock.now() + timedelta(hours=2),
            duration_minutes=60,
            max_players=10,
            skill_level="casual",
        )
        params.update(overrides)
        return await manager.create_game(host_id, **params)

    return _create


# ---------------------------------------------------------------------------
# SQL fixtures
# ---------------------------------------------------------------------------

def resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL, refusing any database not named *test*."""
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'pickup_test.db'}"

    # Database name is the last path segment (file name for SQLite)
    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Fix: set TEST_DATABASE_URL to a test database, e.g.:\n"
            f"    export TEST_DATABASE_URL=postgresql+asyncpg://.../pickup_test\n"
            f"{'=' * 70}"
        )
    return url


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a test database engine with all tables; drops them afterwards."""
    engine = create_async_engine(resolve_test_database_url(tmp_path), echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
