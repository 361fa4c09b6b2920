"""
Test Suite Configuration
"""
import itertools
import json
from datetime import date, datetime
from typing import AsyncGenerator, Dict, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cityatlas_etl.config import Settings
from cityatlas_etl.database.connection import build_session_factory, create_schema, unit_of_work
from cityatlas_etl.database.models import CityModel
from cityatlas_etl.database.repository import WarehouseRepository
from cityatlas_etl.records import AnalyticsEvent, City, DimCity, EventType, Metric, MetricType
from cityatlas_etl.transformation.dimensions import DimensionChangeSet, DimensionLoader


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for the pipeline"""
    return datetime(2025, 1, 15, 12, 0, 0)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def test_engine():
    """In-memory SQLite engine with the full schema"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_scope(session_factory):
    """Transactional scope shaped like get_db()"""

    def scope():
        return unit_of_work(session_factory)

    return scope


# =============================================================================
# SAMPLE DATA
# =============================================================================

@pytest.fixture
def cities() -> Dict[str, City]:
    """Source cities keyed by slug"""
    return {
        "new-york": City(
            id=1, slug="new-york", name="New York", state="NY", country="United States",
            country_code="US", population=8_336_817, gdp_per_capita=85_000.0,
            latitude=40.7128, longitude=-74.0060,
        ),
        "london": City(
            id=2, slug="london", name="London", country="United Kingdom",
            country_code="GB", population=8_982_000, gdp_per_capita=56_000.0,
            latitude=51.5074, longitude=-0.1278,
        ),
        "mumbai": City(
            id=3, slug="mumbai", name="Mumbai", state="Maharashtra", country="India",
            country_code="IN", population=20_411_000, gdp_per_capita=7_000.0,
            latitude=19.0760, longitude=72.8777,
        ),
    }


@pytest.fixture
async def seeded_cities(session_scope, cities) -> Dict[str, City]:
    """Source cities persisted to the cities table"""
    async with session_scope() as db:
        db.add_all([
            CityModel(
                id=c.id, slug=c.slug, name=c.name, state=c.state, country=c.country,
                country_code=c.country_code, population=c.population,
                gdp_per_capita=c.gdp_per_capita, latitude=c.latitude, longitude=c.longitude,
            )
            for c in cities.values()
        ])
    return cities


@pytest.fixture
async def dim_cities(session_scope, seeded_cities) -> Dict[str, DimCity]:
    """Initial dimension load valid from 2025-01-01, keyed by slug"""
    rows = DimensionLoader().build_initial_dim_city_load(list(seeded_cities.values()), today=date(2025, 1, 1))
    async with session_scope() as db:
        repo = WarehouseRepository(db)
        await repo.apply_dimension_changes(DimensionChangeSet(inserts=rows))
        current = await repo.find_current_dim_cities()
    return {row.city_slug: row for row in current}


@pytest.fixture
def make_metric(cities, now):
    """Factory for metric records with unique ids"""
    ids = itertools.count(1)

    def factory(
        city: Optional[str] = "new-york",
        metric_type: Optional[MetricType] = MetricType.AQI,
        value: Optional[float] = 42.0,
        recorded_at: Optional[datetime] = None,
        **kwargs,
    ) -> Metric:
        return Metric(
            id=kwargs.pop("id", next(ids)),
            city=cities[city] if city else None,
            metric_type=metric_type,
            value=value,
            recorded_at=recorded_at or now,
            **kwargs,
        )

    return factory


@pytest.fixture
def make_event(cities, now):
    """Factory for analytics event records"""
    ids = itertools.count(1)

    def factory(
        event_type: Optional[EventType] = EventType.PAGE_VIEW,
        city: Optional[str] = "new-york",
        timestamp: Optional[datetime] = None,
        user_id: Optional[str] = "user-1",
        session_id: Optional[str] = "session-1",
        duration: Optional[int] = None,
        metadata: Optional[str] = None,
    ) -> AnalyticsEvent:
        if duration is not None:
            metadata = json.dumps({"duration": duration})
        return AnalyticsEvent(
            id=next(ids),
            event_type=event_type,
            event_timestamp=timestamp or now,
            city=cities[city] if city else None,
            user_id=user_id,
            session_id=session_id,
            metadata=metadata,
        )

    return factory
