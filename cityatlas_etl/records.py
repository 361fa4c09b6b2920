"""
Pipeline Record Types

Plain value types flowing through the ETL: source records (cities, metrics,
analytics events), the SCD2 city dimension row and the two fact rows.

Source records are detached from the ORM so that cleaning (value clamping,
metadata nulling) never writes back into the source tables.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every datetime in the pipeline"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# Sentinel valid_to for current dimension rows
FOREVER = date(9999, 12, 31)

GLOBAL_GRAIN = "global"


def new_batch_id(prefix: str = "ETL", now: Optional[datetime] = None) -> str:
    """Lineage tag such as ETL_20250115_020000_000123"""
    return f"{prefix}_{(now or utcnow()).strftime('%Y%m%d_%H%M%S_%f')}"


# =============================================================================
# ENUMERATIONS
# =============================================================================

class MetricType(str, Enum):
    """City metric types"""
    AQI = "AQI"
    CARBON_EMISSIONS = "CARBON_EMISSIONS"
    WATER_QUALITY = "WATER_QUALITY"
    UNEMPLOYMENT_RATE = "UNEMPLOYMENT_RATE"
    GDP_PER_CAPITA = "GDP_PER_CAPITA"
    COST_OF_LIVING = "COST_OF_LIVING"
    AVERAGE_SALARY = "AVERAGE_SALARY"
    POPULATION = "POPULATION"
    POPULATION_GROWTH = "POPULATION_GROWTH"
    MEDIAN_AGE = "MEDIAN_AGE"
    TRANSIT_COVERAGE = "TRANSIT_COVERAGE"
    INTERNET_SPEED = "INTERNET_SPEED"
    HOUSING_AFFORDABILITY = "HOUSING_AFFORDABILITY"
    GRADUATION_RATE = "GRADUATION_RATE"
    UNIVERSITIES_COUNT = "UNIVERSITIES_COUNT"
    CRIME_RATE = "CRIME_RATE"
    SAFETY_INDEX = "SAFETY_INDEX"


class EventType(str, Enum):
    """User-behaviour and system event types"""
    CITY_VIEW = "CITY_VIEW"
    PAGE_VIEW = "PAGE_VIEW"
    ANALYTICS_VIEW = "ANALYTICS_VIEW"
    SEARCH = "SEARCH"
    COMPARISON = "COMPARISON"
    BOOKMARK = "BOOKMARK"
    DATA_SYNC = "DATA_SYNC"
    METRICS_UPDATE = "METRICS_UPDATE"
    AI_SUMMARY_GENERATED = "AI_SUMMARY_GENERATED"
    API_REQUEST = "API_REQUEST"
    API_ERROR = "API_ERROR"
    BACKGROUND_JOB = "BACKGROUND_JOB"
    CACHE_INVALIDATION = "CACHE_INVALIDATION"

    @classmethod
    def from_stream_name(cls, name: str) -> "EventType":
        """
        Resolve an event type name as published on the analytics topics.

        Frontend events use their own names (CITY_SEARCHED, ...); those map
        onto the warehouse event types. Raises ValueError for unknown names.
        """
        key = name.strip().upper()
        if key in STREAM_EVENT_ALIASES:
            return STREAM_EVENT_ALIASES[key]
        return cls(key)


STREAM_EVENT_ALIASES = {
    "CITY_SEARCHED": EventType.SEARCH,
    "SECTION_VIEWED": EventType.PAGE_VIEW,
    "TIME_SPENT_ON_SECTION": EventType.ANALYTICS_VIEW,
}


class CitySizeCategory(str, Enum):
    """Population-based size bucket"""
    SMALL = "SMALL"
    MEDIUM = "MEDIUM"
    LARGE = "LARGE"
    MEGA = "MEGA"


class GdpTier(str, Enum):
    """GDP per capita bucket"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# =============================================================================
# SOURCE RECORDS
# =============================================================================

@dataclass(frozen=True)
class City:
    """Source city row"""
    id: Optional[int]
    slug: str
    name: str
    state: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    population: Optional[int] = None
    gdp_per_capita: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class Metric:
    """
    A single measurement for a city.

    ``value`` may be rewritten by the cleaner when clamping, in which case
    ``adjusted`` is set.
    """
    city: Optional[City]
    metric_type: Optional[MetricType]
    value: Optional[float]
    recorded_at: Optional[datetime]
    id: Optional[int] = None
    unit: Optional[str] = None
    data_source: Optional[str] = None
    adjusted: bool = False

    @property
    def key(self) -> int:
        """Identity used for outlier bookkeeping"""
        return self.id if self.id is not None else id(self)

    @property
    def city_id(self) -> Optional[int]:
        return self.city.id if self.city else None


@dataclass
class AnalyticsEvent:
    """A user-behaviour event from the source table"""
    event_type: Optional[EventType]
    event_timestamp: Optional[datetime]
    city: Optional[City] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    value: Optional[float] = None
    metadata: Optional[str] = None
    id: Optional[int] = None

    @property
    def city_id(self) -> Optional[int]:
        return self.city.id if self.city else None


# =============================================================================
# DIMENSION AND FACT ROWS
# =============================================================================

@dataclass(frozen=True)
class DimCity:
    """City dimension row (SCD Type 2)"""
    city_slug: str
    city_name: str
    valid_from: date
    valid_to: date = FOREVER
    is_current: bool = True
    id: Optional[int] = None
    source_city_id: Optional[int] = None
    state: Optional[str] = None
    country: Optional[str] = None
    population: Optional[int] = None
    gdp_per_capita: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    city_size_category: Optional[CitySizeCategory] = None
    region: Optional[str] = None
    gdp_tier: Optional[GdpTier] = None


@dataclass(frozen=True)
class FactCityMetrics:
    """Grain: city x metric type x date"""
    dim_city_id: int
    metric_date: date
    metric_type: MetricType
    metric_value: float
    batch_id: str
    metric_value_previous: Optional[float] = None
    metric_value_delta: Optional[float] = None
    normalized_value: Optional[float] = None
    normalization_method: Optional[str] = None
    percentile_rank: Optional[float] = None
    unit: Optional[str] = None
    data_quality_score: int = 100
    data_source: Optional[str] = None


@dataclass(frozen=True)
class FactUserEventsDaily:
    """
    Grain: city x event type x date.

    ``dim_city_id`` is None for the global grain. Streaming rows carry
    ``city_slug`` until the loader resolves it to a dimension key.
    """
    event_date: date
    event_type: EventType
    batch_id: str
    dim_city_id: Optional[int] = None
    city_slug: Optional[str] = None
    event_count: int = 0
    unique_users: int = 0
    unique_sessions: int = 0
    total_duration_seconds: Optional[int] = None
    avg_duration_seconds: Optional[float] = None
    min_duration_seconds: Optional[int] = None
    max_duration_seconds: Optional[int] = None
    duration_sample_count: int = 0
    bounce_count: int = 0
    engaged_count: int = 0
    raw_event_count: int = 0
