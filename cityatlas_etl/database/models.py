"""
Database Models - Star Schema Design

Source tables written by the CityAtlas application and the analytics star
schema loaded by the ETL:

Source Tables:
- CityModel: Cities tracked by the application
- MetricModel: Raw city measurements
- AnalyticsEventModel: Raw user-behaviour events

Dimension Tables:
- DimCityModel: City dimension with SCD Type 2 history

Fact Tables:
- FactCityMetricsModel: Daily city metric snapshot
- FactUserEventsDailyModel: Daily user engagement per city and event type
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from cityatlas_etl.records import (
    FOREVER,
    CitySizeCategory,
    EventType,
    GdpTier,
    MetricType,
)

# Autoincrement only works on INTEGER PRIMARY KEY in SQLite
PrimaryKey = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _enum(enum_cls) -> SQLEnum:
    return SQLEnum(enum_cls, native_enum=False, length=50)


# =============================================================================
# SOURCE TABLES
# =============================================================================

class CityModel(Base):
    """Cities maintained by the CityAtlas application"""
    __tablename__ = "cities"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    state: Mapped[Optional[str]] = mapped_column(String(100))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    country_code: Mapped[Optional[str]] = mapped_column(String(2))
    population: Mapped[Optional[int]] = mapped_column(BigInteger)
    gdp_per_capita: Mapped[Optional[float]] = mapped_column(Float)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class MetricModel(Base):
    """Raw city measurement"""
    __tablename__ = "metrics"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    city_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cities.id"))
    metric_type: Mapped[Optional[MetricType]] = mapped_column(_enum(MetricType))
    value: Mapped[Optional[float]] = mapped_column(Float)
    unit: Mapped[Optional[str]] = mapped_column(String(50))
    recorded_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    data_source: Mapped[Optional[str]] = mapped_column(String(100))

    city: Mapped[Optional[CityModel]] = relationship()

    __table_args__ = (
        Index("ix_metrics_recorded_at", "recorded_at"),
        Index("ix_metrics_city_type", "city_id", "metric_type"),
    )


class AnalyticsEventModel(Base):
    """Raw user-behaviour event"""
    __tablename__ = "analytics_events"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    event_type: Mapped[Optional[EventType]] = mapped_column(_enum(EventType))
    event_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime)
    city_id: Mapped[Optional[int]] = mapped_column(ForeignKey("cities.id"))
    user_id: Mapped[Optional[str]] = mapped_column(String(100))
    session_id: Mapped[Optional[str]] = mapped_column(String(100))
    value: Mapped[Optional[float]] = mapped_column(Float)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[str]] = mapped_column("metadata", Text)

    city: Mapped[Optional[CityModel]] = relationship()

    __table_args__ = (
        Index("ix_analytics_events_timestamp", "event_timestamp"),
        Index("ix_analytics_events_city_type", "city_id", "event_type"),
    )


# =============================================================================
# DIMENSION TABLES
# =============================================================================

class DimCityModel(Base):
    """
    City Dimension Table

    SCD Type 2: a city may have many historical rows but only one current
    row, enforced by a partial unique index on the slug.
    """
    __tablename__ = "dim_city"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    source_city_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    city_slug: Mapped[str] = mapped_column(String(100), nullable=False)
    city_name: Mapped[str] = mapped_column(String(200), nullable=False)
    state: Mapped[Optional[str]] = mapped_column(String(100))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    population: Mapped[Optional[int]] = mapped_column(BigInteger)
    gdp_per_capita: Mapped[Optional[float]] = mapped_column(Float)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    # Derived attributes
    city_size_category: Mapped[Optional[CitySizeCategory]] = mapped_column(_enum(CitySizeCategory))
    region: Mapped[Optional[str]] = mapped_column(String(50))
    gdp_tier: Mapped[Optional[GdpTier]] = mapped_column(_enum(GdpTier))

    # SCD Type 2 fields
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[date] = mapped_column(Date, nullable=False, default=FOREVER)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index(
            "uq_dim_city_slug_current",
            "city_slug",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
        Index("ix_dim_city_source_id", "source_city_id"),
        Index("ix_dim_city_region", "region"),
    )


# =============================================================================
# FACT TABLES
# =============================================================================

class FactCityMetricsModel(Base):
    """
    City Metrics Fact Table

    Grain: one row per city per metric type per day.
    """
    __tablename__ = "fact_city_metrics"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    dim_city_id: Mapped[int] = mapped_column(ForeignKey("dim_city.id"), nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    metric_type: Mapped[MetricType] = mapped_column(_enum(MetricType), nullable=False)

    # Measures
    metric_value: Mapped[float] = mapped_column(Float, nullable=False)
    metric_value_previous: Mapped[Optional[float]] = mapped_column(Float)
    metric_value_delta: Mapped[Optional[float]] = mapped_column(Float)
    normalized_value: Mapped[Optional[float]] = mapped_column(Float)
    normalization_method: Mapped[Optional[str]] = mapped_column(String(20))
    percentile_rank: Mapped[Optional[float]] = mapped_column(Float)
    unit: Mapped[Optional[str]] = mapped_column(String(50))
    data_quality_score: Mapped[int] = mapped_column(Integer, default=100)
    data_source: Mapped[Optional[str]] = mapped_column(String(100))

    # Lineage
    etl_batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    etl_loaded_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("dim_city_id", "metric_type", "metric_date", name="uq_fact_city_metrics_grain"),
        Index("ix_fact_city_metrics_date", "metric_date"),
        Index("ix_fact_city_metrics_batch", "etl_batch_id"),
    )


class FactUserEventsDailyModel(Base):
    """
    User Events Fact Table

    Grain: one row per city (NULL for global) per event type per day.
    """
    __tablename__ = "fact_user_events_daily"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)
    dim_city_id: Mapped[Optional[int]] = mapped_column(ForeignKey("dim_city.id"))
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    event_type: Mapped[EventType] = mapped_column(_enum(EventType), nullable=False)

    # Counts
    event_count: Mapped[int] = mapped_column(Integer, default=0)
    unique_users: Mapped[int] = mapped_column(Integer, default=0)
    unique_sessions: Mapped[int] = mapped_column(Integer, default=0)
    raw_event_count: Mapped[int] = mapped_column(Integer, default=0)

    # Engagement
    total_duration_seconds: Mapped[Optional[int]] = mapped_column(BigInteger)
    avg_duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    min_duration_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    max_duration_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    duration_sample_count: Mapped[int] = mapped_column(Integer, default=0)
    bounce_count: Mapped[int] = mapped_column(Integer, default=0)
    engaged_count: Mapped[int] = mapped_column(Integer, default=0)

    # Lineage
    etl_batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    etl_loaded_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("dim_city_id", "event_type", "event_date", name="uq_fact_user_events_daily_grain"),
        Index("ix_fact_user_events_daily_date", "event_date"),
    )
