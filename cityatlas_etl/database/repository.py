"""
Warehouse Repository

Extraction queries over the source tables and loading of the star schema.
All methods work on a caller-owned session; the caller decides the
transaction boundary (normally one ``get_db()`` block per job run).
"""

from dataclasses import fields
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cityatlas_etl.records import (
    AnalyticsEvent,
    City,
    DimCity,
    FactCityMetrics,
    FactUserEventsDaily,
    Metric,
    MetricType,
)
from cityatlas_etl.transformation.dimensions import DimensionChangeSet
from .models import (
    AnalyticsEventModel,
    CityModel,
    DimCityModel,
    FactCityMetricsModel,
    FactUserEventsDailyModel,
    MetricModel,
)

logger = structlog.get_logger(__name__)

_DIM_COLUMNS = [f.name for f in fields(DimCity) if f.name != "id"]


# =============================================================================
# ROW CONVERSION
# =============================================================================

def to_city(model: CityModel) -> City:
    return City(
        id=model.id,
        slug=model.slug,
        name=model.name,
        state=model.state,
        country=model.country,
        country_code=model.country_code,
        population=model.population,
        gdp_per_capita=model.gdp_per_capita,
        latitude=model.latitude,
        longitude=model.longitude,
    )


def to_metric(model: MetricModel) -> Metric:
    return Metric(
        id=model.id,
        city=to_city(model.city) if model.city is not None else None,
        metric_type=model.metric_type,
        value=model.value,
        recorded_at=model.recorded_at,
        unit=model.unit,
        data_source=model.data_source,
    )


def to_event(model: AnalyticsEventModel) -> AnalyticsEvent:
    return AnalyticsEvent(
        id=model.id,
        event_type=model.event_type,
        event_timestamp=model.event_timestamp,
        city=to_city(model.city) if model.city is not None else None,
        user_id=model.user_id,
        session_id=model.session_id,
        value=model.value,
        metadata=model.event_metadata,
    )


def to_dim_city(model: DimCityModel) -> DimCity:
    return DimCity(id=model.id, **{name: getattr(model, name) for name in _DIM_COLUMNS})


def _dim_values(row: DimCity) -> dict:
    return {name: getattr(row, name) for name in _DIM_COLUMNS}


def _sum_optional(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return a + b


def _combine(a, b, pick):
    if a is None:
        return b
    if b is None:
        return a
    return pick(a, b)


def _assign_event_fact(row: FactUserEventsDailyModel, fact: FactUserEventsDaily) -> None:
    row.event_count = fact.event_count
    row.unique_users = fact.unique_users
    row.unique_sessions = fact.unique_sessions
    row.raw_event_count = fact.raw_event_count
    row.total_duration_seconds = fact.total_duration_seconds
    row.avg_duration_seconds = fact.avg_duration_seconds
    row.min_duration_seconds = fact.min_duration_seconds
    row.max_duration_seconds = fact.max_duration_seconds
    row.duration_sample_count = fact.duration_sample_count
    row.bounce_count = fact.bounce_count
    row.engaged_count = fact.engaged_count
    row.etl_batch_id = fact.batch_id


def _merge_event_fact(row: FactUserEventsDailyModel, fact: FactUserEventsDaily) -> None:
    row.event_count += fact.event_count
    row.unique_users = max(row.unique_users, fact.unique_users)
    row.unique_sessions = max(row.unique_sessions, fact.unique_sessions)
    row.raw_event_count += fact.raw_event_count
    row.total_duration_seconds = _sum_optional(row.total_duration_seconds, fact.total_duration_seconds)
    row.duration_sample_count += fact.duration_sample_count
    row.avg_duration_seconds = (
        row.total_duration_seconds / row.duration_sample_count
        if row.duration_sample_count and row.total_duration_seconds is not None
        else None
    )
    row.min_duration_seconds = _combine(row.min_duration_seconds, fact.min_duration_seconds, min)
    row.max_duration_seconds = _combine(row.max_duration_seconds, fact.max_duration_seconds, max)
    row.bounce_count += fact.bounce_count
    row.engaged_count += fact.engaged_count
    row.etl_batch_id = fact.batch_id


class WarehouseRepository:
    """
    Data access for the ETL.

    Example:
        async with get_db() as db:
            repo = WarehouseRepository(db)
            metrics = await repo.find_by_recorded_at_between(start, end)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # =========================================================================
    # EXTRACTION
    # =========================================================================

    async def find_by_recorded_at_between(self, start: datetime, end: datetime) -> List[Metric]:
        """Metrics with start <= recorded_at < end"""
        stmt = (
            select(MetricModel)
            .options(selectinload(MetricModel.city))
            .where(MetricModel.recorded_at >= start, MetricModel.recorded_at < end)
            .order_by(MetricModel.recorded_at, MetricModel.id)
        )
        result = await self.session.execute(stmt)
        return [to_metric(m) for m in result.scalars().all()]

    async def find_by_event_timestamp_between(self, start: datetime, end: datetime) -> List[AnalyticsEvent]:
        """Analytics events with start <= event_timestamp < end"""
        stmt = (
            select(AnalyticsEventModel)
            .options(selectinload(AnalyticsEventModel.city))
            .where(
                AnalyticsEventModel.event_timestamp >= start,
                AnalyticsEventModel.event_timestamp < end,
            )
            .order_by(AnalyticsEventModel.event_timestamp, AnalyticsEventModel.id)
        )
        result = await self.session.execute(stmt)
        return [to_event(e) for e in result.scalars().all()]

    async def find_all_cities(self) -> List[City]:
        result = await self.session.execute(select(CityModel).order_by(CityModel.id))
        return [to_city(c) for c in result.scalars().all()]

    # =========================================================================
    # CITY DIMENSION
    # =========================================================================

    async def find_current_dim_cities(self) -> List[DimCity]:
        stmt = select(DimCityModel).where(DimCityModel.is_current.is_(True)).order_by(DimCityModel.id)
        result = await self.session.execute(stmt)
        return [to_dim_city(d) for d in result.scalars().all()]

    async def current_dim_lookup(self) -> Dict[int, DimCity]:
        """Current dimension rows keyed by source city id"""
        return {
            row.source_city_id: row
            for row in await self.find_current_dim_cities()
            if row.source_city_id is not None
        }

    async def resolve_dim_city_ids(self, slugs: Iterable[str]) -> Dict[str, int]:
        """Current dimension keys for the given slugs; unknown slugs are absent"""
        slugs = set(slugs)
        if not slugs:
            return {}
        stmt = select(DimCityModel.city_slug, DimCityModel.id).where(
            DimCityModel.is_current.is_(True),
            DimCityModel.city_slug.in_(slugs),
        )
        result = await self.session.execute(stmt)
        return {slug: dim_id for slug, dim_id in result.all()}

    async def apply_dimension_changes(self, changes: DimensionChangeSet) -> int:
        """
        Apply an SCD2 change set.

        Expirations are written before inserts so that the partial unique
        index on current slugs is never violated mid-transaction.
        """
        for row in changes.expirations:
            await self.session.execute(
                update(DimCityModel)
                .where(DimCityModel.id == row.id)
                .values(valid_to=row.valid_to, is_current=False)
            )
        await self.session.flush()

        for row in changes.updates:
            await self.session.execute(
                update(DimCityModel).where(DimCityModel.id == row.id).values(**_dim_values(row))
            )

        self.session.add_all([DimCityModel(**_dim_values(row)) for row in changes.inserts])
        await self.session.flush()

        logger.info(
            "Dimension changes applied",
            inserts=len(changes.inserts),
            expirations=len(changes.expirations),
            updates=len(changes.updates),
        )
        return changes.total_changes

    # =========================================================================
    # CITY METRICS FACTS
    # =========================================================================

    async def find_previous_day_values(self, day: date) -> Dict[Tuple[int, MetricType], float]:
        """
        Loaded metric values of the day before ``day``.

        Keyed by (source city id, metric type) so that values survive a new
        dimension version.
        """
        stmt = (
            select(DimCityModel.source_city_id, FactCityMetricsModel.metric_type, FactCityMetricsModel.metric_value)
            .join(DimCityModel, FactCityMetricsModel.dim_city_id == DimCityModel.id)
            .where(FactCityMetricsModel.metric_date == day - timedelta(days=1))
        )
        result = await self.session.execute(stmt)
        return {
            (source_city_id, metric_type): value
            for source_city_id, metric_type, value in result.all()
            if source_city_id is not None
        }

    async def upsert_city_metrics(self, facts: Sequence[FactCityMetrics]) -> int:
        """Insert or replace facts on (dim_city_id, metric_type, metric_date)"""
        written = 0
        for fact in facts:
            stmt = select(FactCityMetricsModel).where(
                FactCityMetricsModel.dim_city_id == fact.dim_city_id,
                FactCityMetricsModel.metric_type == fact.metric_type,
                FactCityMetricsModel.metric_date == fact.metric_date,
            )
            existing = (await self.session.execute(stmt)).scalar_one_or_none()
            if existing is None:
                existing = FactCityMetricsModel(
                    dim_city_id=fact.dim_city_id,
                    metric_type=fact.metric_type,
                    metric_date=fact.metric_date,
                )
                self.session.add(existing)

            existing.metric_value = fact.metric_value
            existing.metric_value_previous = fact.metric_value_previous
            existing.metric_value_delta = fact.metric_value_delta
            existing.normalized_value = fact.normalized_value
            existing.normalization_method = fact.normalization_method
            existing.percentile_rank = fact.percentile_rank
            existing.unit = fact.unit
            existing.data_quality_score = fact.data_quality_score
            existing.data_source = fact.data_source
            existing.etl_batch_id = fact.batch_id
            written += 1

        await self.session.flush()
        logger.info("City metric facts upserted", rows=written)
        return written

    # =========================================================================
    # USER EVENT FACTS
    # =========================================================================

    async def upsert_user_events(self, facts: Sequence[FactUserEventsDaily]) -> int:
        """
        Merge facts into fact_user_events_daily.

        Counts and durations add up; unique users and sessions keep the
        larger value since distinct sets are not stored. Used for stream
        micro-batches, which only ever carry events not yet loaded.
        """
        return await self._write_user_events(facts, merge=True)

    async def replace_user_events(self, facts: Sequence[FactUserEventsDaily]) -> int:
        """
        Insert or replace facts on (dim_city_id, event_type, event_date).

        The facts must cover every event of their day, so writing them twice
        leaves the table unchanged.
        """
        return await self._write_user_events(facts, merge=False)

    async def _write_user_events(self, facts: Sequence[FactUserEventsDaily], merge: bool) -> int:
        """Rows that carry only a city slug are resolved to the current dimension key, or skipped"""
        slugs = {f.city_slug for f in facts if f.dim_city_id is None and f.city_slug}
        slug_ids = await self.resolve_dim_city_ids(slugs)

        written = 0
        for fact in facts:
            dim_city_id = fact.dim_city_id
            if dim_city_id is None and fact.city_slug:
                dim_city_id = slug_ids.get(fact.city_slug)
                if dim_city_id is None:
                    logger.warning(
                        "No dimension row for city slug, skipping event fact",
                        city_slug=fact.city_slug,
                        event_type=fact.event_type.value,
                        events=fact.event_count,
                    )
                    continue

            city_filter = (
                FactUserEventsDailyModel.dim_city_id.is_(None)
                if dim_city_id is None
                else FactUserEventsDailyModel.dim_city_id == dim_city_id
            )
            stmt = select(FactUserEventsDailyModel).where(
                city_filter,
                FactUserEventsDailyModel.event_type == fact.event_type,
                FactUserEventsDailyModel.event_date == fact.event_date,
            )
            existing = (await self.session.execute(stmt)).scalar_one_or_none()

            if existing is None:
                existing = FactUserEventsDailyModel(
                    dim_city_id=dim_city_id,
                    event_type=fact.event_type,
                    event_date=fact.event_date,
                )
                self.session.add(existing)
                _assign_event_fact(existing, fact)
            elif merge:
                _merge_event_fact(existing, fact)
            else:
                _assign_event_fact(existing, fact)

            # Later facts in the same call may hit this grain
            await self.session.flush()
            written += 1

        logger.info(
            "User event facts written",
            mode="merge" if merge else "replace",
            rows=written,
            skipped=len(facts) - written,
        )
        return written
