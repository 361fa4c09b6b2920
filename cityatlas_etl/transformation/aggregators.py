"""
Aggregation Module

Groups cleaned records into the fact table grains:

- fact_city_metrics:      city x metric type x date
- fact_user_events_daily: city (or "global") x event type x date

Grains whose city has no row in the dimension lookup are not loaded. They
are reported back as skipped grains with reason MISSING_DIMENSION so the
caller can log and count them.
"""

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import polars as pl
import structlog

from cityatlas_etl.config import get_settings
from cityatlas_etl.records import (
    GLOBAL_GRAIN,
    AnalyticsEvent,
    DimCity,
    EventType,
    FactCityMetrics,
    FactUserEventsDaily,
    MetricType,
    utcnow,
)
from cityatlas_etl.transformation.cleaners import quality_score
from cityatlas_etl.transformation.normalizers import NormalizedMetric

logger = structlog.get_logger(__name__)

MISSING_DIMENSION = "MISSING_DIMENSION"

BOUNCE_THRESHOLD_SECONDS = 10
ENGAGED_THRESHOLD_SECONDS = 60

EVENT_SCHEMA = {
    "city_key": pl.Utf8,
    "city_id": pl.Int64,
    "event_type": pl.Utf8,
    "event_date": pl.Date,
    "user_id": pl.Utf8,
    "session_id": pl.Utf8,
    "duration": pl.Int64,
}


@dataclass(frozen=True)
class SkippedGrain:
    """A grain excluded from loading"""
    grain: str
    reason: str
    record_count: int


@dataclass
class MetricAggregation:
    facts: List[FactCityMetrics] = field(default_factory=list)
    skipped: List[SkippedGrain] = field(default_factory=list)


@dataclass
class EventAggregation:
    facts: List[FactUserEventsDaily] = field(default_factory=list)
    skipped: List[SkippedGrain] = field(default_factory=list)


@dataclass(frozen=True)
class AggregationSummary:
    """Headline numbers of one aggregation run"""
    metric_fact_count: int
    event_fact_count: int
    distinct_cities: int
    total_events: int
    total_unique_users: int


def parse_duration(metadata: Optional[str]) -> Optional[int]:
    """Whole seconds from the ``duration`` key of event metadata JSON"""
    if not metadata:
        return None
    try:
        payload = json.loads(metadata)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    raw = payload.get("duration")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


class DataAggregator:
    """
    Builds fact rows from cleaned (and, for metrics, normalized) records.

    Example:
        aggregator = DataAggregator()
        result = aggregator.aggregate_city_metrics(normalized, dims, previous, "ETL_...")
    """

    def __init__(self, stale_after_hours: Optional[int] = None):
        self.stale_after_hours = (
            stale_after_hours if stale_after_hours is not None
            else get_settings().data_quality.stale_warning_hours
        )

    # =========================================================================
    # CITY METRICS
    # =========================================================================

    def aggregate_city_metrics(
        self,
        normalized: Sequence[NormalizedMetric],
        dim_lookup: Mapping[int, DimCity],
        previous_values: Mapping[Tuple[int, MetricType], float],
        batch_id: str,
        outlier_ids: Optional[Set[int]] = None,
        now: Optional[datetime] = None,
    ) -> MetricAggregation:
        """
        One fact per (city, metric type, day).

        Args:
            normalized: Normalized clean metrics
            dim_lookup: Current dimension rows keyed by source city id
            previous_values: Previous day's value keyed by (city id, metric type)
            batch_id: Lineage tag for every produced row
            outlier_ids: Metric keys flagged by the cleaner
            now: Reference time for quality scoring
        """
        outlier_ids = outlier_ids or set()
        now = now or utcnow()
        result = MetricAggregation()

        grains: Dict[Tuple[int, MetricType, date], List[NormalizedMetric]] = defaultdict(list)
        for nm in normalized:
            m = nm.metric
            grains[(m.city_id, m.metric_type, m.recorded_at.date())].append(nm)

        for (city_id, metric_type, metric_date), members in grains.items():
            dim = dim_lookup.get(city_id)
            if dim is None or dim.id is None:
                grain = f"{city_id}_{metric_type.value}_{metric_date.isoformat()}"
                logger.warning("No dimension row for city, skipping grain", grain=grain, records=len(members))
                result.skipped.append(SkippedGrain(grain, MISSING_DIMENSION, len(members)))
                continue

            latest = max(members, key=lambda nm: nm.metric.recorded_at)
            metric = latest.metric
            previous = previous_values.get((city_id, metric_type))
            delta = metric.value - previous if previous is not None else None

            result.facts.append(FactCityMetrics(
                dim_city_id=dim.id,
                metric_date=metric_date,
                metric_type=metric_type,
                metric_value=metric.value,
                batch_id=batch_id,
                metric_value_previous=previous,
                metric_value_delta=delta,
                normalized_value=latest.normalized_value,
                normalization_method=latest.method.value,
                percentile_rank=latest.percentile_rank,
                unit=metric.unit,
                data_quality_score=quality_score(metric, outlier_ids, now, self.stale_after_hours),
                data_source=metric.data_source,
            ))

        logger.info(
            "City metrics aggregated",
            batch_id=batch_id,
            input=len(normalized),
            facts=len(result.facts),
            skipped=len(result.skipped),
        )
        return result

    # =========================================================================
    # USER EVENTS
    # =========================================================================

    def _event_frame(self, events: Iterable[AnalyticsEvent]) -> pl.DataFrame:
        rows = []
        for event in events:
            city_id = event.city_id
            rows.append({
                "city_key": str(city_id) if city_id is not None else GLOBAL_GRAIN,
                "city_id": city_id,
                "event_type": event.event_type.value,
                "event_date": event.event_timestamp.date(),
                "user_id": event.user_id or None,
                "session_id": event.session_id or None,
                "duration": parse_duration(event.metadata),
            })
        return pl.from_dicts(rows, schema=EVENT_SCHEMA)

    def aggregate_user_events(
        self,
        events: Sequence[AnalyticsEvent],
        dim_lookup: Mapping[int, DimCity],
        batch_id: str,
    ) -> EventAggregation:
        """
        One fact per (city or global, event type, day).

        Durations come from the metadata ``duration`` key; only positive
        values count towards duration statistics, bounces and engagement.
        """
        result = EventAggregation()
        if not events:
            return result

        positive = pl.col("duration").filter(pl.col("duration") > 0)

        grouped = (
            self._event_frame(events)
            .group_by(["city_key", "event_type", "event_date"], maintain_order=True)
            .agg(
                pl.col("city_id").first(),
                pl.len().alias("event_count"),
                pl.col("user_id").drop_nulls().n_unique().alias("unique_users"),
                pl.col("session_id").drop_nulls().n_unique().alias("unique_sessions"),
                positive.sum().alias("total_duration"),
                positive.count().alias("duration_count"),
                positive.min().alias("min_duration"),
                positive.max().alias("max_duration"),
                (positive < BOUNCE_THRESHOLD_SECONDS).sum().alias("bounce_count"),
                (positive >= ENGAGED_THRESHOLD_SECONDS).sum().alias("engaged_count"),
            )
        )

        for row in grouped.iter_rows(named=True):
            city_id = row["city_id"]
            dim_city_id = None
            if city_id is not None:
                dim = dim_lookup.get(city_id)
                if dim is None or dim.id is None:
                    grain = f"{row['city_key']}_{row['event_type']}_{row['event_date'].isoformat()}"
                    logger.warning("No dimension row for city, skipping grain", grain=grain, records=row["event_count"])
                    result.skipped.append(SkippedGrain(grain, MISSING_DIMENSION, row["event_count"]))
                    continue
                dim_city_id = dim.id

            duration_count = row["duration_count"]
            has_durations = duration_count > 0

            result.facts.append(FactUserEventsDaily(
                event_date=row["event_date"],
                event_type=EventType(row["event_type"]),
                batch_id=batch_id,
                dim_city_id=dim_city_id,
                event_count=row["event_count"],
                unique_users=row["unique_users"],
                unique_sessions=row["unique_sessions"],
                total_duration_seconds=row["total_duration"] if has_durations else None,
                avg_duration_seconds=row["total_duration"] / duration_count if has_durations else None,
                min_duration_seconds=row["min_duration"],
                max_duration_seconds=row["max_duration"],
                duration_sample_count=duration_count,
                bounce_count=row["bounce_count"],
                engaged_count=row["engaged_count"],
                raw_event_count=row["event_count"],
            ))

        logger.info(
            "User events aggregated",
            batch_id=batch_id,
            input=len(events),
            facts=len(result.facts),
            skipped=len(result.skipped),
        )
        return result

    # =========================================================================
    # SUMMARY
    # =========================================================================

    @staticmethod
    def summarize(
        metric_facts: Sequence[FactCityMetrics],
        event_facts: Sequence[FactUserEventsDaily],
    ) -> AggregationSummary:
        cities = {f.dim_city_id for f in metric_facts}
        cities.update(f.dim_city_id for f in event_facts if f.dim_city_id is not None)

        return AggregationSummary(
            metric_fact_count=len(metric_facts),
            event_fact_count=len(event_facts),
            distinct_cities=len(cities),
            total_events=sum(f.event_count for f in event_facts),
            total_unique_users=sum(f.unique_users for f in event_facts),
        )
