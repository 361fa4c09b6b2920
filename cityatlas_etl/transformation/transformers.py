"""
ETL Transformer

Runs the in-memory part of the pipeline:

    metrics: clean -> normalize -> aggregate
    events:  clean -> aggregate

Extraction and loading live with the jobs; this module never touches the
database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Mapping, Optional, Sequence, Tuple

import structlog

from cityatlas_etl.records import (
    AnalyticsEvent,
    DimCity,
    FactCityMetrics,
    FactUserEventsDaily,
    Metric,
    MetricType,
    utcnow,
)
from .aggregators import DataAggregator, SkippedGrain
from .cleaners import DataCleaner, RejectedRecord
from .normalizers import MetricNormalizer

logger = structlog.get_logger(__name__)


class TransformationType(str, Enum):
    """Types of transformations"""
    CITY_METRICS = "city_metrics"
    USER_EVENTS = "user_events"


@dataclass
class TransformResult:
    """Result of a transformation pipeline run"""
    transformation_type: TransformationType
    batch_id: str
    input_rows: int
    output_rows: int
    rows_dropped: int
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    metric_facts: List[FactCityMetrics] = field(default_factory=list)
    event_facts: List[FactUserEventsDaily] = field(default_factory=list)
    rejected: List[RejectedRecord] = field(default_factory=list)
    skipped: List[SkippedGrain] = field(default_factory=list)
    outlier_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class ETLTransformer:
    """
    Transformation pipeline orchestrator.

    Example:
        transformer = ETLTransformer()
        result = transformer.transform_metrics(raw, dims, previous, "ETL_20250101_020000")
    """

    def __init__(
        self,
        cleaner: Optional[DataCleaner] = None,
        normalizer: Optional[MetricNormalizer] = None,
        aggregator: Optional[DataAggregator] = None,
    ):
        self.cleaner = cleaner or DataCleaner()
        self.normalizer = normalizer or MetricNormalizer()
        self.aggregator = aggregator or DataAggregator()

    def transform_metrics(
        self,
        metrics: Sequence[Metric],
        dim_lookup: Mapping[int, DimCity],
        previous_values: Mapping[Tuple[int, MetricType], float],
        batch_id: str,
        clamp: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> TransformResult:
        """
        Transform raw metrics into city metric facts.

        Pipeline:
        1. Clean (nulls, range, outliers, duplicates)
        2. Normalize to 0-100 with batch percentile ranks
        3. Aggregate to city x metric type x day
        """
        started_at = utcnow()
        now = now or started_at
        result = TransformResult(
            transformation_type=TransformationType.CITY_METRICS,
            batch_id=batch_id,
            input_rows=len(metrics),
            output_rows=0,
            rows_dropped=0,
            started_at=started_at,
            completed_at=started_at,
            duration_seconds=0.0,
        )

        logger.info(f"Starting metrics transformation with {len(metrics)} rows", batch_id=batch_id)

        try:
            cleaned = self.cleaner.clean_metrics(metrics, clamp=clamp, now=now)
            result.rejected = list(cleaned.rejected_records)
            result.outlier_count = cleaned.outlier_count
            logger.info(f"After cleaning: {cleaned.clean_count} rows", batch_id=batch_id)

            normalized = self.normalizer.normalize(cleaned.clean_records)

            aggregated = self.aggregator.aggregate_city_metrics(
                normalized,
                dim_lookup,
                previous_values,
                batch_id,
                outlier_ids=cleaned.outlier_ids,
                now=now,
            )
            result.metric_facts = aggregated.facts
            result.skipped = aggregated.skipped

        except Exception as e:
            logger.error(f"Metrics transformation failed: {e}", batch_id=batch_id)
            result.errors.append(str(e))

        return self._complete(result, len(result.metric_facts))

    def transform_events(
        self,
        events: Sequence[AnalyticsEvent],
        dim_lookup: Mapping[int, DimCity],
        batch_id: str,
    ) -> TransformResult:
        """
        Transform raw analytics events into daily event facts.

        Pipeline:
        1. Clean (missing fields, fingerprint duplicates, metadata)
        2. Aggregate to city x event type x day
        """
        started_at = utcnow()
        result = TransformResult(
            transformation_type=TransformationType.USER_EVENTS,
            batch_id=batch_id,
            input_rows=len(events),
            output_rows=0,
            rows_dropped=0,
            started_at=started_at,
            completed_at=started_at,
            duration_seconds=0.0,
        )

        logger.info(f"Starting events transformation with {len(events)} rows", batch_id=batch_id)

        try:
            cleaned = self.cleaner.clean_events(events)
            result.rejected = list(cleaned.rejected_records)

            aggregated = self.aggregator.aggregate_user_events(cleaned.clean_records, dim_lookup, batch_id)
            result.event_facts = aggregated.facts
            result.skipped = aggregated.skipped

        except Exception as e:
            logger.error(f"Events transformation failed: {e}", batch_id=batch_id)
            result.errors.append(str(e))

        return self._complete(result, len(result.event_facts))

    @staticmethod
    def _complete(result: TransformResult, output_rows: int) -> TransformResult:
        result.completed_at = utcnow()
        result.duration_seconds = (result.completed_at - result.started_at).total_seconds()
        result.output_rows = output_rows
        result.rows_dropped = len(result.rejected)

        logger.info(
            f"{result.transformation_type.value} transformation complete",
            batch_id=result.batch_id,
            input_rows=result.input_rows,
            output_rows=result.output_rows,
            rejected=result.rows_dropped,
            skipped_grains=len(result.skipped),
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result
