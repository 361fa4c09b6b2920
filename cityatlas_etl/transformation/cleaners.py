"""
Data Cleaning Module

Cleaning for city metrics and analytics events ahead of normalization and
aggregation.

Metrics:
- Null rejection and range rejection (or clamping) via the validator
- Optional staleness rejection
- Z-score outlier flagging per metric type
- Deduplication by (city, metric type, day), keeping the latest measurement

Events:
- Missing type/timestamp rejection
- Fingerprint deduplication
- Malformed metadata JSON nulled in place
"""

import json
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Generic, List, Optional, Sequence, Set, Tuple, TypeVar

import structlog
from prometheus_client import Counter as PromCounter

from cityatlas_etl.config import get_settings
from cityatlas_etl.quality.fallback import DataQualityFallback
from cityatlas_etl.quality.outliers import ZScoreOutlierDetector
from cityatlas_etl.quality.validators import BatchValidationResult, DataQualityValidator, ErrorCode
from cityatlas_etl.records import AnalyticsEvent, City, Metric, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


RECORDS_REJECTED = PromCounter(
    "cityatlas_records_rejected_total",
    "Records rejected during cleaning",
    ["record_type", "reason"],
)


class RejectionReason:
    """Cleaning-specific rejection codes (validator codes are reused as-is)"""
    DUPLICATE = "DUPLICATE"
    NULL_TYPE = "NULL_TYPE"
    NULL_TIMESTAMP = ErrorCode.NULL_TIMESTAMP
    NULL_RECORD = ErrorCode.NULL_RECORD


class QualityScore:
    """Per-record data quality score assigned to fact rows"""
    EXCELLENT = 100
    GOOD = 75
    FAIR = 50
    POOR = 25


@dataclass(frozen=True)
class RejectedRecord(Generic[T]):
    """A record excluded from the clean output"""
    record: Optional[T]
    reason_code: str
    reason_detail: str


@dataclass
class CleaningResult(Generic[T]):
    """Output of a cleaning pass"""
    clean_records: List[T] = field(default_factory=list)
    rejected_records: List[RejectedRecord[T]] = field(default_factory=list)
    outlier_ids: Set[int] = field(default_factory=set)

    @property
    def clean_count(self) -> int:
        return len(self.clean_records)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected_records)

    @property
    def outlier_count(self) -> int:
        return len(self.outlier_ids)

    def rejection_counts(self) -> Dict[str, int]:
        return dict(Counter(r.reason_code for r in self.rejected_records))


def quality_score(
    metric: Metric,
    outlier_ids: Set[int],
    now: datetime,
    stale_after_hours: int = 24,
) -> int:
    """
    Score a clean metric:

    - 25 when flagged as a statistical outlier
    - 50 when older than ``stale_after_hours``
    - 75 when its value was clamped into range
    - 100 otherwise
    """
    if metric.key in outlier_ids:
        return QualityScore.POOR
    if metric.recorded_at is not None and now - metric.recorded_at > timedelta(hours=stale_after_hours):
        return QualityScore.FAIR
    if metric.adjusted:
        return QualityScore.GOOD
    return QualityScore.EXCELLENT


def _city_key(city: City):
    return city.id if city.id is not None else city.slug


class DataCleaner:
    """
    Cleaner for metric and event batches.

    Example:
        cleaner = DataCleaner()
        result = cleaner.clean_metrics(raw_metrics)
        print(result.clean_count, result.rejection_counts())
    """

    def __init__(
        self,
        validator: Optional[DataQualityValidator] = None,
        fallback: Optional[DataQualityFallback] = None,
        outlier_detector: Optional[ZScoreOutlierDetector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = get_settings().data_quality
        self.validator = validator or DataQualityValidator(clock=clock)
        self.fallback = fallback or DataQualityFallback(clock=clock)
        self.outlier_detector = outlier_detector or ZScoreOutlierDetector()
        self._clock = clock

    # =========================================================================
    # METRICS
    # =========================================================================

    def clean_metrics(
        self,
        metrics: Sequence[Optional[Metric]],
        clamp: Optional[bool] = None,
        reject_stale: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> CleaningResult[Metric]:
        """
        Run the metric cleaning pipeline.

        Args:
            metrics: Raw metric records
            clamp: Clamp out-of-range values instead of rejecting them
            reject_stale: Reject records failing the freshness check
            now: Reference time for freshness and quality scoring

        Returns:
            CleaningResult with clean records, rejections and outlier ids
        """
        clamp = self.settings.clamp_out_of_range if clamp is None else clamp
        reject_stale = self.settings.reject_stale if reject_stale is None else reject_stale
        now = now or self._clock()
        result: CleaningResult[Metric] = CleaningResult()

        logger.info(f"Cleaning {len(metrics)} metrics", clamp=clamp, reject_stale=reject_stale)

        # Step 1: Required fields
        batch = self.validator.validate_not_null_batch(metrics)
        self._collect_failures(batch, result)

        # Step 2: Range
        batch = self.validator.validate_range_batch(batch.valid_records, clamp=clamp)
        self._collect_failures(batch, result)

        # Step 3: Freshness
        if reject_stale:
            batch = self.validator.validate_freshness_batch(batch.valid_records, now=now)
            self._collect_failures(batch, result)

        candidates = batch.valid_records

        # Step 4: Outliers
        result.outlier_ids = self.detect_outliers(candidates)

        # Step 5: Deduplicate
        clean, duplicates = self.deduplicate_metrics(candidates)
        result.clean_records = clean
        result.rejected_records.extend(duplicates)

        # Step 6: Remember good values for fallback resolution
        for metric in clean:
            self.fallback.cache_value(metric.city.slug, metric.metric_type, metric.value)

        for rejected in result.rejected_records:
            RECORDS_REJECTED.labels(record_type="metric", reason=rejected.reason_code).inc()

        self._log_quality_distribution(clean, result.outlier_ids, now)
        logger.info(
            "Metric cleaning complete",
            input=len(metrics),
            clean=result.clean_count,
            rejected=result.rejected_count,
            outliers=result.outlier_count,
            rejections=result.rejection_counts(),
        )
        return result

    @staticmethod
    def _collect_failures(batch: BatchValidationResult, result: CleaningResult[Metric]) -> None:
        for failed in batch.failed_records:
            result.rejected_records.append(RejectedRecord(failed.record, failed.error_code, failed.message))

    def detect_outliers(self, metrics: Sequence[Metric]) -> Set[int]:
        """Flag z-score outliers within each metric type; returns metric keys"""
        groups: Dict[object, List[Metric]] = defaultdict(list)
        for metric in metrics:
            groups[metric.metric_type].append(metric)

        outlier_ids: Set[int] = set()
        for metric_type, group in groups.items():
            flagged = self.outlier_detector.detect([m.value for m in group], name=metric_type.value)
            for outlier in flagged:
                metric = group[outlier.index]
                outlier_ids.add(metric.key)
                logger.warning(
                    "Metric flagged as outlier",
                    metric_id=metric.id,
                    city=metric.city.slug,
                    metric_type=metric_type.value,
                    value=metric.value,
                    z_score=round(outlier.z_score, 3),
                    severity=outlier.severity.value,
                )

        return outlier_ids

    def deduplicate_metrics(self, metrics: Sequence[Metric]) -> Tuple[List[Metric], List[RejectedRecord[Metric]]]:
        """
        Keep one metric per (city, metric type, day).

        The most recently recorded measurement wins; ties keep the first
        seen. Every loser is rejected as DUPLICATE.
        """
        latest: Dict[Tuple[object, object, object], Metric] = {}
        duplicates: List[RejectedRecord[Metric]] = []

        for metric in metrics:
            key = (_city_key(metric.city), metric.metric_type, metric.recorded_at.date())
            existing = latest.get(key)

            if existing is None:
                latest[key] = metric
            elif metric.recorded_at > existing.recorded_at:
                latest[key] = metric
                duplicates.append(RejectedRecord(
                    existing,
                    RejectionReason.DUPLICATE,
                    f"Superseded by newer record at {metric.recorded_at.isoformat()}",
                ))
            else:
                duplicates.append(RejectedRecord(
                    metric,
                    RejectionReason.DUPLICATE,
                    f"Older than existing record at {existing.recorded_at.isoformat()}",
                ))

        return list(latest.values()), duplicates

    def _log_quality_distribution(self, metrics: Sequence[Metric], outlier_ids: Set[int], now: datetime) -> None:
        if not metrics:
            return
        distribution = Counter(
            quality_score(m, outlier_ids, now, self.settings.stale_warning_hours) for m in metrics
        )
        logger.info("Quality score distribution", **{f"score_{k}": v for k, v in sorted(distribution.items())})

    # =========================================================================
    # EVENTS
    # =========================================================================

    def clean_events(self, events: Sequence[Optional[AnalyticsEvent]]) -> CleaningResult[AnalyticsEvent]:
        """
        Clean analytics events.

        Events missing a type or timestamp are rejected. Duplicates share a
        fingerprint of (user, session, type, timestamp to the second); the
        first occurrence is kept. Metadata that is not valid JSON is set to
        None on the kept event.
        """
        result: CleaningResult[AnalyticsEvent] = CleaningResult()
        seen: Set[str] = set()
        metadata_nulled = 0

        for event in events:
            if event is None:
                result.rejected_records.append(RejectedRecord(None, RejectionReason.NULL_RECORD, "Event record is null"))
                continue
            if event.event_type is None:
                result.rejected_records.append(RejectedRecord(event, RejectionReason.NULL_TYPE, "Event type is null"))
                continue
            if event.event_timestamp is None:
                result.rejected_records.append(RejectedRecord(event, RejectionReason.NULL_TIMESTAMP, "Event timestamp is null"))
                continue

            fp = event_fingerprint(event)
            if fp in seen:
                result.rejected_records.append(RejectedRecord(event, RejectionReason.DUPLICATE, f"Duplicate fingerprint {fp}"))
                continue
            seen.add(fp)

            if event.metadata is not None and not _is_valid_json(event.metadata):
                logger.debug("Nulling malformed event metadata", event_id=event.id)
                event.metadata = None
                metadata_nulled += 1

            result.clean_records.append(event)

        for rejected in result.rejected_records:
            RECORDS_REJECTED.labels(record_type="event", reason=rejected.reason_code).inc()

        logger.info(
            "Event cleaning complete",
            input=len(events),
            clean=result.clean_count,
            rejected=result.rejected_count,
            metadata_nulled=metadata_nulled,
            rejections=result.rejection_counts(),
        )
        return result


def event_fingerprint(event: AnalyticsEvent) -> str:
    """Dedup key: user, session, type and timestamp truncated to the second"""
    ts = event.event_timestamp.replace(microsecond=0).isoformat()
    return f"{event.user_id or ''}_{event.session_id or ''}_{event.event_type.value}_{ts}"


def _is_valid_json(raw: str) -> bool:
    try:
        json.loads(raw)
    except (TypeError, ValueError):
        return False
    return True
