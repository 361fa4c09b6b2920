"""
Data Validation Module

Record-level data quality checks for city metrics.

Features:
- Null/required field checks
- Range checks against per-metric-type bounds (reject or auto-clamp)
- Freshness checks (aging vs stale)
- AQI and population specific checks
- Batch variants partitioning records into valid and failed
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Iterable, List, Mapping, Optional

import structlog

from cityatlas_etl.config import get_settings
from cityatlas_etl.records import Metric, MetricType, utcnow

logger = structlog.get_logger(__name__)


class ErrorCode:
    """Rejection and failure codes emitted by the validator"""
    NULL_RECORD = "NULL_RECORD"
    NULL_FIELD = "NULL_FIELD"
    INVALID_INPUT = "INVALID_INPUT"
    BELOW_MIN = "BELOW_MIN"
    ABOVE_MAX = "ABOVE_MAX"
    NULL_TIMESTAMP = "NULL_TIMESTAMP"
    STALE_DATA = "STALE_DATA"
    NULL_AQI = "NULL_AQI"
    NEGATIVE_AQI = "NEGATIVE_AQI"
    AQI_OVERFLOW = "AQI_OVERFLOW"
    NULL_POPULATION = "NULL_POPULATION"
    NEGATIVE_POPULATION = "NEGATIVE_POPULATION"
    POPULATION_OVERFLOW = "POPULATION_OVERFLOW"


@dataclass(frozen=True)
class ValidationBounds:
    """Inclusive valid range for a metric type"""
    min: float
    max: float
    description: str

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max

    def clamp(self, value: float) -> float:
        return max(self.min, min(self.max, value))


DEFAULT_BOUNDS: Mapping[MetricType, ValidationBounds] = MappingProxyType({
    MetricType.AQI: ValidationBounds(0, 500, "Air Quality Index (EPA scale)"),
    MetricType.CARBON_EMISSIONS: ValidationBounds(0, 100, "Tons CO2 per capita"),
    MetricType.WATER_QUALITY: ValidationBounds(0, 100, "Water quality index"),
    MetricType.UNEMPLOYMENT_RATE: ValidationBounds(0, 100, "Percentage"),
    MetricType.GDP_PER_CAPITA: ValidationBounds(100, 500_000, "USD per capita"),
    MetricType.COST_OF_LIVING: ValidationBounds(20, 300, "Index (NYC = 100)"),
    MetricType.AVERAGE_SALARY: ValidationBounds(1_000, 500_000, "USD annual"),
    MetricType.POPULATION: ValidationBounds(0, 50_000_000, "Number of residents"),
    MetricType.POPULATION_GROWTH: ValidationBounds(-20, 50, "Annual growth percentage"),
    MetricType.MEDIAN_AGE: ValidationBounds(10, 70, "Years"),
    MetricType.TRANSIT_COVERAGE: ValidationBounds(0, 100, "Percentage"),
    MetricType.INTERNET_SPEED: ValidationBounds(0, 10_000, "Mbps"),
    MetricType.HOUSING_AFFORDABILITY: ValidationBounds(0, 500, "Price to income ratio x 10"),
})

AQI_CATEGORIES = (
    (50, "Good"),
    (100, "Moderate"),
    (150, "Unhealthy for Sensitive Groups"),
    (200, "Unhealthy"),
    (300, "Very Unhealthy"),
)

MAX_POPULATION = 50_000_000


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a single record check"""
    passed: bool
    error_code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, message: Optional[str] = None) -> "ValidationResult":
        return cls(passed=True, message=message)

    @classmethod
    def failure(cls, error_code: str, message: str) -> "ValidationResult":
        return cls(passed=False, error_code=error_code, message=message)


@dataclass(frozen=True)
class FailedRecord:
    """A record that failed validation, with the reason"""
    record: Optional[Metric]
    error_code: str
    message: str


@dataclass
class BatchValidationResult:
    """Partition of a batch into valid and failed records"""
    valid_records: List[Metric] = field(default_factory=list)
    failed_records: List[FailedRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.valid_records) + len(self.failed_records)

    @property
    def pass_rate(self) -> float:
        """Percentage of records that passed"""
        if self.total == 0:
            return 100.0
        return (len(self.valid_records) / self.total) * 100


class DataQualityValidator:
    """
    Stateless record validator for city metrics.

    Bounds are an immutable mapping handed in at construction; the defaults
    cover the metric types with known physical or economic limits. Types
    without bounds pass range checks.

    Example:
        validator = DataQualityValidator()
        result = validator.validate_range(metric)
        if not result.passed:
            print(result.error_code)
    """

    def __init__(
        self,
        bounds: Mapping[MetricType, ValidationBounds] = DEFAULT_BOUNDS,
        stale_warning_hours: Optional[int] = None,
        stale_reject_hours: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        dq = get_settings().data_quality
        self.bounds = bounds
        self.stale_warning_hours = stale_warning_hours if stale_warning_hours is not None else dq.stale_warning_hours
        self.stale_reject_hours = stale_reject_hours if stale_reject_hours is not None else dq.stale_reject_hours
        self._clock = clock

    def get_bounds(self, metric_type: Optional[MetricType]) -> Optional[ValidationBounds]:
        """Bounds for a metric type, or None when unbounded"""
        if metric_type is None:
            return None
        return self.bounds.get(metric_type)

    # =========================================================================
    # SINGLE RECORD CHECKS
    # =========================================================================

    def validate_not_null(self, metric: Optional[Metric]) -> ValidationResult:
        """Check that a metric carries city, type, value and timestamp"""
        if metric is None:
            logger.warning("Null metric record")
            return ValidationResult.failure(ErrorCode.NULL_RECORD, "Metric record is null")

        missing = []
        if metric.city is None:
            missing.append("city")
        if metric.metric_type is None:
            missing.append("metric_type")
        if metric.value is None:
            missing.append("value")
        if metric.recorded_at is None:
            missing.append("recorded_at")

        if missing:
            message = f"Required fields are null: {', '.join(missing)}"
            logger.warning("Metric has null fields", metric_id=metric.id, fields=missing)
            return ValidationResult.failure(ErrorCode.NULL_FIELD, message)

        return ValidationResult.success()

    def validate_range(self, metric: Metric) -> ValidationResult:
        """Check a metric value against the bounds of its type"""
        if metric is None or metric.metric_type is None or metric.value is None:
            return ValidationResult.failure(ErrorCode.INVALID_INPUT, "Cannot range-check a metric without type or value")

        bounds = self.get_bounds(metric.metric_type)
        if bounds is None:
            logger.debug("No bounds defined, passing", metric_type=metric.metric_type.value)
            return ValidationResult.success(f"No bounds defined for {metric.metric_type.value}")

        value = metric.value
        if value < bounds.min:
            message = f"{metric.metric_type.value} value {value} is below minimum {bounds.min} ({bounds.description})"
            logger.warning("Value below minimum", metric_id=metric.id, metric_type=metric.metric_type.value, value=value, min=bounds.min)
            return ValidationResult.failure(ErrorCode.BELOW_MIN, message)

        if value > bounds.max:
            message = f"{metric.metric_type.value} value {value} exceeds maximum {bounds.max} ({bounds.description})"
            logger.warning("Value above maximum", metric_id=metric.id, metric_type=metric.metric_type.value, value=value, max=bounds.max)
            return ValidationResult.failure(ErrorCode.ABOVE_MAX, message)

        return ValidationResult.success()

    def validate_range_with_clamp(self, metric: Metric) -> ValidationResult:
        """
        Range check that clamps instead of rejecting.

        An out-of-range value is rewritten to the nearest bound and the
        record is marked as adjusted. Records that cannot be range-checked
        at all still fail.
        """
        result = self.validate_range(metric)
        if result.passed or result.error_code not in (ErrorCode.BELOW_MIN, ErrorCode.ABOVE_MAX):
            return result

        bounds = self.get_bounds(metric.metric_type)
        original = metric.value
        metric.value = bounds.clamp(original)
        metric.adjusted = True

        logger.info(
            "Value clamped",
            metric_id=metric.id,
            metric_type=metric.metric_type.value,
            original=original,
            clamped=metric.value,
        )
        return ValidationResult.success(f"Value clamped from {original} to {metric.value}")

    def validate_freshness(self, metric: Metric, now: Optional[datetime] = None) -> ValidationResult:
        """Check the age of a measurement"""
        if metric is None or metric.recorded_at is None:
            return ValidationResult.failure(ErrorCode.NULL_TIMESTAMP, "Recorded timestamp is null")

        now = now or self._clock()
        hours_old = (now - metric.recorded_at).total_seconds() / 3600

        if hours_old > self.stale_reject_hours:
            message = f"Data is {int(hours_old)} hours old (max {self.stale_reject_hours})"
            logger.warning("Stale data", metric_id=metric.id, hours_old=int(hours_old))
            return ValidationResult.failure(ErrorCode.STALE_DATA, message)

        if hours_old > self.stale_warning_hours:
            return ValidationResult.success(f"Data is {int(hours_old)} hours old (acceptable but aging)")

        return ValidationResult.success()

    def validate_all(self, metric: Optional[Metric], now: Optional[datetime] = None) -> ValidationResult:
        """Null, range and freshness checks; the first failure wins"""
        result = self.validate_not_null(metric)
        if not result.passed:
            return result

        result = self.validate_range(metric)
        if not result.passed:
            return result

        return self.validate_freshness(metric, now)

    def validate_aqi(self, aqi: Optional[float]) -> ValidationResult:
        """Validate an AQI reading and report its EPA category"""
        if aqi is None:
            return ValidationResult.failure(ErrorCode.NULL_AQI, "AQI value is null")
        if aqi < 0:
            return ValidationResult.failure(ErrorCode.NEGATIVE_AQI, f"AQI cannot be negative: {aqi}")
        if aqi > 500:
            return ValidationResult.failure(ErrorCode.AQI_OVERFLOW, f"AQI exceeds maximum scale: {aqi}")

        return ValidationResult.success(f"AQI {aqi} ({aqi_category(aqi)})")

    def validate_population(self, population: Optional[int]) -> ValidationResult:
        """Validate a population count"""
        if population is None:
            return ValidationResult.failure(ErrorCode.NULL_POPULATION, "Population is null")
        if population < 0:
            return ValidationResult.failure(ErrorCode.NEGATIVE_POPULATION, f"Population cannot be negative: {population}")
        if population > MAX_POPULATION:
            return ValidationResult.failure(
                ErrorCode.POPULATION_OVERFLOW,
                f"Population {population} exceeds largest known city size",
            )
        if population == 0:
            return ValidationResult.success("Population is zero (unpopulated or unknown)")

        return ValidationResult.success()

    # =========================================================================
    # BATCH CHECKS
    # =========================================================================

    def _partition(
        self,
        metrics: Iterable[Optional[Metric]],
        check: Callable[[Metric], ValidationResult],
        name: str,
    ) -> BatchValidationResult:
        batch = BatchValidationResult()

        for metric in metrics:
            result = check(metric)
            if result.passed:
                batch.valid_records.append(metric)
            else:
                batch.failed_records.append(FailedRecord(metric, result.error_code, result.message))

        logger.info(
            f"Batch {name} validation complete",
            passed=len(batch.valid_records),
            failed=len(batch.failed_records),
            pass_rate=round(batch.pass_rate, 2),
        )
        return batch

    def validate_not_null_batch(self, metrics: Iterable[Optional[Metric]]) -> BatchValidationResult:
        return self._partition(metrics, self.validate_not_null, "null")

    def validate_range_batch(self, metrics: Iterable[Metric], clamp: bool = False) -> BatchValidationResult:
        check = self.validate_range_with_clamp if clamp else self.validate_range
        return self._partition(metrics, check, "range")

    def validate_freshness_batch(self, metrics: Iterable[Metric], now: Optional[datetime] = None) -> BatchValidationResult:
        now = now or self._clock()
        return self._partition(metrics, lambda m: self.validate_freshness(m, now), "freshness")


def aqi_category(aqi: float) -> str:
    """EPA category label for an AQI value"""
    for upper, label in AQI_CATEGORIES:
        if aqi <= upper:
            return label
    return "Hazardous"
