"""
Unit Tests - Data Quality
"""
from datetime import datetime, timedelta

import pytest

from cityatlas_etl.quality.fallback import (
    DataQualityFallback,
    FallbackTier,
)
from cityatlas_etl.quality.outliers import OutlierSeverity, ZScoreOutlierDetector
from cityatlas_etl.quality.validators import (
    DataQualityValidator,
    ErrorCode,
    aqi_category,
)
from cityatlas_etl.records import MetricType


class TestDataQualityValidator:
    """Tests for DataQualityValidator"""

    @pytest.fixture
    def validator(self, now):
        return DataQualityValidator(clock=lambda: now)

    def test_null_record(self, validator):
        """Test a missing record is rejected as NULL_RECORD"""
        result = validator.validate_not_null(None)

        assert not result.passed
        assert result.error_code == ErrorCode.NULL_RECORD

    def test_null_fields_are_listed(self, validator, make_metric):
        """Test every missing required field is named"""
        metric = make_metric(city=None, value=None)

        result = validator.validate_not_null(metric)

        assert result.error_code == ErrorCode.NULL_FIELD
        assert "city" in result.message
        assert "value" in result.message
        assert "metric_type" not in result.message

    def test_aqi_above_max(self, validator, make_metric):
        """Test AQI 650 exceeds the EPA scale"""
        result = validator.validate_range(make_metric(value=650.0))

        assert not result.passed
        assert result.error_code == ErrorCode.ABOVE_MAX

    def test_aqi_clamped(self, validator, make_metric):
        """Test AQI 650 is clamped to 500 and marked adjusted"""
        metric = make_metric(value=650.0)

        result = validator.validate_range_with_clamp(metric)

        assert result.passed
        assert metric.value == 500.0
        assert metric.adjusted
        assert "clamped from 650.0 to 500" in result.message

    def test_population_below_min(self, validator, make_metric):
        """Test a negative population metric is BELOW_MIN"""
        result = validator.validate_range(make_metric(metric_type=MetricType.POPULATION, value=-1000))

        assert result.error_code == ErrorCode.BELOW_MIN

    def test_bounds_are_inclusive(self, validator, make_metric):
        """Test values on the bounds pass"""
        assert validator.validate_range(make_metric(value=0.0)).passed
        assert validator.validate_range(make_metric(value=500.0)).passed

    def test_unbounded_type_passes(self, validator, make_metric):
        """Test metric types without bounds pass range checks"""
        result = validator.validate_range(make_metric(metric_type=MetricType.CRIME_RATE, value=1e9))

        assert result.passed
        assert "No bounds defined" in result.message

    def test_range_without_value_is_invalid_input(self, validator, make_metric):
        """Test range check on a metric without value"""
        result = validator.validate_range_with_clamp(make_metric(value=None))

        assert result.error_code == ErrorCode.INVALID_INPUT

    def test_freshness(self, validator, make_metric, now):
        """Test fresh, aging and stale measurements"""
        fresh = validator.validate_freshness(make_metric(recorded_at=now - timedelta(hours=2)))
        aging = validator.validate_freshness(make_metric(recorded_at=now - timedelta(hours=48)))
        stale = validator.validate_freshness(make_metric(recorded_at=now - timedelta(hours=200)))

        assert fresh.passed and fresh.message is None
        assert aging.passed and "aging" in aging.message
        assert stale.error_code == ErrorCode.STALE_DATA

    def test_validate_all_first_failure_wins(self, validator, make_metric, now):
        """Test the range failure is reported before staleness"""
        metric = make_metric(value=900.0, recorded_at=now - timedelta(days=30))

        result = validator.validate_all(metric)

        assert result.error_code == ErrorCode.ABOVE_MAX

    @pytest.mark.parametrize(
        "aqi,code",
        [(None, ErrorCode.NULL_AQI), (-1, ErrorCode.NEGATIVE_AQI), (501, ErrorCode.AQI_OVERFLOW)],
    )
    def test_validate_aqi_failures(self, validator, aqi, code):
        """Test AQI specific failures"""
        assert validator.validate_aqi(aqi).error_code == code

    def test_validate_aqi_category(self, validator):
        """Test AQI success carries the EPA category"""
        result = validator.validate_aqi(120)

        assert result.passed
        assert "Unhealthy for Sensitive Groups" in result.message
        assert aqi_category(350) == "Hazardous"

    def test_validate_population(self, validator):
        """Test population checks"""
        assert validator.validate_population(-100).error_code == ErrorCode.NEGATIVE_POPULATION
        assert validator.validate_population(None).error_code == ErrorCode.NULL_POPULATION
        assert validator.validate_population(60_000_000).error_code == ErrorCode.POPULATION_OVERFLOW
        assert validator.validate_population(0).passed
        assert validator.validate_population(8_000_000).passed

    def test_batch_partition(self, validator, make_metric):
        """Test batch validation partitions records"""
        metrics = [make_metric(value=10.0), make_metric(value=700.0), make_metric(value=20.0)]

        batch = validator.validate_range_batch(metrics)

        assert len(batch.valid_records) == 2
        assert len(batch.failed_records) == 1
        assert batch.failed_records[0].error_code == ErrorCode.ABOVE_MAX
        assert batch.pass_rate == pytest.approx(200 / 3)

    def test_empty_batch_pass_rate(self, validator):
        """Test an empty batch reports a 100% pass rate"""
        assert validator.validate_not_null_batch([]).pass_rate == 100.0


class TestZScoreOutlierDetector:
    """Tests for ZScoreOutlierDetector"""

    def test_detects_spike(self):
        """Test a single spike among stable values is flagged"""
        values = [50.0] * 19 + [400.0]

        outliers = ZScoreOutlierDetector(threshold=3.0).detect(values)

        assert len(outliers) == 1
        assert outliers[0].index == 19
        assert outliers[0].z_score == pytest.approx(4.359, abs=0.01)
        assert outliers[0].severity == OutlierSeverity.MEDIUM

    def test_no_spread_flags_nothing(self):
        """Test constant values produce no outliers"""
        assert ZScoreOutlierDetector(threshold=3.0).detect([7.0] * 10) == []

    def test_too_few_values(self):
        """Test fewer than two values produce no outliers"""
        assert ZScoreOutlierDetector(threshold=3.0).detect([1.0]) == []

    def test_threshold_from_settings(self, test_settings):
        """Test default threshold comes from settings"""
        assert ZScoreOutlierDetector().threshold == test_settings.data_quality.outlier_z_threshold


class TestDataQualityFallback:
    """Tests for DataQualityFallback"""

    @pytest.fixture
    def clock(self):
        class Clock:
            current = datetime(2025, 1, 15, 12, 0, 0)

            def __call__(self):
                return self.current

        return Clock()

    @pytest.fixture
    def fallback(self, clock):
        return DataQualityFallback(clock=clock)

    def test_cached_tier(self, fallback):
        """Test a cached value wins over regional and global"""
        fallback.cache_value("new-york", MetricType.AQI, 42.0)

        result = fallback.resolve_fallback("new-york", "US", MetricType.AQI)

        assert result.tier == FallbackTier.CACHED
        assert result.value == 42.0
        assert result.description == "Last known value from cache"

    def test_regional_tier(self, fallback):
        """Test regional average when nothing is cached"""
        result = fallback.resolve_fallback("berlin", "de", MetricType.AQI)

        assert result.tier == FallbackTier.REGIONAL
        assert result.value == 30.0
        assert result.description == "DE regional average"

    def test_global_tier(self, fallback):
        """Test unknown region falls back to the global default"""
        result = fallback.resolve_fallback("mumbai", "XX", MetricType.COST_OF_LIVING)

        assert result.tier == FallbackTier.GLOBAL
        assert result.value == 100.0

    def test_population_has_no_fallback(self, fallback):
        """Test population exhausts every tier"""
        result = fallback.resolve_fallback("nowhere", None, MetricType.POPULATION)

        assert result.tier == FallbackTier.NONE
        assert result.value is None
        assert not result.found

    def test_cache_expiry(self, fallback, clock):
        """Test cached values expire after the metric validity window"""
        fallback.cache_value("new-york", MetricType.AQI, 42.0)
        clock.current += timedelta(hours=25)

        assert fallback.get_cached_value("new-york", MetricType.AQI) is None
        assert fallback.cache_stats()["total"] == 0

    def test_value_with_fallback_original(self, fallback):
        """Test a present value is returned and cached"""
        result = fallback.get_value_with_fallback(55.0, "london", "GB", MetricType.AQI)

        assert not result.used_fallback
        assert result.value == 55.0
        assert fallback.get_cached_value("london", MetricType.AQI) == 55.0

    def test_value_with_fallback_substitute(self, fallback):
        """Test a missing value is substituted"""
        result = fallback.get_value_with_fallback(None, "london", "GB", MetricType.AQI)

        assert result.used_fallback
        assert result.tier == FallbackTier.REGIONAL
        assert result.value == 35.0

    def test_value_with_fallback_exhausted(self, fallback):
        """Test exhausted fallback returns None without raising"""
        result = fallback.get_value_with_fallback(None, "nowhere", None, MetricType.POPULATION)

        assert result.value is None
        assert not result.used_fallback
        assert result.tier == FallbackTier.NONE

    def test_clear_cache_for_city(self, fallback):
        """Test clearing one city leaves the others"""
        fallback.cache_value("new-york", MetricType.AQI, 42.0)
        fallback.cache_value("new-york", MetricType.GDP_PER_CAPITA, 80_000.0)
        fallback.cache_value("london", MetricType.AQI, 30.0)

        removed = fallback.clear_cache_for_city("new-york")

        assert removed == 2
        assert fallback.cache_stats() == {"total": 1, "by_type": {"AQI": 1}}

        fallback.clear_cache()
        assert fallback.cache_stats()["total"] == 0
