"""
Data Quality Fallback Module

Tiered substitution for missing metric values:

1. CACHED   - last known good value for the city, within a per-type validity window
2. REGIONAL - regional average for the city's country
3. GLOBAL   - static global default
4. NONE     - nothing available; the caller receives None

The cache is in-process and guarded by a lock so the cleaner (batch path)
and any concurrent readers can share one resolver.
"""

import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Tuple

import structlog

from cityatlas_etl.records import MetricType, utcnow

logger = structlog.get_logger(__name__)


class FallbackTier(str, Enum):
    """Resolution tier that produced a value"""
    CACHED = "CACHED"
    REGIONAL = "REGIONAL"
    GLOBAL = "GLOBAL"
    NONE = "NONE"

    @property
    def description(self) -> str:
        return {
            FallbackTier.CACHED: "Tier 1: Cached value",
            FallbackTier.REGIONAL: "Tier 2: Regional average",
            FallbackTier.GLOBAL: "Tier 3: Global default",
            FallbackTier.NONE: "No fallback available",
        }[self]


@dataclass(frozen=True)
class FallbackConfig:
    """Global default and cache validity for one metric type"""
    default_value: Optional[float]
    cache_validity_hours: int
    description: str

    @property
    def has_default(self) -> bool:
        return self.default_value is not None


DEFAULT_FALLBACKS: Mapping[MetricType, FallbackConfig] = MappingProxyType({
    MetricType.AQI: FallbackConfig(75.0, 24, "Global average AQI (moderate)"),
    MetricType.CARBON_EMISSIONS: FallbackConfig(8.0, 168, "Global average tons CO2 per capita"),
    MetricType.WATER_QUALITY: FallbackConfig(70.0, 168, "Global average water quality index"),
    MetricType.GDP_PER_CAPITA: FallbackConfig(35_000.0, 720, "Global average GDP per capita"),
    MetricType.UNEMPLOYMENT_RATE: FallbackConfig(5.0, 168, "Global average unemployment rate"),
    MetricType.COST_OF_LIVING: FallbackConfig(100.0, 720, "Baseline cost of living index"),
    MetricType.AVERAGE_SALARY: FallbackConfig(50_000.0, 720, "Global average salary"),
    MetricType.POPULATION: FallbackConfig(None, 8760, "Population required - no fallback"),
    MetricType.POPULATION_GROWTH: FallbackConfig(1.0, 8760, "Global average population growth"),
    MetricType.MEDIAN_AGE: FallbackConfig(35.0, 8760, "Global median age"),
    MetricType.TRANSIT_COVERAGE: FallbackConfig(50.0, 720, "Average transit coverage"),
    MetricType.INTERNET_SPEED: FallbackConfig(50.0, 168, "Global average internet speed (Mbps)"),
    MetricType.HOUSING_AFFORDABILITY: FallbackConfig(100.0, 720, "Baseline housing affordability"),
})

UNCONFIGURED_FALLBACK = FallbackConfig(None, 24, "No fallback configured")

REGIONAL_AVERAGES: Mapping[str, Mapping[MetricType, float]] = MappingProxyType({
    "US": MappingProxyType({
        MetricType.AQI: 45.0,
        MetricType.GDP_PER_CAPITA: 65_000.0,
        MetricType.UNEMPLOYMENT_RATE: 4.0,
        MetricType.COST_OF_LIVING: 120.0,
        MetricType.AVERAGE_SALARY: 55_000.0,
    }),
    "GB": MappingProxyType({
        MetricType.AQI: 35.0,
        MetricType.GDP_PER_CAPITA: 45_000.0,
        MetricType.UNEMPLOYMENT_RATE: 4.5,
        MetricType.COST_OF_LIVING: 115.0,
        MetricType.AVERAGE_SALARY: 42_000.0,
    }),
    "DE": MappingProxyType({
        MetricType.AQI: 30.0,
        MetricType.GDP_PER_CAPITA: 50_000.0,
        MetricType.UNEMPLOYMENT_RATE: 3.5,
        MetricType.COST_OF_LIVING: 105.0,
        MetricType.AVERAGE_SALARY: 48_000.0,
    }),
    "IN": MappingProxyType({
        MetricType.AQI: 120.0,
        MetricType.GDP_PER_CAPITA: 2_500.0,
        MetricType.UNEMPLOYMENT_RATE: 7.0,
        MetricType.COST_OF_LIVING: 35.0,
        MetricType.AVERAGE_SALARY: 8_000.0,
    }),
})


@dataclass(frozen=True)
class FallbackResult:
    """Value produced by the tiered resolution"""
    value: Optional[float]
    tier: FallbackTier
    description: str

    @property
    def found(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class ValueWithFallback:
    """Composite result: the original value, or a substitute and its tier"""
    value: Optional[float]
    used_fallback: bool
    tier: Optional[FallbackTier]
    description: str


@dataclass(frozen=True)
class CachedValue:
    value: float
    cached_at: datetime


class DataQualityFallback:
    """
    Tiered fallback resolver with an in-memory TTL cache.

    Example:
        fallback = DataQualityFallback()
        fallback.cache_value("new-york", MetricType.AQI, 42.0)
        result = fallback.resolve_fallback("new-york", "US", MetricType.AQI)
        assert result.tier == FallbackTier.CACHED
    """

    def __init__(
        self,
        defaults: Mapping[MetricType, FallbackConfig] = DEFAULT_FALLBACKS,
        regional_averages: Mapping[str, Mapping[MetricType, float]] = REGIONAL_AVERAGES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.defaults = defaults
        self.regional_averages = regional_averages
        self._clock = clock
        self._cache: Dict[str, CachedValue] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(city_slug: str, metric_type: MetricType) -> str:
        return f"{city_slug}:{metric_type.value}"

    def config_for(self, metric_type: MetricType) -> FallbackConfig:
        return self.defaults.get(metric_type, UNCONFIGURED_FALLBACK)

    # =========================================================================
    # CACHE
    # =========================================================================

    def cache_value(self, city_slug: str, metric_type: MetricType, value: Optional[float]) -> None:
        """Remember a known good value; None is ignored"""
        if not city_slug or metric_type is None or value is None:
            return

        key = self.cache_key(city_slug, metric_type)
        with self._lock:
            self._cache[key] = CachedValue(value=value, cached_at=self._clock())

    def get_cached_value(self, city_slug: str, metric_type: MetricType) -> Optional[float]:
        """Cached value if still within its validity window; expired entries are evicted"""
        key = self.cache_key(city_slug, metric_type)
        max_age = timedelta(hours=self.config_for(metric_type).cache_validity_hours)

        with self._lock:
            cached = self._cache.get(key)
            if cached is None:
                return None
            if self._clock() - cached.cached_at > max_age:
                del self._cache[key]
                logger.debug("Cache entry expired", key=key)
                return None
            return cached.value

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Fallback cache cleared")

    def clear_cache_for_city(self, city_slug: str) -> int:
        """Drop all cached values of one city; returns the number removed"""
        prefix = f"{city_slug}:"
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for key in keys:
                del self._cache[key]
        logger.info("Fallback cache cleared for city", city=city_slug, removed=len(keys))
        return len(keys)

    def cache_stats(self) -> Dict[str, object]:
        """Entry count, total and per metric type"""
        with self._lock:
            keys = list(self._cache)
        by_type = Counter(key.rsplit(":", 1)[1] for key in keys)
        return {"total": len(keys), "by_type": dict(by_type)}

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def _regional_average(self, country_code: Optional[str], metric_type: MetricType) -> Optional[Tuple[str, float]]:
        if not country_code:
            return None
        code = country_code.upper()
        region = self.regional_averages.get(code)
        if region is None or metric_type not in region:
            return None
        return code, region[metric_type]

    def resolve_fallback(
        self,
        city_slug: Optional[str],
        country_code: Optional[str],
        metric_type: MetricType,
    ) -> FallbackResult:
        """Walk the tiers and return the first value found"""
        if city_slug:
            cached = self.get_cached_value(city_slug, metric_type)
            if cached is not None:
                logger.debug("Fallback resolved from cache", city=city_slug, metric_type=metric_type.value)
                return FallbackResult(cached, FallbackTier.CACHED, "Last known value from cache")

        regional = self._regional_average(country_code, metric_type)
        if regional is not None:
            code, value = regional
            logger.debug("Fallback resolved from regional average", city=city_slug, country=code, metric_type=metric_type.value)
            return FallbackResult(value, FallbackTier.REGIONAL, f"{code} regional average")

        config = self.config_for(metric_type)
        if config.has_default:
            logger.debug("Fallback resolved from global default", city=city_slug, metric_type=metric_type.value)
            return FallbackResult(config.default_value, FallbackTier.GLOBAL, config.description)

        return FallbackResult(None, FallbackTier.NONE, config.description)

    def get_value_with_fallback(
        self,
        value: Optional[float],
        city_slug: Optional[str],
        country_code: Optional[str],
        metric_type: MetricType,
    ) -> ValueWithFallback:
        """
        Return ``value`` when present (caching it), otherwise a substitute.

        Exhausted fallbacks are logged at error level and surface as a None
        value with tier NONE; no exception is raised.
        """
        if value is not None:
            if city_slug:
                self.cache_value(city_slug, metric_type, value)
            return ValueWithFallback(value, False, None, "Original value")

        result = self.resolve_fallback(city_slug, country_code, metric_type)

        if result.tier == FallbackTier.NONE:
            logger.error(
                "No fallback available for required metric",
                city=city_slug,
                country=country_code,
                metric_type=metric_type.value,
            )
        else:
            logger.warning(
                "Using fallback value",
                city=city_slug,
                metric_type=metric_type.value,
                tier=result.tier.value,
                value=result.value,
            )

        return ValueWithFallback(result.value, result.tier != FallbackTier.NONE, result.tier, result.description)
