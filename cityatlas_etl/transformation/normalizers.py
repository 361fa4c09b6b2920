"""
Metric Normalization Module

Rescales heterogeneous city metrics onto a common 0-100 scale so that AQI,
GDP, population and the rest can be compared and combined.

Methods:
- MIN_MAX:    clamp to the configured bounds, scale linearly
- PERCENTILE: rank within the current batch
- Z_SCORE:    standardize against the batch, map [-3, 3] onto [0, 100]

Metrics where lower is better (AQI, unemployment, cost of living, ...) are
inverted so that 100 is always the best score. A 0-1 percentile rank is
always computed alongside for cross-city ranking.
"""

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import structlog
from scipy import stats

from cityatlas_etl.records import Metric, MetricType

logger = structlog.get_logger(__name__)


class NormalizationMethod(str, Enum):
    """Scaling strategy"""
    MIN_MAX = "MIN_MAX"
    PERCENTILE = "PERCENTILE"
    Z_SCORE = "Z_SCORE"


@dataclass(frozen=True)
class NormalizationConfig:
    """Per-metric-type scaling parameters"""
    min: float
    max: float
    inverse: bool
    method: NormalizationMethod


@dataclass(frozen=True)
class MetricBounds:
    """Bounds and direction for display"""
    min: float
    max: float
    lower_is_better: bool


@dataclass(frozen=True)
class NormalizedMetric:
    """A metric together with its 0-100 score and batch percentile rank"""
    metric: Metric
    normalized_value: float
    percentile_rank: float
    method: NormalizationMethod


_MM = NormalizationMethod.MIN_MAX
_PCT = NormalizationMethod.PERCENTILE

METRIC_CONFIGS: Mapping[MetricType, NormalizationConfig] = MappingProxyType({
    # Environment: lower is better
    MetricType.AQI: NormalizationConfig(0, 500, True, _MM),
    MetricType.CARBON_EMISSIONS: NormalizationConfig(0, 50, True, _MM),
    MetricType.WATER_QUALITY: NormalizationConfig(0, 100, False, _MM),
    # Economy
    MetricType.UNEMPLOYMENT_RATE: NormalizationConfig(0, 25, True, _MM),
    MetricType.GDP_PER_CAPITA: NormalizationConfig(10_000, 150_000, False, _PCT),
    MetricType.COST_OF_LIVING: NormalizationConfig(50, 300, True, _MM),
    MetricType.AVERAGE_SALARY: NormalizationConfig(20_000, 200_000, False, _PCT),
    # Demographics
    MetricType.POPULATION: NormalizationConfig(10_000, 40_000_000, False, _PCT),
    MetricType.POPULATION_GROWTH: NormalizationConfig(-5, 10, False, _MM),
    MetricType.MEDIAN_AGE: NormalizationConfig(20, 50, False, _MM),
    # Infrastructure
    MetricType.TRANSIT_COVERAGE: NormalizationConfig(0, 100, False, _MM),
    MetricType.INTERNET_SPEED: NormalizationConfig(10, 1_000, False, _PCT),
    MetricType.HOUSING_AFFORDABILITY: NormalizationConfig(0, 10, True, _MM),
})

DEFAULT_CONFIG = NormalizationConfig(0, 100, False, _MM)

Z_RANGE = 3.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def percentile_ranks(values: Sequence[float]) -> np.ndarray:
    """
    Fraction of peer values strictly less than each value.

    rank_i = count(v < v_i) / (n - 1); a batch of one ranks 0.5.
    """
    arr = np.asarray(values, dtype=float)
    n = arr.size
    if n <= 1:
        return np.full(n, 0.5)

    sorted_values = np.sort(arr)
    strictly_less = np.searchsorted(sorted_values, arr, side="left")
    return strictly_less / (n - 1)


class MetricNormalizer:
    """
    Normalizes metric batches to 0-100.

    Example:
        normalizer = MetricNormalizer()
        normalized = normalizer.normalize(clean_metrics)
        score = normalizer.normalize_single_value(120.0, MetricType.AQI)
    """

    def __init__(self, configs: Mapping[MetricType, NormalizationConfig] = METRIC_CONFIGS):
        self.configs = configs

    def config_for(self, metric_type: MetricType) -> NormalizationConfig:
        return self.configs.get(metric_type, DEFAULT_CONFIG)

    def get_metric_bounds(self, metric_type: MetricType) -> MetricBounds:
        config = self.config_for(metric_type)
        return MetricBounds(config.min, config.max, config.inverse)

    # =========================================================================
    # SCALING PRIMITIVES
    # =========================================================================

    @staticmethod
    def min_max(value: float, config: NormalizationConfig) -> float:
        """Clamp into [min, max] and scale to [0, 100]; degenerate bounds give 50"""
        if config.max == config.min:
            scaled = 50.0
        else:
            clamped = _clamp(value, config.min, config.max)
            scaled = (clamped - config.min) / (config.max - config.min) * 100.0
        return 100.0 - scaled if config.inverse else scaled

    @staticmethod
    def from_percentile(rank: float, config: NormalizationConfig) -> float:
        scaled = rank * 100.0
        return 100.0 - scaled if config.inverse else scaled

    @staticmethod
    def from_z_score(z: float, config: NormalizationConfig) -> float:
        """Map z in [-3, 3] onto [0, 100], clamped"""
        scaled = _clamp((z + Z_RANGE) / (2 * Z_RANGE) * 100.0, 0.0, 100.0)
        return 100.0 - scaled if config.inverse else scaled

    # =========================================================================
    # BATCH NORMALIZATION
    # =========================================================================

    def normalize(self, metrics: Sequence[Metric]) -> List[NormalizedMetric]:
        """
        Normalize a batch of clean metrics.

        Percentile and z-score statistics are computed per metric type
        within the batch. Output order follows input order.
        """
        groups: Dict[MetricType, List[int]] = defaultdict(list)
        for i, metric in enumerate(metrics):
            groups[metric.metric_type].append(i)

        results: List[Optional[NormalizedMetric]] = [None] * len(metrics)

        for metric_type, indices in groups.items():
            config = self.config_for(metric_type)
            values = np.array([metrics[i].value for i in indices], dtype=float)
            ranks = percentile_ranks(values)

            if config.method == NormalizationMethod.Z_SCORE:
                z_scores = np.nan_to_num(stats.zscore(values, ddof=0)) if values.size > 1 else np.zeros(values.size)

            for pos, i in enumerate(indices):
                rank = float(ranks[pos])
                if config.method == NormalizationMethod.PERCENTILE:
                    score = self.from_percentile(rank, config)
                elif config.method == NormalizationMethod.Z_SCORE:
                    score = self.from_z_score(float(z_scores[pos]), config)
                else:
                    score = self.min_max(float(values[pos]), config)

                results[i] = NormalizedMetric(metrics[i], score, rank, config.method)

            logger.debug(
                f"Normalized {len(indices)} {metric_type.value} values",
                method=config.method.value,
                inverse=config.inverse,
            )

        logger.info(f"Normalized {len(metrics)} metrics", metric_types=len(groups))
        return results

    def normalize_single_value(self, value: float, metric_type: MetricType) -> float:
        """Score one value without a batch; always MIN_MAX against static bounds"""
        config = self.config_for(metric_type)
        return self.min_max(value, NormalizationConfig(config.min, config.max, config.inverse, _MM))
