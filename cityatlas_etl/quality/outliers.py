"""
Outlier Detection Module

Statistical outlier detection for metric batches using z-scores.

A value is an outlier when its distance from the group mean exceeds the
threshold in population standard deviations. Groups with no spread flag
nothing.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
import structlog

from cityatlas_etl.config import get_settings

logger = structlog.get_logger(__name__)


class OutlierSeverity(str, Enum):
    """How far past the threshold an outlier lies"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


@dataclass(frozen=True)
class OutlierResult:
    """Single flagged value"""
    index: int
    value: float
    z_score: float
    mean: float
    std: float
    severity: OutlierSeverity

    @property
    def message(self) -> str:
        return f"value {self.value:.2f} is {self.z_score:.2f} standard deviations from mean {self.mean:.2f}"


class ZScoreOutlierDetector:
    """
    Z-score outlier detector.

    Example:
        detector = ZScoreOutlierDetector(threshold=3.0)
        outliers = detector.detect([50.0] * 20 + [400.0])
    """

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = threshold if threshold is not None else get_settings().data_quality.outlier_z_threshold

    def detect(self, values: Sequence[float], name: str = "values") -> List[OutlierResult]:
        """Return every value whose |z| exceeds the threshold"""
        arr = np.asarray(values, dtype=float)
        if arr.size < 2:
            return []

        mean = float(np.mean(arr))
        std = float(np.std(arr))
        if std == 0:
            return []

        z_scores = np.abs((arr - mean) / std)
        outliers = []

        for i in np.flatnonzero(z_scores > self.threshold):
            z_score = float(z_scores[i])
            severity = (
                OutlierSeverity.CRITICAL if z_score > self.threshold * 2
                else OutlierSeverity.HIGH if z_score > self.threshold * 1.5
                else OutlierSeverity.MEDIUM
            )
            outliers.append(OutlierResult(
                index=int(i),
                value=float(arr[i]),
                z_score=z_score,
                mean=mean,
                std=std,
                severity=severity,
            ))

        if outliers:
            logger.info(
                f"Outliers detected in {name}",
                count=len(outliers),
                mean=round(mean, 4),
                std=round(std, 4),
                threshold=self.threshold,
            )

        return outliers
