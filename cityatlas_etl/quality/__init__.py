"""
Data Quality Module
"""
from .validators import DataQualityValidator, ValidationResult, BatchValidationResult, ErrorCode
from .outliers import ZScoreOutlierDetector, OutlierResult
from .fallback import DataQualityFallback, FallbackResult, FallbackTier, ValueWithFallback

__all__ = [
    "DataQualityValidator",
    "ValidationResult",
    "BatchValidationResult",
    "ErrorCode",
    "ZScoreOutlierDetector",
    "OutlierResult",
    "DataQualityFallback",
    "FallbackResult",
    "FallbackTier",
    "ValueWithFallback",
]
