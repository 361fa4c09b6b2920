"""
Data Transformation Module
"""
from .cleaners import DataCleaner, CleaningResult, RejectedRecord, quality_score
from .normalizers import MetricNormalizer, NormalizedMetric, NormalizationMethod
from .aggregators import DataAggregator, AggregationSummary, SkippedGrain
from .dimensions import DimensionLoader, DimensionChangeSet
from .transformers import ETLTransformer, TransformResult

__all__ = [
    "DataCleaner",
    "CleaningResult",
    "RejectedRecord",
    "quality_score",
    "MetricNormalizer",
    "NormalizedMetric",
    "NormalizationMethod",
    "DataAggregator",
    "AggregationSummary",
    "SkippedGrain",
    "DimensionLoader",
    "DimensionChangeSet",
    "ETLTransformer",
    "TransformResult",
]
