"""Variant comparison (similarity scoring and recommendations)."""

from .engine import (
    ComparisonEngine,
    ComparisonResult,
    MetricComparison,
    SimilarityAnalysis,
    SimilarityCluster,
)
from .scorers import ComparableVariant, DigestVisualScorer, MetricScorer, ReportScoreReader, VisualScorer

__all__ = [
    "ComparableVariant",
    "ComparisonEngine",
    "ComparisonResult",
    "DigestVisualScorer",
    "MetricComparison",
    "MetricScorer",
    "ReportScoreReader",
    "SimilarityAnalysis",
    "SimilarityCluster",
    "VisualScorer",
]
