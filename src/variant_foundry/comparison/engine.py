"""Pairwise similarity scoring, clustering and recommendations.

Similarity is combined per pair as a weighted sum of three dimensions:

- visual: delegated to a ``VisualScorer`` over both screenshot sets;
- accessibility and performance: ``1 - |score_a - score_b| / 100`` over
  0-100 scores read by ``MetricScorer`` instances.

A dimension whose scorer has no answer drops out and the remaining weights
are renormalized; the combined value is clamped to [0, 1].
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from ..config import ComparisonWeights
from ..orchestration.models import TaskResult
from .scorers import ComparableVariant, DigestVisualScorer, MetricScorer, ReportScoreReader, VisualScorer

logger = logging.getLogger(__name__)

HIGH_SIMILARITY = 0.8
MEDIUM_SIMILARITY = 0.6
TOO_SIMILAR = 0.9
TOO_DIFFERENT = 0.5

DIMENSIONS = ("visual", "accessibility", "performance")


@dataclass(frozen=True)
class MetricComparison:
    """Both sides of one 0-100 metric."""

    score_a: float | None = None
    score_b: float | None = None

    @property
    def difference(self) -> float | None:
        if self.score_a is None or self.score_b is None:
            return None
        return abs(self.score_a - self.score_b)

    @property
    def similarity(self) -> float | None:
        diff = self.difference
        if diff is None:
            return None
        return float(np.clip(1.0 - diff / 100.0, 0.0, 1.0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "variationA": self.score_a,
            "variationB": self.score_b,
            "difference": self.difference,
            "similarity": self.similarity,
        }


@dataclass(frozen=True)
class ComparisonResult:
    """Similarity between two completed variants."""

    variant_a: str
    variant_b: str
    visual: float | None
    accessibility: MetricComparison
    performance: MetricComparison
    overall_similarity: float

    @property
    def pair(self) -> tuple[str, str]:
        return (self.variant_a, self.variant_b)

    def to_dict(self) -> dict[str, Any]:
        return {
            "variations": [self.variant_a, self.variant_b],
            "visualSimilarity": self.visual,
            "accessibility": self.accessibility.to_dict(),
            "performance": self.performance.to_dict(),
            "overallSimilarity": self.overall_similarity,
        }


@dataclass(frozen=True)
class SimilarityCluster:
    name: str
    threshold: str
    pairs: tuple[tuple[str, str], ...] = ()

    @property
    def count(self) -> int:
        return len(self.pairs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "threshold": self.threshold,
            "count": self.count,
            "pairs": [list(p) for p in self.pairs],
        }


def _empty_clusters() -> tuple[SimilarityCluster, ...]:
    return (
        SimilarityCluster("High Similarity", ">80%"),
        SimilarityCluster("Medium Similarity", "60-80%"),
        SimilarityCluster("Low Similarity", "<=60%"),
    )


@dataclass(frozen=True)
class SimilarityAnalysis:
    """Aggregate view over a set of pairwise comparisons.

    The default instance is the zeroed analysis used for empty input.
    """

    total_comparisons: int = 0
    average_similarity: float = 0.0
    std_similarity: float = 0.0
    most_similar: ComparisonResult | None = None
    most_different: ComparisonResult | None = None
    clusters: tuple[SimilarityCluster, ...] = field(default_factory=_empty_clusters)
    variants: tuple[str, ...] = ()
    matrix: tuple[tuple[float | None, ...], ...] = ()

    def cluster(self, name: str) -> SimilarityCluster:
        for c in self.clusters:
            if c.name.lower().startswith(name.lower()):
                return c
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalComparisons": self.total_comparisons,
            "averageSimilarity": self.average_similarity,
            "stdSimilarity": self.std_similarity,
            "mostSimilarPair": self.most_similar.to_dict() if self.most_similar else None,
            "mostDifferentPair": self.most_different.to_dict() if self.most_different else None,
            "clusters": [c.to_dict() for c in self.clusters],
            "variants": list(self.variants),
            "matrix": [list(row) for row in self.matrix],
        }


def _weights_dict(weights: ComparisonWeights | Mapping[str, float] | None) -> dict[str, float]:
    if weights is None:
        return ComparisonWeights().as_dict()
    if isinstance(weights, ComparisonWeights):
        return weights.as_dict()
    merged = ComparisonWeights().as_dict()
    merged.update({k: float(v) for k, v in weights.items() if k in merged})
    return merged


class ComparisonEngine:
    """Scores completed variants against each other.

    Example:
        >>> engine = ComparisonEngine()
        >>> comparisons = engine.compare_all(results)
        >>> analysis = engine.cluster_and_rank(comparisons)
        >>> engine.generate_recommendations(analysis)
    """

    def __init__(
        self,
        visual_scorer: VisualScorer | None = None,
        metric_scorers: Mapping[str, MetricScorer] | None = None,
        weights: ComparisonWeights | Mapping[str, float] | None = None,
    ) -> None:
        self.visual_scorer: VisualScorer = visual_scorer or DigestVisualScorer()
        if metric_scorers is None:
            metric_scorers = {
                "accessibility": ReportScoreReader("accessibility"),
                "performance": ReportScoreReader("performance"),
            }
        self.metric_scorers = dict(metric_scorers)
        self.weights = _weights_dict(weights)

    def _metric(self, dimension: str, variant: ComparableVariant) -> float | None:
        scorer = self.metric_scorers.get(dimension)
        if scorer is None:
            return None
        try:
            return scorer.score(variant)
        except Exception:
            logger.exception("%s scorer failed for %s", dimension, variant.name)
            return None

    def _visual(self, a: ComparableVariant, b: ComparableVariant) -> float | None:
        try:
            value = self.visual_scorer.score(a, b)
        except Exception:
            logger.exception("Visual scorer failed for %s vs %s", a.name, b.name)
            return None
        return None if value is None else float(np.clip(value, 0.0, 1.0))

    def pairwise_compare(
        self,
        a: ComparableVariant | TaskResult,
        b: ComparableVariant | TaskResult,
        weights: ComparisonWeights | Mapping[str, float] | None = None,
    ) -> ComparisonResult:
        """Weighted similarity of two variants in [0, 1]."""
        va = _comparable(a)
        vb = _comparable(b)
        w = self.weights if weights is None else _weights_dict(weights)

        accessibility = MetricComparison(self._metric("accessibility", va), self._metric("accessibility", vb))
        performance = MetricComparison(self._metric("performance", va), self._metric("performance", vb))
        visual = self._visual(va, vb)

        scores = {"visual": visual, "accessibility": accessibility.similarity, "performance": performance.similarity}
        available = [d for d in DIMENSIONS if scores[d] is not None and w.get(d, 0.0) > 0]
        if available:
            wv = np.array([w[d] for d in available], dtype=float)
            sv = np.array([scores[d] for d in available], dtype=float)
            overall = float(np.clip(np.dot(wv, sv) / wv.sum(), 0.0, 1.0))
        else:
            logger.warning("No similarity dimension available for %s vs %s", va.name, vb.name)
            overall = 0.0

        return ComparisonResult(
            variant_a=va.name,
            variant_b=vb.name,
            visual=visual,
            accessibility=accessibility,
            performance=performance,
            overall_similarity=overall,
        )

    def compare_all(
        self,
        variants: Sequence[ComparableVariant | TaskResult],
        weights: ComparisonWeights | Mapping[str, float] | None = None,
    ) -> list[ComparisonResult]:
        """Compare every unordered pair of successful variants, in input order."""
        usable = [_comparable(v) for v in variants if not isinstance(v, TaskResult) or v.success]
        return [self.pairwise_compare(a, b, weights) for a, b in itertools.combinations(usable, 2)]

    def cluster_and_rank(self, comparisons: Sequence[ComparisonResult]) -> SimilarityAnalysis:
        """Bucket pairs by similarity and find the extremes; empty input gives a zeroed analysis."""
        if not comparisons:
            return SimilarityAnalysis()

        values = np.array([c.overall_similarity for c in comparisons], dtype=float)
        most_similar = comparisons[int(np.argmax(values))]
        # Ties for the minimum resolve to the last pair, as in a stable descending sort.
        most_different = comparisons[len(values) - 1 - int(np.argmin(values[::-1]))]

        high = tuple(c.pair for c in comparisons if c.overall_similarity > HIGH_SIMILARITY)
        medium = tuple(
            c.pair for c in comparisons if MEDIUM_SIMILARITY < c.overall_similarity <= HIGH_SIMILARITY
        )
        low = tuple(c.pair for c in comparisons if c.overall_similarity <= MEDIUM_SIMILARITY)
        clusters = (
            SimilarityCluster("High Similarity", ">80%", high),
            SimilarityCluster("Medium Similarity", "60-80%", medium),
            SimilarityCluster("Low Similarity", "<=60%", low),
        )

        names: list[str] = []
        for c in comparisons:
            for n in c.pair:
                if n not in names:
                    names.append(n)
        index = {n: i for i, n in enumerate(names)}
        matrix = np.full((len(names), len(names)), np.nan)
        np.fill_diagonal(matrix, 1.0)
        for c in comparisons:
            i, j = index[c.variant_a], index[c.variant_b]
            matrix[i, j] = matrix[j, i] = c.overall_similarity

        return SimilarityAnalysis(
            total_comparisons=len(comparisons),
            average_similarity=float(values.mean()),
            std_similarity=float(values.std()),
            most_similar=most_similar,
            most_different=most_different,
            clusters=clusters,
            variants=tuple(names),
            matrix=tuple(tuple(None if np.isnan(v) else float(v) for v in row) for row in matrix),
        )

    def generate_recommendations(self, analysis: SimilarityAnalysis) -> list[str]:
        """Threshold-driven advice on variant diversity."""
        if analysis.total_comparisons == 0:
            return ["No comparisons available: fewer than two variants completed."]

        mean = analysis.average_similarity
        if mean > TOO_SIMILAR:
            recs = [
                "Variations are very similar. Consider more diverse approaches.",
                "Increase design variation scope to explore more options.",
            ]
        elif mean < TOO_DIFFERENT:
            recs = [
                "Variations are quite different. Consider converging on their strongest elements.",
                "Focus on the best-performing variations for further refinement.",
            ]
        else:
            recs = [
                "Good variation diversity achieved.",
                "Consider A/B testing the top variations with users.",
            ]

        if analysis.most_similar is not None:
            recs.append(_describe_pair("Most similar variations", analysis.most_similar))
        if analysis.most_different is not None:
            recs.append(_describe_pair("Most different variations", analysis.most_different))
        return recs


def _describe_pair(label: str, result: ComparisonResult) -> str:
    return f"{label}: {result.variant_a} vs {result.variant_b} ({result.overall_similarity * 100:.1f}% similar)"


def _comparable(variant: ComparableVariant | TaskResult) -> ComparableVariant:
    if isinstance(variant, ComparableVariant):
        return variant
    return ComparableVariant.from_result(variant)
