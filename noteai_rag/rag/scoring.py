"""Similarity math for the supported distance metrics.

Raw scores follow each metric's natural direction (similarities: higher is
better, distances: lower is better). ``normalize`` maps any raw score onto a
single "higher is better" relevance in [0, 1]:

- cosine: clamped to [0, 1]
- dot product: logistic sigmoid, so unbounded scores keep their order
- euclidean, manhattan: ``1 / (1 + distance)``

Thresholds are always given on the normalized scale.
"""

import math

import numpy as np

from noteai_rag.rag.models import DistanceMetric

DISTANCE_METRICS = frozenset({DistanceMetric.EUCLIDEAN, DistanceMetric.MANHATTAN})
_LOGIT_EPSILON = 1e-12


def is_distance(metric: DistanceMetric) -> bool:
    return metric in DISTANCE_METRICS


def raw_scores(matrix: np.ndarray, query: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    """Score every row of ``matrix`` against ``query``.

    Args:
        matrix: (n, d) stored vectors
        query: (d,) query vector
        metric: Distance metric of the index

    Returns:
        (n,) raw scores in the metric's natural direction
    """
    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)

    if metric == DistanceMetric.COSINE:
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, dots / norms, 0.0)
        return scores
    if metric == DistanceMetric.DOT_PRODUCT:
        return matrix @ query
    if metric == DistanceMetric.EUCLIDEAN:
        return np.linalg.norm(matrix - query, axis=1)
    if metric == DistanceMetric.MANHATTAN:
        return np.abs(matrix - query).sum(axis=1)
    raise ValueError(f"Unknown metric: {metric}")


def normalize(raw: float, metric: DistanceMetric) -> float:
    """Map a raw score onto [0, 1], higher is better."""
    if is_distance(metric):
        return 1.0 / (1.0 + max(float(raw), 0.0))
    if metric == DistanceMetric.DOT_PRODUCT:
        with np.errstate(over="ignore"):
            return float(1.0 / (1.0 + np.exp(-float(raw))))
    return min(max(float(raw), 0.0), 1.0)


def normalize_array(raw: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    if is_distance(metric):
        return 1.0 / (1.0 + np.maximum(raw, 0.0))
    if metric == DistanceMetric.DOT_PRODUCT:
        with np.errstate(over="ignore"):
            return 1.0 / (1.0 + np.exp(-raw))
    return np.clip(raw, 0.0, 1.0)


def raw_threshold(threshold: float, metric: DistanceMetric) -> float | None:
    """Translate a normalized threshold into the metric's raw scale.

    Returns None when every score passes (threshold of zero).
    For distances the result is a maximum distance, otherwise a minimum score.
    """
    if threshold <= 0.0:
        return None
    if is_distance(metric):
        return 1.0 / threshold - 1.0
    if metric == DistanceMetric.DOT_PRODUCT:
        threshold = min(threshold, 1.0 - _LOGIT_EPSILON)
        return math.log(threshold / (1.0 - threshold))
    return threshold


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two plain vectors."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(va @ vb / denom)


def ranking_score(raw: float, metric: DistanceMetric) -> float:
    """Sort key on the raw scale: smaller sorts first for every metric."""
    return float(raw) if is_distance(metric) else -float(raw)
