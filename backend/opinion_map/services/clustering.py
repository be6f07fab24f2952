"""Deterministic K-means clustering of PCA-reduced post vectors.

Classes:
    ClusteringResult: Labels, confidences and centroids for one clustering pass.

Functions:
    seed_from_session_id(session_id): Stable 32-bit seed derived from a session identifier.
    detect_k(vectors, seed): Elbow-method choice of the cluster count.
    cluster_kmeans(vectors, session_id, k): Cluster vectors and flag low-confidence points.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from opinion_map.core.config import get_settings
from opinion_map.models import OUTLIER_CLUSTER_ID

_LOGGER = logging.getLogger(__name__)

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_N_INIT = 10


@dataclass(slots=True)
class ClusteringResult:
    labels: list[int] = field(default_factory=list)
    confidence: list[float] = field(default_factory=list)
    centroids: list[list[float]] = field(default_factory=list)
    cluster_count: int = 0
    outlier_count: int = 0
    k_scores: dict[int, float] = field(default_factory=dict)

    def members(self) -> dict[int, list[int]]:
        """Row indices grouped by cluster id, outliers excluded."""

        groups: dict[int, list[int]] = {}
        for index, label in enumerate(self.labels):
            if label == OUTLIER_CLUSTER_ID:
                continue
            groups.setdefault(label, []).append(index)
        return dict(sorted(groups.items()))


def seed_from_session_id(session_id: str) -> int:
    """32-bit FNV-1a hash of the UTF-8 encoded identifier."""

    value = _FNV_OFFSET
    for byte in session_id.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value


def _fit(vectors: np.ndarray, k: int, seed: int, max_iter: int) -> KMeans:
    model = KMeans(n_clusters=k, n_init=_N_INIT, max_iter=max_iter, random_state=seed)
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=ConvergenceWarning)
        model.fit(vectors)
    return model


def _candidate_range(n_samples: int) -> range:
    settings = get_settings()
    upper = min(settings.kmeans_max_k, n_samples - 1)
    lower = min(settings.kmeans_min_k, upper)
    return range(max(1, lower), max(1, upper) + 1)


def detect_k(vectors: np.ndarray, seed: int) -> tuple[int, dict[int, float]]:
    """Pick K where the within-cluster sum of squares bends the most.

    Candidates run from the configured minimum to maximum, capped at
    ``n_samples - 1``. The elbow is the candidate with the largest positive
    second difference of the inertia curve; without one the smallest
    candidate wins.
    """

    settings = get_settings()
    candidates = list(_candidate_range(vectors.shape[0]))
    scores: dict[int, float] = {}
    for k in candidates:
        scores[k] = float(_fit(vectors, k, seed, settings.kmeans_max_iter).inertia_)

    best_k = candidates[0]
    best_change = 0.0
    inertia = [scores[k] for k in candidates]
    for position in range(1, len(candidates) - 1):
        change = (inertia[position - 1] - inertia[position]) - (inertia[position] - inertia[position + 1])
        if change > best_change:
            best_change = change
            best_k = candidates[position]

    _LOGGER.info("Elbow method selected k=%s from %s", best_k, {k: round(v, 2) for k, v in scores.items()})
    return best_k, scores


def _confidence(distances: np.ndarray) -> np.ndarray:
    if distances.shape[1] < 2:
        return np.ones(distances.shape[0], dtype=np.float64)
    ordered = np.sort(distances, axis=1)
    nearest = ordered[:, 0]
    second = ordered[:, 1]
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(second > 0, (second - nearest) / second, 1.0)
    return np.clip(np.nan_to_num(scores, nan=1.0), 0.0, 1.0)


def cluster_kmeans(
    vectors: np.ndarray,
    session_id: str,
    k: Optional[int] = None,
) -> ClusteringResult:
    """Cluster ``vectors`` with K-means seeded from ``session_id``.

    Each point's confidence compares its nearest and second-nearest centroid;
    points below the configured threshold become outliers. The same session
    id and vectors always produce the same labels.
    """

    settings = get_settings()
    data = np.asarray(vectors, dtype=np.float64)
    n_samples = data.shape[0]
    if n_samples == 0:
        return ClusteringResult()

    if n_samples < 2:
        centroid = data.mean(axis=0).tolist()
        return ClusteringResult(
            labels=[0] * n_samples,
            confidence=[1.0] * n_samples,
            centroids=[centroid],
            cluster_count=1,
            outlier_count=0,
        )

    seed = seed_from_session_id(session_id)
    k_scores: dict[int, float] = {}
    if k is None:
        k, k_scores = detect_k(data, seed)
    k = max(1, min(int(k), n_samples))

    model = _fit(data, k, seed, settings.kmeans_max_iter)
    labels = model.labels_.astype(int)
    confidence = _confidence(model.transform(data))

    outliers = confidence < settings.outlier_confidence_threshold
    labels = np.where(outliers, OUTLIER_CLUSTER_ID, labels)
    outlier_count = int(outliers.sum())

    _LOGGER.info(
        "K-means finished for %s: k=%s, %s points, %s outliers, seed=%s",
        session_id,
        k,
        n_samples,
        outlier_count,
        seed,
    )
    return ClusteringResult(
        labels=[int(label) for label in labels],
        confidence=[float(value) for value in confidence],
        centroids=model.cluster_centers_.tolist(),
        cluster_count=k,
        outlier_count=outlier_count,
        k_scores=k_scores,
    )
