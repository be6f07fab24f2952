"""Two-stage dimensionality reduction for opinion maps.

Embeddings are standardised and reduced with PCA first; the PCA output then feeds
UMAP for the 3D layout and is reused by the clusterer.

Classes:
    PCAResult: Reduced vectors plus variance bookkeeping.

Functions:
    reduce_pca(vectors, n_components): Standardise and project onto the leading components.
    reduce_umap_3d(vectors, ...): Embed PCA output into three dimensions.
    normalize_projections(coords, display_range): Min-max scale each axis into the display range.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import umap
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from opinion_map.core.config import get_settings

_LOGGER = logging.getLogger(__name__)

UMAP_COMPONENTS = 3
_MIN_UMAP_SAMPLES = 4
_SPECTRAL_MIN_SAMPLES = 10


@dataclass(slots=True)
class PCAResult:
    projections: np.ndarray
    explained_variance_ratio: list[float] = field(default_factory=list)
    explained_variance_retained: float = 0.0
    processing_time_ms: float = 0.0

    @property
    def n_components(self) -> int:
        return int(self.projections.shape[1]) if self.projections.ndim == 2 else 0


def reduce_pca(vectors: np.ndarray, n_components: Optional[int] = None) -> PCAResult:
    """Standardise features then project onto at most ``n_components`` principal axes."""

    started = time.perf_counter()
    data = np.asarray(vectors, dtype=np.float64)
    if data.ndim != 2 or data.shape[0] == 0:
        raise ValueError("reduce_pca expects a non-empty 2D array")

    requested = n_components or get_settings().pca_components
    n_samples, n_features = data.shape
    components = max(1, min(requested, n_samples, n_features))

    scaled = StandardScaler().fit_transform(data)
    if n_samples < 2:
        projections = np.zeros((n_samples, components), dtype=np.float32)
        ratios = [1.0] + [0.0] * (components - 1)
    else:
        pca = PCA(n_components=components, svd_solver="full")
        projections = pca.fit_transform(scaled).astype(np.float32)
        ratios = [float(value) for value in np.nan_to_num(pca.explained_variance_ratio_)]

    retained = float(sum(ratios))
    elapsed = round((time.perf_counter() - started) * 1000.0, 3)
    _LOGGER.info(
        "PCA reduced %s x %s to %s components (%.1f%% variance retained) in %.0f ms",
        n_samples,
        n_features,
        components,
        retained * 100.0,
        elapsed,
    )
    return PCAResult(
        projections=projections,
        explained_variance_ratio=ratios,
        explained_variance_retained=retained,
        processing_time_ms=elapsed,
    )


def _pad_to_three(vectors: np.ndarray) -> np.ndarray:
    coords = np.zeros((vectors.shape[0], UMAP_COMPONENTS), dtype=np.float32)
    width = min(UMAP_COMPONENTS, vectors.shape[1]) if vectors.ndim == 2 else 0
    if width:
        coords[:, :width] = vectors[:, :width]
    return coords


def reduce_umap_3d(
    vectors: np.ndarray,
    *,
    n_neighbors: Optional[int] = None,
    min_dist: Optional[float] = None,
    spread: Optional[float] = None,
    random_state: Optional[int] = None,
) -> np.ndarray:
    """Embed (PCA-reduced) vectors into 3D with UMAP.

    ``n_neighbors`` is clamped to ``n_samples - 1``. With fewer than four samples
    UMAP is not meaningful, so the first three input axes are returned instead,
    zero padded when the input is narrower.
    """

    settings = get_settings()
    data = np.asarray(vectors, dtype=np.float32)
    n_samples = data.shape[0]
    if n_samples < _MIN_UMAP_SAMPLES:
        _LOGGER.info("Only %s samples; using leading PCA axes instead of UMAP", n_samples)
        return _pad_to_three(data)

    neighbors = min(n_neighbors or settings.umap_n_neighbors, n_samples - 1)
    neighbors = max(2, neighbors)
    model = umap.UMAP(
        n_components=UMAP_COMPONENTS,
        n_neighbors=neighbors,
        min_dist=settings.umap_min_dist if min_dist is None else min_dist,
        spread=settings.umap_spread if spread is None else spread,
        init="spectral" if n_samples >= _SPECTRAL_MIN_SAMPLES else "random",
        random_state=random_state,
    )

    started = time.perf_counter()
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message=".*Spectral initialisation failed.*")
        warnings.filterwarnings("ignore", message=".*n_jobs value.*overridden.*")
        coords = model.fit_transform(data)
    _LOGGER.info(
        "UMAP embedded %s samples (n_neighbors=%s) in %.0f ms",
        n_samples,
        neighbors,
        (time.perf_counter() - started) * 1000.0,
    )
    return np.asarray(coords, dtype=np.float32)


def normalize_projections(
    coords: np.ndarray,
    display_range: Optional[tuple[float, float]] = None,
) -> np.ndarray:
    """Scale every axis independently into ``display_range``.

    An axis with no spread maps to the middle of the range.
    """

    settings = get_settings()
    low, high = display_range or (settings.display_range_min, settings.display_range_max)
    data = np.asarray(coords, dtype=np.float64)
    if data.size == 0:
        return data.reshape(0, UMAP_COMPONENTS).astype(np.float32)

    mins = data.min(axis=0)
    spans = data.max(axis=0) - mins
    midpoint = (low + high) / 2.0
    scaled = np.empty_like(data)
    for axis in range(data.shape[1]):
        if spans[axis] > 0 and np.isfinite(spans[axis]):
            scaled[:, axis] = low + (data[:, axis] - mins[axis]) / spans[axis] * (high - low)
        else:
            scaled[:, axis] = midpoint
    return np.clip(np.nan_to_num(scaled, nan=midpoint), low, high).astype(np.float32)
