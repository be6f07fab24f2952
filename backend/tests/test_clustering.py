import numpy as np
import pytest

from opinion_map.models import OUTLIER_CLUSTER_ID
from opinion_map.services.clustering import _confidence, cluster_kmeans, detect_k, seed_from_session_id


def _blobs(seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    centers = np.array([[0.0, 0.0], [8.0, 0.0], [0.0, 8.0], [8.0, 8.0], [4.0, 14.0], [14.0, 4.0]])
    return np.vstack([rng.normal(loc=center, scale=0.5, size=(12, 2)) for center in centers])


def test_seed_is_fnv1a_of_session_id():
    assert seed_from_session_id("") == 0x811C9DC5
    assert seed_from_session_id("a") == 0xE40C292C
    assert seed_from_session_id("zone_abc_2025-01-01") == seed_from_session_id("zone_abc_2025-01-01")
    assert seed_from_session_id("zone_abc_2025-01-01") != seed_from_session_id("zone_abc_2025-01-02")


def test_same_session_and_vectors_give_identical_labels():
    vectors = _blobs()

    first = cluster_kmeans(vectors, "zone_abc_2025-01-01")
    second = cluster_kmeans(vectors.copy(), "zone_abc_2025-01-01")

    assert first.labels == second.labels
    assert first.confidence == pytest.approx(second.confidence)
    assert first.cluster_count == second.cluster_count
    assert 5 <= first.cluster_count <= 12


def test_low_confidence_points_become_outliers():
    result = cluster_kmeans(_blobs(1), "zone_abc_2025-01-01")

    assert len(result.labels) == 72
    for label, confidence in zip(result.labels, result.confidence):
        assert 0.0 <= confidence <= 1.0
        assert (label == OUTLIER_CLUSTER_ID) == (confidence < 0.5)
    assert result.outlier_count == result.labels.count(OUTLIER_CLUSTER_ID)
    assert all(OUTLIER_CLUSTER_ID not in [result.labels[i] for i in members] for members in result.members().values())


def test_explicit_k_is_respected():
    result = cluster_kmeans(_blobs(), "zone_abc_2025-01-01", k=3)

    assert result.cluster_count == 3
    assert len(result.centroids) == 3
    assert set(result.labels) <= {OUTLIER_CLUSTER_ID, 0, 1, 2}


def test_tiny_inputs():
    assert cluster_kmeans(np.zeros((0, 4)), "s").cluster_count == 0

    single = cluster_kmeans(np.array([[1.0, 2.0]]), "s")
    assert single.labels == [0]
    assert single.confidence == [1.0]
    assert single.cluster_count == 1


def test_candidate_k_is_capped_by_sample_count():
    vectors = np.array([[0.0, 0.0], [1.0, 1.0], [5.0, 5.0], [6.0, 6.0]])

    k, scores = detect_k(vectors, seed=1)

    assert k == 3
    assert list(scores) == [3]


def test_confidence_compares_two_nearest_centroids():
    distances = np.array([[1.0, 4.0, 9.0], [2.0, 2.0, 3.0], [0.0, 0.0, 1.0]])

    assert _confidence(distances).tolist() == pytest.approx([0.75, 0.0, 1.0])
