"""Tests covering the HNSW graph in :mod:`InterviewKG.RecallEngine.vectorstore`."""

from __future__ import annotations

import numpy as np
import pytest

from InterviewKG.RecallEngine.config import VectorIndexConfig
from InterviewKG.RecallEngine.errors import DimensionMismatch, IndexCorrupted, NotFound
from InterviewKG.RecallEngine.vectorstore import VectorIndex, normalize_vector


def _graph_config(**overrides: object) -> VectorIndexConfig:
    base = dict(dim=16, m=8, ef_construction=64, ef_search=64, exact_search_threshold=1, storage_dtype="float32")
    base.update(overrides)
    return VectorIndexConfig(**base)  # type: ignore[arg-type]


def _random_vectors(count: int, dim: int, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    vectors = rng.standard_normal((count, dim)).astype(np.float32)
    return vectors / np.linalg.norm(vectors, axis=1, keepdims=True)


def _brute_force(vectors: np.ndarray, ids: list[int], query: np.ndarray, k: int) -> list[int]:
    scores = vectors @ (query / np.linalg.norm(query))
    order = sorted(range(len(ids)), key=lambda pos: (-float(scores[pos]), ids[pos]))
    return [ids[pos] for pos in order[:k]]


def test_normalize_vector_validates_shape_and_magnitude() -> None:
    assert np.allclose(normalize_vector([3.0, 4.0], dim=2), [0.6, 0.8])
    with pytest.raises(DimensionMismatch):
        normalize_vector([1.0, 2.0, 3.0], dim=2)
    with pytest.raises(ValueError):
        normalize_vector([0.0, 0.0], dim=2)
    with pytest.raises(ValueError):
        normalize_vector([float("nan"), 1.0], dim=2)


def test_search_on_empty_index_returns_nothing() -> None:
    index = VectorIndex(_graph_config())
    assert index.search(np.ones(16), 5) == []


def test_zero_query_returns_empty() -> None:
    index = VectorIndex(_graph_config())
    index.insert(1, np.ones(16))
    assert index.search(np.zeros(16), 3) == []


def test_search_rejects_wrong_dimension() -> None:
    index = VectorIndex(_graph_config())
    index.insert(1, np.ones(16))
    with pytest.raises(DimensionMismatch):
        index.search(np.ones(8), 3)
    with pytest.raises(DimensionMismatch):
        index.insert(2, np.ones(8))


def test_graph_search_recall_against_brute_force() -> None:
    vectors = _random_vectors(600, 16)
    ids = list(range(1, 601))
    index = VectorIndex(_graph_config())
    for vector_id, vector in zip(ids, vectors):
        index.insert(vector_id, vector)
    index.check_integrity()

    queries = _random_vectors(25, 16, seed=99)
    overlap = 0
    for query in queries:
        expected = set(_brute_force(vectors, ids, query, 10))
        found = {hit.id for hit in index.search(query, 10, ef_search=128)}
        overlap += len(expected & found)
    assert overlap / (25 * 10) >= 0.9


def test_results_are_sorted_by_score_then_id() -> None:
    index = VectorIndex(_graph_config())
    index.insert(5, [1.0] + [0.0] * 15)
    index.insert(3, [1.0] + [0.0] * 15)
    index.insert(9, [0.0, 1.0] + [0.0] * 14)
    hits = index.search([1.0] + [0.0] * 15, 3)
    assert [hit.id for hit in hits] == [3, 5, 9]
    assert hits[0].score == pytest.approx(1.0, abs=1e-6)


def test_removed_ids_never_returned_but_still_route() -> None:
    vectors = _random_vectors(300, 16, seed=3)
    index = VectorIndex(_graph_config())
    for vector_id, vector in enumerate(vectors, start=1):
        index.insert(vector_id, vector)
    removed = set(range(1, 301, 2))
    for vector_id in removed:
        assert index.remove(vector_id)
    assert not index.remove(1)

    for query in _random_vectors(10, 16, seed=11):
        hits = index.search(query, 10)
        assert len(hits) == 10
        assert not removed & {hit.id for hit in hits}
    assert len(index) == 150
    assert index.tombstone_ratio == pytest.approx(0.5)


def test_candidate_filter_collection_and_predicate() -> None:
    vectors = _random_vectors(400, 16, seed=5)
    index = VectorIndex(_graph_config(exact_search_threshold=50))
    for vector_id, vector in enumerate(vectors, start=1):
        index.insert(vector_id, vector)
    query = vectors[10]

    small = {1, 2, 3, 11}
    assert {hit.id for hit in index.search(query, 10, candidate_filter=small)} == small

    even = index.search(query, 10, candidate_filter=lambda vector_id: vector_id % 2 == 0)
    assert even and all(hit.id % 2 == 0 for hit in even)

    large = set(range(1, 401, 3))
    hits = index.search(query, 5, candidate_filter=large)
    assert hits and all(hit.id in large for hit in hits)


def test_reinsert_replaces_vector() -> None:
    index = VectorIndex(_graph_config())
    index.insert(1, [1.0] + [0.0] * 15)
    index.insert(1, [0.0, 1.0] + [0.0] * 14)
    assert len(index) == 1
    assert np.allclose(index.vector(1), [0.0, 1.0] + [0.0] * 14)
    hits = index.search([0.0, 1.0] + [0.0] * 14, 1)
    assert hits[0].id == 1 and hits[0].score == pytest.approx(1.0, abs=1e-6)


def test_vector_lookup_missing_raises_not_found() -> None:
    index = VectorIndex(_graph_config())
    with pytest.raises(NotFound):
        index.vector(42)


def test_compaction_drops_tombstones_and_keeps_results() -> None:
    vectors = _random_vectors(200, 16, seed=21)
    index = VectorIndex(_graph_config(compaction_tombstone_ratio=0.25))
    for vector_id, vector in enumerate(vectors, start=1):
        index.insert(vector_id, vector)
    for vector_id in range(1, 101):
        index.remove(vector_id)
    assert index.should_compact()

    query = vectors[150]
    before = [hit.id for hit in index.search(query, 5, ef_search=200)]
    assert index.compact() == 100
    assert index.stats()["tombstones"] == 0.0
    assert not index.should_compact()
    index.check_integrity()
    after = [hit.id for hit in index.search(query, 5, ef_search=200)]
    assert after[0] == before[0] == 151


def test_snapshot_restore_preserves_graph() -> None:
    vectors = _random_vectors(120, 16, seed=8)
    index = VectorIndex(_graph_config(), name="knowledge")
    for vector_id, vector in enumerate(vectors, start=1):
        index.insert(vector_id, vector)
    index.remove(4)

    restored = VectorIndex.restore(index.snapshot())
    assert restored.name == "knowledge"
    assert restored.ids() == index.ids()
    query = vectors[30]
    assert [hit.id for hit in restored.search(query, 5)] == [hit.id for hit in index.search(query, 5)]


def test_restore_rejects_dangling_edges() -> None:
    index = VectorIndex(_graph_config())
    for vector_id, vector in enumerate(_random_vectors(10, 16), start=1):
        index.insert(vector_id, vector)
    payload = index.snapshot()
    payload["nodes"][0]["neighbors"][0] = [999]
    with pytest.raises(IndexCorrupted):
        VectorIndex.restore(payload)


def test_float16_storage_keeps_similarity_ordering() -> None:
    vectors = _random_vectors(50, 16, seed=13)
    index = VectorIndex(_graph_config(storage_dtype="float16", exact_search_threshold=256))
    for vector_id, vector in enumerate(vectors, start=1):
        index.insert(vector_id, vector)
    hits = index.search(vectors[7], 1)
    assert hits[0].id == 8
    assert hits[0].score == pytest.approx(1.0, abs=1e-2)
