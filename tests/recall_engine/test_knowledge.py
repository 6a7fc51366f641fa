"""Tests for tenant-scoped hybrid retrieval in :mod:`InterviewKG.RecallEngine.knowledge`."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from InterviewKG.RecallEngine.config import ContextConfig, VectorIndexConfig
from InterviewKG.RecallEngine.devtools import HashingEmbeddingProvider
from InterviewKG.RecallEngine.errors import DimensionMismatch, NotFound, OwnerMismatch
from InterviewKG.RecallEngine.knowledge import NO_CONTEXT_MESSAGE, KnowledgeBase, validate_metadata
from InterviewKG.RecallEngine.observability import Observability

DIM = 64


def _embed(text: str):
    return HashingEmbeddingProvider(dim=DIM).embed(text, threading.Event())


@pytest.fixture
def kb():
    base = KnowledgeBase(VectorIndexConfig(dim=DIM), context=ContextConfig(max_tokens=10))
    yield base
    base.close()


def _add(kb: KnowledgeBase, owner: str, text: str, **kwargs) -> int:
    return kb.add(owner, text, kwargs.get("metadata"), embedding=_embed(text))


def test_validate_metadata_checks_recognised_keys() -> None:
    validated = validate_metadata({"title": "Handbook", "page": 2, "tags": ("hr", "benefits"), "colour": 1})
    assert validated == {"title": "Handbook", "page": 2, "tags": ["hr", "benefits"], "colour": 1}
    assert validate_metadata(None) == {}
    for bad in ({"page": -1}, {"page": True}, {"title": 3}, {"tags": "hr"}, {"tags": [1]}):
        with pytest.raises(ValueError):
            validate_metadata(bad)


def test_add_rejects_invalid_input(kb: KnowledgeBase) -> None:
    with pytest.raises(ValueError):
        kb.add("", "text")
    with pytest.raises(ValueError):
        kb.add("acme", "   ")
    with pytest.raises(DimensionMismatch):
        kb.add("acme", "text", embedding=[1.0, 0.0])


def test_query_is_scoped_to_owner(kb: KnowledgeBase) -> None:
    first = _add(kb, "1", "5 years experience with distributed systems")
    _add(kb, "2", "Java backend, 2 years")
    _add(kb, "2", "distributed systems experience at scale")

    query = "distributed systems experience"
    result = kb.query("1", query, _embed(query), top_k=5)
    assert result.chunk_ids == [first]
    assert all(hit.chunk.owner_id == "1" for hit in result.hits)
    assert result.hits[0].rank == 1
    assert set(result.timings_ms) >= {"text_ms", "vector_ms", "fusion_ms", "total_ms"}


def test_keyword_only_query_finds_exact_phrase(kb: KnowledgeBase) -> None:
    for idx in range(20):
        _add(kb, "acme", f"Filler paragraph number {idx} about office snacks")
    target = _add(kb, "acme", "Our parental leave policy grants sixteen weeks fully paid")
    result = kb.query("acme", "parental leave policy grants sixteen weeks", None, top_k=3)
    assert result.degraded
    assert result.mode == "keyword-only"
    assert result.chunk_ids[0] == target
    assert "vector_ms" not in result.timings_ms
    assert result.hits[0].highlights


def test_query_is_deterministic(kb: KnowledgeBase) -> None:
    for text in ("remote work allowed", "remote first culture", "hybrid work in Berlin", "work from anywhere"):
        _add(kb, "acme", text)
    vector = _embed("remote work")
    first = kb.query("acme", "remote work", vector, top_k=4)
    second = kb.query("acme", "remote work", vector, top_k=4)
    assert first.chunk_ids == second.chunk_ids
    assert [hit.score for hit in first.hits] == [hit.score for hit in second.hits]


def test_query_for_unknown_owner_is_empty(kb: KnowledgeBase) -> None:
    _add(kb, "acme", "We offer remote work")
    assert kb.query("globex", "remote work", _embed("remote work")).hits == []
    with pytest.raises(ValueError):
        kb.query("acme", "remote", None, top_k=0)


def test_get_and_delete_enforce_ownership() -> None:
    observability = Observability()
    kb = KnowledgeBase(VectorIndexConfig(dim=DIM), observability=observability)
    chunk_id = _add(kb, "acme", "Salary bands are reviewed yearly")
    with pytest.raises(OwnerMismatch):
        kb.get("globex", chunk_id)
    with pytest.raises(OwnerMismatch):
        kb.delete("globex", chunk_id)
    assert observability.metrics.value("owner_mismatch", collection="knowledge") == 2.0
    with pytest.raises(NotFound):
        kb.get("acme", 999)

    deleted = kb.delete("acme", chunk_id)
    assert deleted.text == "Salary bands are reviewed yearly"
    with pytest.raises(NotFound):
        kb.delete("acme", chunk_id)
    assert kb.query("acme", "salary bands", None).hits == []
    kb.close()


def test_delete_owner_cascades(kb: KnowledgeBase) -> None:
    _add(kb, "acme", "one")
    _add(kb, "acme", "two")
    kept = _add(kb, "globex", "three")
    assert kb.delete_owner("acme") == 2
    assert kb.owner_chunk_ids("acme") == []
    assert kb.owner_chunk_ids("globex") == [kept]
    kb.check_integrity()


def test_chunks_without_embedding_are_backfillable(kb: KnowledgeBase) -> None:
    chunk_id = kb.add("acme", "Stock options vest over four years")
    assert kb.missing_embeddings() == [chunk_id]
    assert not kb.get("acme", chunk_id).has_embedding
    kb.set_embedding(chunk_id, _embed("Stock options vest over four years"))
    assert kb.missing_embeddings() == []
    result = kb.query("acme", "equity vesting", _embed("stock options vest"), top_k=1)
    assert result.chunk_ids == [chunk_id]


def test_build_context_respects_budget(kb: KnowledgeBase) -> None:
    _add(kb, "acme", "a" * 20)
    _add(kb, "acme", "b" * 20)
    _add(kb, "acme", "c" * 20)
    hits = kb.query("acme", "unused", None).hits
    assert hits == []
    assert kb.build_context([]) == NO_CONTEXT_MESSAGE

    first = _add(kb, "acme", "Remote work is allowed two days")
    second = _add(kb, "acme", "Remote onboarding lasts a week")
    result = kb.query("acme", "remote", None, top_k=5)
    assert set(result.chunk_ids) == {first, second}
    context = kb.build_context(result.hits)
    assert context == result.hits[0].chunk.text
    both = kb.build_context(result.hits, max_tokens=100)
    assert both.split("\n\n") == [hit.chunk.text for hit in result.hits]


def test_corrupted_index_is_rebuilt_on_query(kb: KnowledgeBase) -> None:
    chunk_id = _add(kb, "acme", "Relocation budget covers flights")
    kb._vectors._graph.entry = (42, 0)  # simulate a corrupted entry point
    kb._vectors.search = _raise_corrupted_once(kb._vectors.search)  # type: ignore[method-assign]
    result = kb.query("acme", "relocation budget", _embed("relocation budget"))
    assert result.chunk_ids == [chunk_id]
    kb.check_integrity()


def _raise_corrupted_once(search):
    from InterviewKG.RecallEngine.errors import IndexCorrupted

    state = {"raised": False}

    def wrapper(*args, **kwargs):
        if not state["raised"]:
            state["raised"] = True
            raise IndexCorrupted("entry point out of range")
        return search(*args, **kwargs)

    return wrapper


def test_shared_executor_is_not_shut_down() -> None:
    executor = ThreadPoolExecutor(max_workers=2)
    kb = KnowledgeBase(VectorIndexConfig(dim=DIM), executor=executor)
    _add(kb, "acme", "Gym membership is reimbursed")
    kb.close()
    assert executor.submit(lambda: 1).result() == 1
    executor.shutdown()
