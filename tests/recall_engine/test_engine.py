"""End-to-end tests for the :class:`RecallEngine` facade."""

from __future__ import annotations

import math
import threading

import numpy as np
import pytest

from InterviewKG.RecallEngine.config import RecallEngineConfig
from InterviewKG.RecallEngine.devtools import FlakyEmbeddingProvider
from InterviewKG.RecallEngine.errors import OwnerMismatch
from InterviewKG.RecallEngine.knowledge import NO_CONTEXT_MESSAGE
from InterviewKG.RecallEngine.service import RecallEngine


def _unit(engine: RecallEngine, index: int) -> np.ndarray:
    vector = np.zeros(engine.config.vector.dim, dtype=np.float32)
    vector[index] = 1.0
    return vector


def _rotated(engine: RecallEngine, similarity: float) -> np.ndarray:
    vector = np.zeros(engine.config.vector.dim, dtype=np.float32)
    vector[0] = similarity
    vector[1] = math.sqrt(1.0 - similarity**2)
    return vector


def test_scenario_knowledge_is_tenant_scoped(engine: RecallEngine) -> None:
    first = engine.add_knowledge("1", "5 years experience with distributed systems")
    engine.add_knowledge("2", "Java backend, 2 years")
    result = engine.query_knowledge("1", "distributed systems experience", top_k=5)
    assert result.chunk_ids == [first]
    assert not result.degraded


def test_scenario_similar_queries_share_cache_entry(engine: RecallEngine) -> None:
    engine.cache_record("What is the notice period?", _unit(engine, 0), "Two weeks")
    assert engine.cache_lookup("What's the notice period?", _rotated(engine, 0.97)) == "Two weeks"
    assert engine.cache_lookup("What's the notice period?", _rotated(engine, 0.90)) is None


def test_scenario_memory_upsert_keeps_latest(engine: RecallEngine) -> None:
    engine.memory_upsert("S1", "salary", "Expects $120k", "I was hoping for 120k")
    engine.memory_upsert("S1", "salary", "Expects $130k", "Actually 130k")
    facts = engine.memory_list("S1")
    assert [(fact.topic, fact.content) for fact in facts] == [("salary", "Expects $130k")]


def test_scenario_provider_down_degrades_to_keywords(engine_factory, hashing_provider) -> None:
    provider = FlakyEmbeddingProvider(hashing_provider, down=True)
    engine = engine_factory(provider=provider)
    chunk_id = engine.add_knowledge("acme", "Engineers get a yearly conference budget")
    result = engine.query_knowledge("acme", "conference budget")
    assert result.degraded
    assert result.chunk_ids == [chunk_id]
    assert engine.knowledge.missing_embeddings() == [chunk_id]

    provider.set_down(False)
    report = engine.run_maintenance()
    assert report["knowledge_backfilled"] == 1
    assert not engine.query_knowledge("acme", "conference budget").degraded


def test_provider_timeout_is_bounded(engine_factory, hashing_provider) -> None:
    provider = FlakyEmbeddingProvider(hashing_provider, delay_seconds=5.0)
    engine = engine_factory({"embedding": {"timeout_seconds": 0.1}}, provider=provider)
    engine.add_knowledge("acme", "Lunch is catered on Fridays", embedding=_unit(engine, 3))
    result = engine.query_knowledge("acme", "catered lunch")
    assert result.degraded
    assert engine.cache_lookup("catered lunch") is None
    assert engine.cache_record("catered lunch", None, "Fridays") is None
    assert engine.observability.metrics.value("embedding_failures", reason="timeout") >= 1.0


def test_cache_get_or_fill_bypasses_cache_without_embeddings(engine_factory, hashing_provider) -> None:
    provider = FlakyEmbeddingProvider(hashing_provider, down=True)
    engine = engine_factory(provider=provider)
    calls = []
    assert engine.cache_get_or_fill("q", lambda: calls.append(1) or "fresh") == "fresh"
    assert engine.cache_get_or_fill("q", lambda: calls.append(1) or "fresh") == "fresh"
    assert len(calls) == 2


def test_cache_get_or_fill_reuses_answers(engine: RecallEngine) -> None:
    calls = []

    def producer() -> str:
        calls.append(1)
        return "Two weeks"

    assert engine.cache_get_or_fill("What is the notice period?", producer) == "Two weeks"
    assert engine.cache_get_or_fill("what is the notice period", producer) == "Two weeks"
    assert len(calls) == 1


def test_memory_recall_isolated_by_session(engine: RecallEngine) -> None:
    engine.memory_upsert("S1", "salary", "Expects 150k base salary", "150k")
    engine.memory_upsert("S2", "salary", "Expects 150k base salary", "150k")
    recalled = engine.memory_recall("S1", query_text="base salary expectations")
    assert [item.fact.session_id for item in recalled] == ["S1"]
    assert engine.memory_recall("S1") == []


def test_memory_extract_and_recall_by_query(engine: RecallEngine) -> None:
    stored = engine.memory_extract("S1", "I can start in two weeks and I'm expecting $150k base.")
    assert set(stored) == {"availability", "salary"}
    hit = engine.memory_recall_by_query("S1", "start in two weeks expecting $150k base")
    assert hit is not None and hit.relevance >= 0.5
    assert engine.memory_recall_by_query("S2", "start in two weeks") is None
    assert engine.delete_session("S1") == 2
    assert engine.memory_list("S1") == []


def test_delete_knowledge_checks_owner(engine: RecallEngine) -> None:
    chunk_id = engine.add_knowledge("acme", "Dogs are welcome in the office")
    with pytest.raises(OwnerMismatch):
        engine.delete_knowledge("globex", chunk_id)
    engine.delete_knowledge("acme", chunk_id)
    assert engine.query_knowledge("acme", "dogs office").hits == []


def test_get_context_with_global_cache_never_caches(engine: RecallEngine) -> None:
    engine.add_knowledge("acme", "Acme offers four weeks of vacation")
    engine.add_knowledge("globex", "Globex offers two weeks of vacation")
    acme = engine.get_context("acme", "How much vacation?")
    globex = engine.get_context("globex", "How much vacation?")
    assert acme.text == "Acme offers four weeks of vacation"
    assert globex.text == "Globex offers two weeks of vacation"
    assert not acme.cached and not globex.cached
    assert engine.get_context("initech", "How much vacation?").text == NO_CONTEXT_MESSAGE


def test_get_context_with_tenant_cache(engine_factory) -> None:
    engine = engine_factory({"cache": {"scope": "tenant"}})
    engine.add_knowledge("acme", "Acme offers four weeks of vacation")
    first = engine.get_context("acme", "How much vacation?")
    second = engine.get_context("acme", "how much vacation")
    assert not first.cached and second.cached
    assert second.text == first.text
    assert not engine.get_context("globex", "How much vacation?").cached

    assert engine.delete_owner("acme") == 1
    assert engine.get_context("acme", "How much vacation?").text == NO_CONTEXT_MESSAGE


def test_save_and_load_round_trip(engine_factory, tmp_path) -> None:
    engine = engine_factory({"cache": {"scope": "tenant"}})
    chunk_id = engine.add_knowledge("acme", "Relocation package covers flights", {"title": "Handbook"})
    engine.memory_upsert("S1", "location", "Lives in Lisbon", "I live in Lisbon")
    engine.cache_record("relocation?", _unit(engine, 5), "Flights covered", owner_id="acme")
    path = engine.save(tmp_path / "state" / "recall.json")

    restored = engine_factory({"cache": {"scope": "tenant"}})
    restored.load(path)
    result = restored.query_knowledge("acme", "relocation flights")
    assert result.chunk_ids == [chunk_id]
    assert result.hits[0].chunk.metadata == {"title": "Handbook"}
    assert [fact.content for fact in restored.memory_list("S1")] == ["Lives in Lisbon"]
    assert restored.cache_lookup("relocation?", _unit(engine, 5), owner_id="acme") == "Flights covered"
    assert restored.add_knowledge("acme", "New chunk") > chunk_id


def test_run_maintenance_reports_work(engine_factory) -> None:
    engine = engine_factory({"cache": {"ttl_seconds": 0.0001}})
    engine.cache_record("q", _unit(engine, 7), "a")
    engine.memory_upsert("S1", "salary", "150k", "150k")
    threading.Event().wait(0.01)
    report = engine.run_maintenance()
    assert report["cache_expired"] == 1
    assert report["rebuilt"] == 0
    assert report["memory_backfilled"] == 0
    assert report["cache_scopes_evicted"] == 0


def test_run_maintenance_unloads_idle_tenant_caches(engine_factory) -> None:
    engine = engine_factory({"cache": {"scope": "tenant", "idle_tenant_seconds": 0.0}})
    engine.cache_record("relocation?", _unit(engine, 3), "Flights covered", owner_id="acme")
    report = engine.run_maintenance()
    assert report["cache_scopes_evicted"] == 1
    assert engine.stats()["cache"]["scopes"]["acme"]["evicted"] is True
    assert engine.cache_lookup("relocation?", _unit(engine, 3), owner_id="acme") == "Flights covered"


def test_run_maintenance_rebuilds_corrupted_collections(engine: RecallEngine) -> None:
    engine.memory_upsert("S1", "salary", "150k", "150k")
    engine.memory._index.clear()  # simulate index loss
    report = engine.run_maintenance()
    assert report["rebuilt"] == 1
    assert engine.memory_recall("S1", query_text="150k")


def test_stats_and_closed_engine(engine_factory) -> None:
    engine = engine_factory()
    engine.add_knowledge("acme", "Snacks are free")
    stats = engine.stats()
    assert stats["knowledge"]["chunks"] == 1.0
    assert "aggregate" in stats["cache"]
    assert "counters" in stats["metrics"]
    engine.close()
    engine.close()
    with pytest.raises(RuntimeError):
        engine.add_knowledge("acme", "More snacks")


def test_engine_without_provider_runs_keyword_only() -> None:
    with RecallEngine(RecallEngineConfig.from_dict({"vector": {"dim": 8}})) as engine:
        engine.add_knowledge("acme", "Parking is free for employees")
        result = engine.query_knowledge("acme", "free parking")
        assert result.degraded and len(result.hits) == 1
        fact = engine.memory_upsert("S1", "location", "Lisbon", "Lisbon")
        assert fact.embedding_stale
