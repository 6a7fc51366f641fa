"""Property-based tests for isolation, cache thresholds, upsert uniqueness and determinism."""

from __future__ import annotations

import math
import threading
from typing import List, Tuple

import numpy as np
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from InterviewKG.RecallEngine.cache import SemanticCache
from InterviewKG.RecallEngine.config import CacheConfig, VectorIndexConfig
from InterviewKG.RecallEngine.devtools import HashingEmbeddingProvider
from InterviewKG.RecallEngine.knowledge import KnowledgeBase
from InterviewKG.RecallEngine.memory import SessionMemoryStore

DIM = 32
PROPERTY_SETTINGS = settings(max_examples=40, deadline=None)

_FILLER_WORDS = ("office", "snack", "parking", "laptop", "holiday", "coffee", "desk", "badge")
_PHRASE_WORDS = ("kotlin", "pension", "sabbatical", "equity", "visa", "mentor", "bonus", "gym")
_OWNERS = ("acme", "globex", "initech")
_SESSIONS = ("s1", "s2", "s3")
_TOPICS = ("salary", "location", "availability")

_embedder = HashingEmbeddingProvider(dim=DIM)


def _embed(text: str) -> np.ndarray:
    return _embedder.embed(text, threading.Event())


_texts = st.lists(st.sampled_from(_FILLER_WORDS + _PHRASE_WORDS), min_size=1, max_size=6).map(" ".join)


@PROPERTY_SETTINGS
@given(
    chunks=st.lists(st.tuples(st.sampled_from(_OWNERS), _texts), min_size=1, max_size=25),
    query=_texts,
    requester=st.sampled_from(_OWNERS),
)
def test_query_never_returns_other_owners(chunks: List[Tuple[str, str]], query: str, requester: str) -> None:
    kb = KnowledgeBase(VectorIndexConfig(dim=DIM))
    try:
        for owner, text in chunks:
            kb.add(owner, text, embedding=_embed(text))
        for vector in (_embed(query), None):
            result = kb.query(requester, query, vector, top_k=10)
            assert all(hit.chunk.owner_id == requester for hit in result.hits)
    finally:
        kb.close()


@PROPERTY_SETTINGS
@given(
    fillers=st.lists(st.lists(st.sampled_from(_FILLER_WORDS), min_size=1, max_size=8).map(" ".join), max_size=30),
    phrase=st.lists(st.sampled_from(_PHRASE_WORDS), min_size=1, max_size=4, unique=True).map(" ".join),
    position=st.integers(min_value=0, max_value=30),
)
def test_exact_phrase_found_by_keywords_alone(fillers: List[str], phrase: str, position: int) -> None:
    kb = KnowledgeBase(VectorIndexConfig(dim=DIM))
    try:
        split = min(position, len(fillers))
        for text in fillers[:split]:
            kb.add("acme", text)
        target = kb.add("acme", f"Policy: {phrase}")
        for text in fillers[split:]:
            kb.add("acme", text)
        result = kb.query("acme", phrase, None, top_k=3)
        assert result.degraded
        assert target in result.chunk_ids
    finally:
        kb.close()


@PROPERTY_SETTINGS
@given(similarity=st.floats(min_value=0.0, max_value=1.0), threshold=st.floats(min_value=0.5, max_value=0.99))
def test_cache_hit_iff_similarity_reaches_threshold(similarity: float, threshold: float) -> None:
    assume(abs(similarity - threshold) > 1e-3)
    cache = SemanticCache(CacheConfig(threshold=threshold), VectorIndexConfig(dim=4))
    cache.record("first", [1.0, 0.0, 0.0, 0.0], "response")
    second = [similarity, math.sqrt(max(0.0, 1.0 - similarity**2)), 0.0, 0.0]
    found = cache.lookup("second", second)
    if similarity > threshold:
        assert found == "response"
    else:
        assert found is None


@PROPERTY_SETTINGS
@given(writes=st.lists(st.tuples(st.sampled_from(_TOPICS), st.text(min_size=1, max_size=40)), min_size=1, max_size=20))
def test_upsert_keeps_one_fact_per_topic_with_latest_content(writes: List[Tuple[str, str]]) -> None:
    store = SessionMemoryStore(VectorIndexConfig(dim=DIM))
    latest = {}
    for topic, content in writes:
        store.upsert("s1", topic, content, content, embedding=_embed(topic))
        latest[topic] = content
        facts = store.list("s1")
        assert len([fact for fact in facts if fact.topic == topic]) == 1
    assert {fact.topic: fact.content for fact in store.list("s1")} == latest


@PROPERTY_SETTINGS
@given(
    facts=st.lists(st.tuples(st.sampled_from(_SESSIONS), st.sampled_from(_TOPICS), _texts), min_size=1, max_size=20),
    session=st.sampled_from(_SESSIONS),
    query=_texts,
)
def test_recall_stays_within_session(facts: List[Tuple[str, str, str]], session: str, query: str) -> None:
    store = SessionMemoryStore(VectorIndexConfig(dim=DIM))
    for session_id, topic, content in facts:
        store.upsert(session_id, topic, content, content, embedding=_embed(content))
    recalled = store.recall(session, _embed(query), 5)
    assert all(item.fact.session_id == session for item in recalled)


@PROPERTY_SETTINGS
@given(texts=st.lists(_texts, min_size=1, max_size=20), query=_texts)
def test_identical_state_gives_identical_ordering(texts: List[str], query: str) -> None:
    kb = KnowledgeBase(VectorIndexConfig(dim=DIM))
    try:
        for text in texts:
            kb.add("acme", text, embedding=_embed(text))
        first = kb.query("acme", query, _embed(query), top_k=5)
        second = kb.query("acme", query, _embed(query), top_k=5)
        assert first.chunk_ids == second.chunk_ids
    finally:
        kb.close()
