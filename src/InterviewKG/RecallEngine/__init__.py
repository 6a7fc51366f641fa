# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine",
#   "purpose": "Recall engine public API facade",
#   "sections": []
# }
# === /NAVMAP ===

"""
InterviewKG.RecallEngine is the retrieval core behind the AI interview agents.
It answers three questions during a live interview: what does the hiring
company know about this topic, what has the candidate already told us, and
have we answered this exact question before.

Core modules and how they interrelate:

- ``config`` defines the frozen dataclasses that size the HNSW graphs, BM25
  scoring, fusion weights, cache thresholds and embedding timeouts, plus a
  JSON/YAML ``RecallEngineConfigManager``.
- ``vectorstore`` implements the HNSW proximity graph (cosine similarity,
  tombstones, compaction, candidate pre-filtering, per-query ``ef_search``).
  Every collection owns a private instance.
- ``lexical`` and ``tokenization`` provide the inverted index with stopwords,
  suffix stemming and Okapi BM25 scoring.
- ``fusion`` merges both channels by weighted min-max normalisation or
  reciprocal rank fusion and handles keyword-only degraded ranking.
- ``knowledge`` stores tenant-scoped company knowledge and runs the two
  channels in parallel on a thread pool.
- ``memory`` and ``topics`` keep one fact per (session, topic), extracted from
  candidate messages with rule-based topic detection.
- ``cache`` and ``router`` implement the semantic response cache with
  single-flight fills, expiry, capacity eviction and per-tenant scoping.
- ``embeddings`` wraps the external embedding provider with a timeout,
  cancellation and tenacity retries; ``devtools`` ships offline providers.
- ``storage`` holds the durable records every index is rebuilt from and
  writes JSON snapshots.
- ``service`` is the ``RecallEngine`` facade and ``api`` the agent tool handlers.
"""

from __future__ import annotations

# --- Globals ---

__all__ = (
    "AgentToolAPI",
    "CacheRouter",
    "ContextResult",
    "DimensionMismatch",
    "EmbeddingClient",
    "EmbeddingProvider",
    "EmbeddingUnavailable",
    "HttpEmbeddingProvider",
    "HybridRanker",
    "IndexCorrupted",
    "KnowledgeBase",
    "KnowledgeQueryResult",
    "NotFound",
    "Observability",
    "OwnerMismatch",
    "RecallEngine",
    "RecallEngineConfig",
    "RecallEngineConfigManager",
    "RecallEngineError",
    "SemanticCache",
    "SessionMemoryStore",
    "TextIndex",
    "TopicExtractor",
    "VectorIndex",
)


# --- Re-exports ---

from .api import AgentToolAPI
from .cache import SemanticCache
from .config import RecallEngineConfig, RecallEngineConfigManager
from .embeddings import EmbeddingClient, EmbeddingProvider, HttpEmbeddingProvider
from .errors import (
    DimensionMismatch,
    EmbeddingUnavailable,
    IndexCorrupted,
    NotFound,
    OwnerMismatch,
    RecallEngineError,
)
from .fusion import HybridRanker
from .knowledge import KnowledgeBase
from .lexical import TextIndex
from .memory import SessionMemoryStore
from .observability import Observability
from .router import CacheRouter
from .service import RecallEngine
from .topics import TopicExtractor
from .types import ContextResult, KnowledgeQueryResult
from .vectorstore import VectorIndex
