# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine.service",
#   "purpose": "Engine facade exposing knowledge, cache and session-memory operations",
#   "sections": [
#     {
#       "id": "recallengine",
#       "name": "RecallEngine",
#       "anchor": "class-recallengine",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""
High-level facade over the three recall collections.

``RecallEngine`` owns one :class:`KnowledgeBase`, one
:class:`SessionMemoryStore` and a :class:`CacheRouter` of semantic caches, plus
the embedding client, thread pool and observability facade they share. Every
collection is an explicit object created by the engine and torn down by
:meth:`RecallEngine.close`; there is no module-level state.

Operations that accept ``query_vector=None`` embed the text themselves. When
the embedding provider is unavailable they degrade instead of failing:

- knowledge queries rank by keywords only and flag the result ``degraded``;
- knowledge ingestion stores the chunk without a vector (backfilled by
  :meth:`RecallEngine.run_maintenance`);
- cache lookups report a miss and cache writes are skipped;
- memory upserts store the fact with ``embedding_stale=True``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from .cache import SemanticCache
from .config import RecallEngineConfig, RecallEngineConfigManager
from .embeddings import EmbeddingClient, EmbeddingProvider
from .errors import EmbeddingUnavailable, IndexCorrupted
from .knowledge import KnowledgeBase
from .memory import SessionMemoryStore
from .observability import Observability
from .router import DEFAULT_SCOPE, CacheRouter
from .storage import load_snapshot, save_snapshot
from .topics import TopicExtractor
from .types import (
    ContextResult,
    KnowledgeChunk,
    KnowledgeQueryResult,
    RecalledFact,
    SessionMemoryFact,
)

# --- Globals ---

logger = logging.getLogger(__name__)

__all__ = ("RecallEngine",)

VectorLike = Union[Sequence[float], NDArray[Any]]


# --- Public Classes ---


class RecallEngine:
    """Knowledge retrieval, semantic caching and session memory for interview agents.

    Attributes:
        config: Active engine configuration.

    Examples:
        >>> from InterviewKG.RecallEngine.devtools import HashingEmbeddingProvider
        >>> config = RecallEngineConfig.from_dict({"vector": {"dim": 32}})
        >>> with RecallEngine(config, provider=HashingEmbeddingProvider(dim=32)) as engine:
        ...     chunk_id = engine.add_knowledge("acme", "We offer remote work options.")
        ...     engine.query_knowledge("acme", "remote work").chunk_ids == [chunk_id]
        True
    """

    def __init__(
        self,
        config: Optional[RecallEngineConfig] = None,
        *,
        provider: Optional[EmbeddingProvider] = None,
        observability: Optional[Observability] = None,
        topic_extractor: Optional[TopicExtractor] = None,
    ) -> None:
        self.config = config or RecallEngineConfig()
        self._observability = observability or Observability()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.retrieval.executor_max_workers or 4,
            thread_name_prefix="recall-channel",
        )
        self._embedder: Optional[EmbeddingClient] = None
        if provider is not None:
            self._embedder = EmbeddingClient(
                provider,
                self.config.embedding,
                dim=self.config.vector.dim,
                observability=self._observability,
            )
        self._knowledge = KnowledgeBase(
            self.config.vector,
            self.config.text,
            self.config.fusion,
            self.config.retrieval,
            self.config.context,
            observability=self._observability,
            executor=self._executor,
        )
        self._memory = SessionMemoryStore(
            self.config.vector,
            self.config.memory,
            self.config.retrieval,
            embedder=self._embedder,
            extractor=topic_extractor,
            observability=self._observability,
        )
        per_tenant = self.config.cache.scope == "tenant"
        self._caches = CacheRouter(
            per_tenant=per_tenant,
            default_cache=self._new_cache(DEFAULT_SCOPE),
            factory=self._new_cache if per_tenant else None,
        )
        self._closed = False

    @classmethod
    def from_config_file(cls, path: Path, *, provider: Optional[EmbeddingProvider] = None) -> "RecallEngine":
        """Build an engine from a JSON or YAML configuration file."""

        return cls(RecallEngineConfigManager(path).get(), provider=provider)

    def __enter__(self) -> "RecallEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the channel pool and the embedding client."""

        if self._closed:
            return
        self._closed = True
        if self._embedder is not None:
            self._embedder.close()
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def observability(self) -> Observability:
        """Return the shared observability facade."""

        return self._observability

    @property
    def knowledge(self) -> KnowledgeBase:
        """Return the knowledge collection."""

        return self._knowledge

    @property
    def memory(self) -> SessionMemoryStore:
        """Return the session memory collection."""

        return self._memory

    @property
    def caches(self) -> CacheRouter:
        """Return the semantic cache router."""

        return self._caches

    # ------------------------------------------------------------------
    # Knowledge
    # ------------------------------------------------------------------
    def add_knowledge(
        self,
        owner_id: str,
        text: str,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        embedding: Optional[VectorLike] = None,
    ) -> int:
        """Ingest a knowledge chunk for ``owner_id`` and return its id.

        Ingestion succeeds while the embedding provider is down; the chunk is
        then searchable by keywords until maintenance attaches its vector.
        """
        self._ensure_open()
        vector = embedding if embedding is not None else self._try_embed(text, purpose="knowledge_ingest")
        return self._knowledge.add(owner_id, text, metadata, embedding=vector)

    def query_knowledge(
        self,
        owner_id: str,
        query_text: str,
        query_vector: Optional[VectorLike] = None,
        top_k: int = 5,
        *,
        ef_search: Optional[int] = None,
    ) -> KnowledgeQueryResult:
        """Hybrid search over ``owner_id``'s knowledge.

        When ``query_vector`` is ``None`` the engine embeds ``query_text``; if
        that fails the result is keyword-only and ``degraded``.
        """
        self._ensure_open()
        vector = query_vector if query_vector is not None else self._try_embed(query_text, purpose="knowledge_query")
        return self._knowledge.query(owner_id, query_text, vector, top_k, ef_search=ef_search)

    def delete_knowledge(self, owner_id: str, chunk_id: int) -> KnowledgeChunk:
        """Delete one chunk owned by ``owner_id``."""

        self._ensure_open()
        return self._knowledge.delete(owner_id, chunk_id)

    def delete_owner(self, owner_id: str) -> int:
        """Cascade-delete every chunk of ``owner_id`` and its tenant cache."""

        self._ensure_open()
        removed = self._knowledge.delete_owner(owner_id)
        self._caches.drop(owner_id)
        return removed

    def build_context(self, result: KnowledgeQueryResult, max_tokens: Optional[int] = None) -> str:
        """Flatten ``result`` into prompt context under the token budget."""

        return self._knowledge.build_context(result.hits, max_tokens)

    def get_context(
        self,
        owner_id: str,
        query_text: str,
        top_k: int = 5,
        *,
        max_tokens: Optional[int] = None,
    ) -> ContextResult:
        """Return prompt context for an agent question, served from cache when possible.

        Context is tenant data, so it is only cached when caches are scoped per
        tenant. With a global cache every call runs retrieval.
        """
        self._ensure_open()
        cacheable = self._caches.per_tenant
        query_vector = self._try_embed(query_text, purpose="context")
        cache = self._caches.get(owner_id) if cacheable else None
        if cache is not None and query_vector is not None:
            cached = cache.lookup(query_text, query_vector)
            if cached is not None:
                return ContextResult(text=cached, cached=True)
        result = self._knowledge.query(owner_id, query_text, query_vector, top_k)
        text = self.build_context(result, max_tokens)
        if cache is not None and query_vector is not None and result.hits:
            cache.record(query_text, query_vector, text)
        return ContextResult(text=text, chunk_ids=result.chunk_ids, degraded=result.degraded)

    # ------------------------------------------------------------------
    # Semantic cache
    # ------------------------------------------------------------------
    def cache_lookup(
        self,
        query_text: str,
        query_vector: Optional[VectorLike] = None,
        *,
        owner_id: Optional[str] = None,
    ) -> Optional[str]:
        """Return a cached response or ``None``; an embedding failure counts as a miss."""

        self._ensure_open()
        vector = query_vector if query_vector is not None else self._try_embed(query_text, purpose="cache_lookup")
        if vector is None:
            self._observability.metrics.increment("cache_lookups", cache="unavailable", result="miss")
            return None
        return self._caches.get(owner_id).lookup(query_text, vector)

    def cache_record(
        self,
        query_text: str,
        query_vector: Optional[VectorLike],
        response: str,
        *,
        owner_id: Optional[str] = None,
    ) -> Optional[int]:
        """Store ``response``; returns the entry id or ``None`` when no embedding was available."""

        self._ensure_open()
        vector = query_vector if query_vector is not None else self._try_embed(query_text, purpose="cache_record")
        if vector is None:
            return None
        return self._caches.get(owner_id).record(query_text, vector, response)

    def cache_get_or_fill(
        self,
        query_text: str,
        producer: Callable[[], str],
        *,
        query_vector: Optional[VectorLike] = None,
        owner_id: Optional[str] = None,
    ) -> str:
        """Single-flight cache fill; calls ``producer`` directly when embeddings are unavailable."""

        self._ensure_open()
        vector = query_vector if query_vector is not None else self._try_embed(query_text, purpose="cache_fill")
        if vector is None:
            return producer()
        return self._caches.get(owner_id).get_or_fill(query_text, vector, producer)

    # ------------------------------------------------------------------
    # Session memory
    # ------------------------------------------------------------------
    def memory_upsert(
        self,
        session_id: str,
        topic: str,
        content: str,
        source_message: str,
        *,
        embedding: Optional[VectorLike] = None,
    ) -> SessionMemoryFact:
        """Create or replace the fact for ``(session_id, topic)``."""

        self._ensure_open()
        return self._memory.upsert(session_id, topic, content, source_message, embedding=embedding)

    def memory_list(self, session_id: str) -> List[SessionMemoryFact]:
        """Return the facts of ``session_id`` ordered by topic."""

        return self._memory.list(session_id)

    def memory_recall(
        self,
        session_id: str,
        query_vector: Optional[VectorLike] = None,
        top_k: int = 3,
        *,
        query_text: Optional[str] = None,
    ) -> List[RecalledFact]:
        """Return the facts of ``session_id`` most similar to the query.

        ``query_text`` is embedded when ``query_vector`` is omitted; an
        unavailable provider yields an empty list.
        """
        self._ensure_open()
        vector = query_vector
        if vector is None and query_text is not None:
            vector = self._try_embed(query_text, purpose="memory_recall")
        if vector is None:
            return []
        return self._memory.recall(session_id, vector, top_k)

    def memory_recall_by_query(self, session_id: str, query_text: str) -> Optional[RecalledFact]:
        """Return the best fact above the recall threshold for ``query_text``."""

        self._ensure_open()
        return self._memory.recall_by_query(session_id, query_text)

    def memory_extract(self, session_id: str, message: str) -> Dict[str, SessionMemoryFact]:
        """Detect topics in a candidate ``message`` and store one fact per topic."""

        self._ensure_open()
        return self._memory.extract_and_store(session_id, message)

    def delete_session(self, session_id: str) -> int:
        """Delete every fact of ``session_id``."""

        self._ensure_open()
        return self._memory.delete_session(session_id)

    # ------------------------------------------------------------------
    # Maintenance & persistence
    # ------------------------------------------------------------------
    def run_maintenance(self) -> Dict[str, int]:
        """Sweep caches, backfill embeddings, verify and compact indexes.

        When ``cache.idle_tenant_seconds`` is set, tenant caches idle for that
        long are snapshotted and unloaded; they reload on next use.

        Returns:
            Counters describing the work done.
        """
        self._ensure_open()
        report: Dict[str, int] = {"cache_expired": 0, "compacted": 0, "rebuilt": 0}
        with self._observability.trace("maintenance"):
            for _, cache in self._caches.iter_caches():
                outcome = cache.maintain()
                report["cache_expired"] += outcome["expired"]
                report["compacted"] += outcome["compacted"]
                report["rebuilt"] += self._verify(cache.check_integrity, cache.rebuild, "cache")
            report["memory_backfilled"] = self._memory.backfill_stale()
            report["compacted"] += self._memory.maintain()["compacted"]
            report["rebuilt"] += self._verify(self._memory.check_integrity, self._memory.rebuild, "memory")
            report["knowledge_backfilled"] = self._backfill_knowledge()
            report["compacted"] += self._knowledge.maintain()["compacted"]
            report["rebuilt"] += self._verify(self._knowledge.check_integrity, self._knowledge.rebuild, "knowledge")
            idle_after = self.config.cache.idle_tenant_seconds
            evicted = self._caches.evict_idle(idle_after) if idle_after is not None else []
            report["cache_scopes_evicted"] = len(evicted)
        logger.info("recall-maintenance", extra={"event": report})
        return report

    def save(self, path: Path) -> Path:
        """Write every collection's durable records to a JSON snapshot."""

        return save_snapshot(
            path,
            {
                "knowledge": self._knowledge.snapshot(),
                "memory": self._memory.snapshot(),
                "cache": {"scopes": self._caches.snapshot_all()},
            },
        )

    def load(self, path: Path) -> None:
        """Replace every collection with the records of a snapshot and reindex."""

        self._ensure_open()
        collections = load_snapshot(path)
        if "knowledge" in collections:
            self._knowledge.restore(collections["knowledge"])
        if "memory" in collections:
            self._memory.restore(collections["memory"])
        scopes = collections.get("cache", {}).get("scopes", {})
        if isinstance(scopes, Mapping):
            self._caches.restore_all(scopes)
        logger.info("recall-snapshot-loaded", extra={"event": {"path": str(path)}})

    def stats(self) -> Dict[str, object]:
        """Return collection statistics and a metrics snapshot."""

        return {
            "knowledge": dict(self._knowledge.stats()),
            "memory": dict(self._memory.stats()),
            "cache": self._caches.stats(),
            "metrics": self._observability.metrics_snapshot(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("RecallEngine is closed")

    def _new_cache(self, scope: str) -> SemanticCache:
        return SemanticCache(
            self.config.cache,
            self.config.vector,
            name=scope,
            observability=self._observability,
        )

    def _try_embed(self, text: str, *, purpose: str) -> Optional[NDArray[np.float32]]:
        if self._embedder is None:
            return None
        try:
            return self._embedder.embed(text)
        except EmbeddingUnavailable as exc:
            self._observability.metrics.increment("degraded_operations", purpose=purpose, reason=exc.reason)
            return None

    def _backfill_knowledge(self) -> int:
        if self._embedder is None:
            return 0
        filled = 0
        for chunk_id in self._knowledge.missing_embeddings():
            record = self._knowledge.records.get(chunk_id)
            if record is None:
                continue
            try:
                vector = self._embedder.embed(record.text)
            except EmbeddingUnavailable:
                break
            self._knowledge.set_embedding(chunk_id, vector)
            filled += 1
        return filled

    def _verify(self, check: Callable[[], None], rebuild: Callable[[], None], name: str) -> int:
        try:
            check()
            return 0
        except IndexCorrupted:
            logger.warning("recall-index-corrupted", extra={"event": {"collection": name, "action": "rebuild"}})
        try:
            rebuild()
            check()
        except IndexCorrupted:
            logger.exception("recall-index-rebuild-failed", extra={"event": {"collection": name}})
            raise
        return 1
