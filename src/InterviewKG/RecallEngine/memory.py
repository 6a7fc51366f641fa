# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine.memory",
#   "purpose": "Per-session interview memory keyed by (session, topic)",
#   "sections": [
#     {
#       "id": "sessionmemorystore",
#       "name": "SessionMemoryStore",
#       "anchor": "class-sessionmemorystore",
#       "kind": "class"
#     },
#     {
#       "id": "truncate",
#       "name": "truncate",
#       "anchor": "function-truncate",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Session memory: facts a candidate already stated during an interview.

The store keeps exactly one fact per ``(session_id, topic)``. Upserting an
existing topic replaces its content, source message, embedding and update
time in place and keeps the fact id, so an agent asking "did they already
mention salary?" always sees the latest answer.

Embedding failures never fail an upsert. When the provider is unavailable the
fact is written with its previous embedding (or none) and flagged
``embedding_stale``; :meth:`SessionMemoryStore.backfill_stale` re-embeds such
facts once the provider recovers.

Writers serialise per ``(session, topic)`` key only, so writers for different
keys never block each other and readers never take those locks.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .config import MemoryConfig, RetrievalConfig, VectorIndexConfig
from .embeddings import EmbeddingClient
from .errors import EmbeddingUnavailable, IndexCorrupted
from .observability import Observability
from .storage import RecordStore
from .topics import TopicExtractor
from .types import CollectionRecord, RecalledFact, SessionMemoryFact, utcnow
from .vectorstore import VectorIndex, normalize_vector

# --- Globals ---

logger = logging.getLogger(__name__)

__all__ = ("SessionMemoryStore", "truncate")

_ELLIPSIS = "..."


# --- Public Functions ---


def truncate(text: str, limit: int) -> str:
    """Cap ``text`` at ``limit`` characters, marking the cut with ``...``.

    Examples:
        >>> truncate("abcdefghij", 8)
        'abcde...'
        >>> truncate("short", 8)
        'short'
    """
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if limit <= len(_ELLIPSIS):
        return text[:limit]
    return text[: limit - len(_ELLIPSIS)].rstrip() + _ELLIPSIS


# --- Private Classes ---


@dataclass(slots=True)
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


# --- Public Classes ---


class SessionMemoryStore:
    """Topic-keyed memory for interview sessions.

    Attributes:
        config: Truncation limits and recall threshold.
        retrieval: Search budgets (``memory_ef_search``).
        extractor: Topic detector used by :meth:`extract_and_store`.

    Examples:
        >>> from InterviewKG.RecallEngine.config import VectorIndexConfig
        >>> store = SessionMemoryStore(VectorIndexConfig(dim=2))
        >>> fact = store.upsert("s1", "salary", "Expects 150k", "I expect 150k", embedding=[1.0, 0.0])
        >>> [item.topic for item in store.list("s1")]
        ['salary']
    """

    def __init__(
        self,
        vector_config: VectorIndexConfig,
        config: Optional[MemoryConfig] = None,
        retrieval: Optional[RetrievalConfig] = None,
        *,
        embedder: Optional[EmbeddingClient] = None,
        extractor: Optional[TopicExtractor] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self.config = config or MemoryConfig()
        self.retrieval = retrieval or RetrievalConfig()
        self.extractor = extractor or TopicExtractor()
        self._vector_config = vector_config
        self._embedder = embedder
        self._observability = observability or Observability()
        self._records = RecordStore("memory")
        self._index = VectorIndex(vector_config, name="memory")
        self._by_key: Dict[Tuple[str, str], int] = {}
        self._key_locks: Dict[Tuple[str, str], _KeyLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return self._records.count()

    @property
    def records(self) -> RecordStore:
        """Return the durable record store backing the memory."""

        return self._records

    def get(self, session_id: str, topic: str) -> Optional[SessionMemoryFact]:
        """Return the fact stored for ``(session_id, topic)`` when present."""

        fact_id = self._by_key.get((session_id, topic))
        if fact_id is None:
            return None
        record = self._records.get(fact_id)
        return None if record is None else self._to_fact(record)

    def list(self, session_id: str) -> List[SessionMemoryFact]:
        """Return every fact of ``session_id`` ordered by topic."""

        facts = []
        for fact_id in self._records.ids_for_scope(session_id):
            record = self._records.get(fact_id)
            if record is not None:
                facts.append(self._to_fact(record))
        facts.sort(key=lambda fact: (fact.topic, fact.fact_id))
        return facts

    def stale_count(self) -> int:
        """Return how many facts await re-embedding."""

        return sum(1 for record in self._records.all() if record.extra.get("embedding_stale"))

    def stats(self) -> Mapping[str, float]:
        """Return fact and session counts plus vector index statistics."""

        payload = {
            "facts": float(len(self)),
            "sessions": float(len(self._records.scopes())),
            "stale": float(self.stale_count()),
        }
        payload.update({f"index_{key}": value for key, value in self._index.stats().items()})
        return payload

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def upsert(
        self,
        session_id: str,
        topic: str,
        content: str,
        source_message: str,
        *,
        embedding: Optional[Sequence[float] | NDArray[Any]] = None,
    ) -> SessionMemoryFact:
        """Create or replace the fact for ``(session_id, topic)``.

        Args:
            session_id: Interview session identifier.
            topic: Controlled topic string.
            content: Fact content (truncated to ``content_max_chars``).
            source_message: Message the fact came from (truncated to
                ``source_max_chars``).
            embedding: Precomputed embedding of ``content``; computed through the
                embedding client when omitted.

        Returns:
            The stored fact. ``embedding_stale`` is ``True`` when the provider
            was unavailable.

        Raises:
            ValueError: If ``session_id`` or ``topic`` is empty.
            DimensionMismatch: If ``embedding`` has the wrong length.
        """
        if not session_id or not topic:
            raise ValueError("session_id and topic are required")
        content = truncate(content, self.config.content_max_chars)
        source_message = truncate(source_message, self.config.source_max_chars)
        if embedding is not None:
            vector: Optional[NDArray[np.float32]] = normalize_vector(embedding, dim=self._vector_config.dim)
        else:
            vector = self._embed_or_none(content)
        return self._write(session_id, topic, content, source_message, vector)

    def extract_and_store(self, session_id: str, message: str) -> Dict[str, SessionMemoryFact]:
        """Detect topics in ``message`` and upsert one fact per topic.

        The message is embedded once and shared by every matched topic.

        Returns:
            Stored facts keyed by topic (empty when no topic matched).
        """
        topics = self.extractor.extract(message)
        if not topics:
            return {}
        content = truncate(message, self.config.content_max_chars)
        source = truncate(message, self.config.source_max_chars)
        vector = self._embed_or_none(content)
        stored = {topic: self._write(session_id, topic, content, source, vector) for topic in topics}
        self._observability.metrics.increment("memory_topics_extracted", float(len(stored)))
        logger.info(
            "session-memory-extracted",
            extra={"event": {"session_id": session_id, "topics": topics}},
        )
        return stored

    def delete_session(self, session_id: str) -> int:
        """Remove every fact of ``session_id``; returns how many were removed.

        Each fact is removed under its (session, topic) lock, so an upsert that
        is mid-write finishes first and is then deleted.
        """
        topics = {topic for scope, topic in list(self._by_key) if scope == session_id}
        for fact_id in self._records.ids_for_scope(session_id):
            record = self._records.get(fact_id)
            if record is not None:
                topics.add(str(record.extra.get("topic", "")))

        removed = 0
        for topic in sorted(topics):
            with self._key_lock(session_id, topic):
                fact_id = self._by_key.pop((session_id, topic), None)
                record = self._records.delete(fact_id) if fact_id is not None else None
                if record is None:
                    continue
                self._index.remove(record.id)
                removed += 1
        if removed:
            logger.info(
                "session-memory-deleted",
                extra={"event": {"session_id": session_id, "facts": removed}},
            )
        return removed

    def backfill_stale(self, limit: Optional[int] = None) -> int:
        """Re-embed stale facts; stops early if the provider is still unavailable.

        Returns:
            Number of facts refreshed.
        """
        if self._embedder is None:
            return 0
        refreshed = 0
        for record in self._records.all():
            if limit is not None and refreshed >= limit:
                break
            if not record.extra.get("embedding_stale"):
                continue
            try:
                vector = self._embedder.embed(record.text)
            except EmbeddingUnavailable:
                logger.warning(
                    "session-memory-backfill-deferred",
                    extra={"event": {"refreshed": refreshed}},
                )
                break
            topic = str(record.extra.get("topic", ""))
            with self._key_lock(record.scope, topic):
                current = self._records.get(record.id)
                if current is None or current.text != record.text:
                    continue
                normalized = normalize_vector(vector, dim=self._vector_config.dim)
                current.vector = normalized
                current.extra["embedding_stale"] = False
                self._index.insert(current.id, normalized)
            refreshed += 1
        if refreshed:
            self._observability.metrics.increment("memory_backfilled", float(refreshed))
        return refreshed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def recall(
        self,
        session_id: str,
        query_vector: Sequence[float] | NDArray[Any],
        k: int,
        *,
        ef_search: Optional[int] = None,
    ) -> List[RecalledFact]:
        """Return the ``k`` facts of ``session_id`` most similar to ``query_vector``.

        Facts of other sessions are never returned. Facts stored without any
        embedding are not reachable by vector recall but still appear in :meth:`list`.
        """
        if k <= 0:
            return []
        candidates = self._records.ids_for_scope(session_id)
        if not candidates:
            return []
        with self._observability.trace("memory_recall"):
            hits = self._index.search(
                query_vector,
                k,
                candidate_filter=candidates,
                ef_search=ef_search or self.retrieval.memory_ef_search,
            )
        recalled: List[RecalledFact] = []
        for hit in hits:
            record = self._records.get(hit.id)
            if record is None or record.scope != session_id:
                continue
            recalled.append(RecalledFact(fact=self._to_fact(record), relevance=hit.score))
        self._observability.metrics.increment("memory_recalls", result="hit" if recalled else "empty")
        return recalled

    def recall_by_query(self, session_id: str, query_text: str) -> Optional[RecalledFact]:
        """Embed ``query_text`` and return the best fact above ``recall_min_similarity``.

        Returns ``None`` when nothing is similar enough or the embedding
        provider is unavailable.
        """
        if self._embedder is None:
            return None
        try:
            query_vector = self._embedder.embed(query_text)
        except EmbeddingUnavailable as exc:
            logger.warning(
                "session-memory-recall-degraded",
                extra={"event": {"session_id": session_id, "reason": exc.reason}},
            )
            return None
        best = self.recall(session_id, query_vector, 1)
        if best and best[0].relevance >= self.config.recall_min_similarity:
            return best[0]
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def rebuild(self) -> None:
        """Rebuild the vector index and key map from the durable records."""

        self._index.clear()
        self._by_key.clear()
        for record in self._records.all():
            self._by_key[(record.scope, str(record.extra.get("topic", "")))] = record.id
            if record.vector is not None:
                self._index.insert(record.id, record.vector)
        logger.info("session-memory-rebuilt", extra={"event": {"facts": len(self)}})

    def check_integrity(self) -> None:
        """Verify the vector index and its agreement with the records.

        Raises:
            IndexCorrupted: On a graph invariant violation or id drift.
        """
        self._index.check_integrity()
        indexed = set(self._index.ids())
        stored = {record.id for record in self._records.all() if record.vector is not None}
        if indexed != stored:
            raise IndexCorrupted("session memory index and records disagree")

    def maintain(self) -> Dict[str, int]:
        """Compact the vector index when tombstones pile up."""

        compacted = self._index.compact() if self._index.should_compact() else 0
        return {"compacted": compacted}

    def snapshot(self) -> Dict[str, Any]:
        """Return the durable records as a JSON-safe payload."""

        return self._records.snapshot()

    def restore(self, payload: Mapping[str, Any]) -> None:
        """Replace the memory contents with a :meth:`snapshot` payload."""

        self._records.restore(payload)
        self.rebuild()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextmanager
    def _key_lock(self, session_id: str, topic: str) -> Iterator[None]:
        # A lock entry lives while anyone holds or waits on it, so every caller
        # for one key serialises on the same lock object.
        key = (session_id, topic)
        with self._locks_guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._key_locks[key] = entry
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._key_locks[key]

    def _embed_or_none(self, content: str) -> Optional[NDArray[np.float32]]:
        if self._embedder is None:
            return None
        try:
            vector = self._embedder.embed(content)
        except EmbeddingUnavailable as exc:
            self._observability.metrics.increment("memory_stale_writes", reason=exc.reason)
            logger.warning(
                "session-memory-stale-embedding",
                extra={"event": {"reason": exc.reason, "chars": len(content)}},
            )
            return None
        return normalize_vector(vector, dim=self._vector_config.dim)

    def _write(
        self,
        session_id: str,
        topic: str,
        content: str,
        source_message: str,
        vector: Optional[NDArray[np.float32]],
    ) -> SessionMemoryFact:
        key = (session_id, topic)
        with self._key_lock(session_id, topic):
            now = utcnow()
            fact_id = self._by_key.get(key)
            existing = self._records.get(fact_id) if fact_id is not None else None
            if existing is None:
                fact_id = self._records.allocate_id()
                created_at = now
                previous_vector = None
            else:
                created_at = existing.created_at
                previous_vector = existing.vector
            stale = vector is None
            record = CollectionRecord(
                id=fact_id,
                scope=session_id,
                text=content,
                vector=vector if vector is not None else previous_vector,
                created_at=created_at,
                updated_at=now,
                extra={"topic": topic, "source_message": source_message, "embedding_stale": stale},
            )
            self._records.put(record)
            self._by_key[key] = fact_id
            if vector is not None:
                self._index.insert(fact_id, vector)
        self._observability.metrics.increment("memory_upserts", result="update" if existing else "create")
        return self._to_fact(record)

    @staticmethod
    def _to_fact(record: CollectionRecord) -> SessionMemoryFact:
        return SessionMemoryFact(
            fact_id=record.id,
            session_id=record.scope,
            topic=str(record.extra.get("topic", "")),
            content=record.text,
            source_message=str(record.extra.get("source_message", "")),
            embedding=record.vector,
            embedding_stale=bool(record.extra.get("embedding_stale", False)),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
