# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine.knowledge",
#   "purpose": "Tenant-scoped knowledge collection with hybrid retrieval",
#   "sections": [
#     {
#       "id": "validate-metadata",
#       "name": "validate_metadata",
#       "anchor": "function-validate-metadata",
#       "kind": "function"
#     },
#     {
#       "id": "knowledgebase",
#       "name": "KnowledgeBase",
#       "anchor": "class-knowledgebase",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Company knowledge collection with owner isolation and hybrid retrieval.

``KnowledgeBase`` wires one :class:`RecordStore`, one :class:`TextIndex` and
one :class:`VectorIndex` together:

- ``add`` validates metadata, writes the durable record, indexes text always
  and the vector only when an embedding is available (ingestion succeeds while
  the embedding provider is down).
- ``query`` pre-filters both channels to the caller's chunk ids, runs them in
  parallel on a thread pool and fuses them with :class:`HybridRanker`. A
  missing query vector yields a keyword-only result flagged ``degraded``.
- ``get``/``delete`` enforce ownership. Touching another tenant's chunk raises
  :class:`OwnerMismatch` and is logged at WARNING level.
- ``rebuild`` reconstructs both indexes from the records and runs automatically
  when a channel reports :class:`IndexCorrupted`.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from .config import ContextConfig, FusionConfig, RetrievalConfig, TextIndexConfig, VectorIndexConfig
from .errors import IndexCorrupted, NotFound, OwnerMismatch
from .fusion import HybridRanker
from .lexical import TextIndex
from .observability import Observability
from .storage import RecordStore
from .types import (
    CollectionRecord,
    KnowledgeChunk,
    KnowledgeHit,
    KnowledgeQueryResult,
    TextHit,
    VectorHit,
    utcnow,
)
from .vectorstore import VectorIndex, normalize_vector

# --- Globals ---

logger = logging.getLogger(__name__)

__all__ = ("KnowledgeBase", "NO_CONTEXT_MESSAGE", "RECOGNISED_METADATA_KEYS", "validate_metadata")

RECOGNISED_METADATA_KEYS = ("source", "title", "document_id", "page", "tags", "created_by")
NO_CONTEXT_MESSAGE = "No relevant information found in the knowledge base."


# --- Public Functions ---


def validate_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate recognised metadata keys and pass unknown keys through.

    Recognised keys: ``source``, ``title``, ``document_id`` and ``created_by``
    must be strings, ``page`` a non-negative integer and ``tags`` a sequence of
    strings (stored as a list). Unknown keys are preserved verbatim and never
    read by ranking.

    Raises:
        ValueError: If a recognised key has the wrong type.

    Examples:
        >>> validate_metadata({"title": "Handbook", "page": 3, "tags": ("hr",), "color": "blue"})
        {'title': 'Handbook', 'page': 3, 'tags': ['hr'], 'color': 'blue'}
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise ValueError(f"metadata must be a mapping, received {type(metadata).__name__}")
    validated: Dict[str, Any] = {}
    for key, value in metadata.items():
        if key in ("source", "title", "document_id", "created_by"):
            if not isinstance(value, str):
                raise ValueError(f"metadata '{key}' must be a string")
        elif key == "page":
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError("metadata 'page' must be a non-negative integer")
        elif key == "tags":
            if isinstance(value, str) or not isinstance(value, Sequence):
                raise ValueError("metadata 'tags' must be a list of strings")
            if not all(isinstance(tag, str) for tag in value):
                raise ValueError("metadata 'tags' must be a list of strings")
            value = list(value)
        validated[str(key)] = value
    return validated


# --- Public Classes ---


class KnowledgeBase:
    """Knowledge chunks of every tenant, queried one tenant at a time.

    Attributes:
        retrieval: Per-query budgets.
        context: Token budget used by :meth:`build_context`.

    Examples:
        >>> from InterviewKG.RecallEngine.config import VectorIndexConfig
        >>> kb = KnowledgeBase(VectorIndexConfig(dim=2))
        >>> chunk_id = kb.add("acme", "We offer remote work", embedding=[1.0, 0.0])
        >>> kb.query("acme", "remote work", None, 3).chunk_ids
        [1]
        >>> kb.query("globex", "remote work", None, 3).chunk_ids
        []
        >>> kb.close()
    """

    def __init__(
        self,
        vector_config: VectorIndexConfig,
        text_config: Optional[TextIndexConfig] = None,
        fusion_config: Optional[FusionConfig] = None,
        retrieval: Optional[RetrievalConfig] = None,
        context: Optional[ContextConfig] = None,
        *,
        observability: Optional[Observability] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.retrieval = retrieval or RetrievalConfig()
        self.context = context or ContextConfig()
        self._vector_config = vector_config
        self._observability = observability or Observability()
        self._records = RecordStore("knowledge")
        self._text = TextIndex(text_config or TextIndexConfig())
        self._vectors = VectorIndex(vector_config, name="knowledge")
        self._ranker = HybridRanker(fusion_config or FusionConfig())
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.retrieval.executor_max_workers or 2,
            thread_name_prefix="recall-knowledge",
        )
        self._rebuild_lock = RLock()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return self._records.count()

    @property
    def records(self) -> RecordStore:
        """Return the durable record store backing the collection."""

        return self._records

    def owner_chunk_ids(self, owner_id: str) -> List[int]:
        """Return chunk ids owned by ``owner_id`` in ascending order."""

        return self._records.ids_for_scope(owner_id)

    def missing_embeddings(self) -> List[int]:
        """Return ids of chunks ingested without an embedding."""

        return [record.id for record in self._records.all() if record.vector is None]

    def stats(self) -> Mapping[str, float]:
        """Return collection counters plus index statistics."""

        payload: Dict[str, float] = {
            "chunks": float(len(self)),
            "owners": float(len(self._records.scopes())),
            "missing_embeddings": float(len(self.missing_embeddings())),
        }
        payload.update({f"text_{key}": value for key, value in self._text.stats().items()})
        payload.update({f"vector_{key}": value for key, value in self._vectors.stats().items()})
        return payload

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add(
        self,
        owner_id: str,
        text: str,
        metadata: Optional[Mapping[str, Any]] = None,
        embedding: Optional[Sequence[float] | NDArray[Any]] = None,
    ) -> int:
        """Ingest one chunk for ``owner_id``.

        Args:
            owner_id: Owning tenant; mandatory.
            text: Chunk content; must not be blank.
            metadata: Recognised keys are validated, unknown keys are kept.
            embedding: Embedding of ``text``. ``None`` stores a keyword-only
                chunk that :meth:`set_embedding` can complete later.

        Returns:
            The new chunk id.

        Raises:
            ValueError: On a missing owner, blank text or invalid metadata.
            DimensionMismatch: If ``embedding`` has the wrong length.
        """
        if not owner_id:
            raise ValueError("owner_id is required")
        if not text or not text.strip():
            raise ValueError("knowledge text must not be empty")
        validated = validate_metadata(metadata)
        vector = normalize_vector(embedding, dim=self._vector_config.dim) if embedding is not None else None
        chunk_id = self._records.allocate_id()
        now = utcnow()
        tokens = self._text.index(chunk_id, text)
        if vector is not None:
            self._vectors.insert(chunk_id, vector)
        self._records.put(
            CollectionRecord(
                id=chunk_id,
                scope=owner_id,
                text=text,
                metadata=validated,
                vector=vector,
                created_at=now,
                updated_at=now,
                extra={"tokens": sorted(tokens)},
            )
        )
        self._observability.metrics.increment(
            "knowledge_ingested", embedded="yes" if vector is not None else "no"
        )
        return chunk_id

    def set_embedding(self, chunk_id: int, embedding: Sequence[float] | NDArray[Any]) -> None:
        """Attach an embedding to a chunk ingested without one.

        Raises:
            NotFound: If the chunk does not exist.
        """
        record = self._records.get(chunk_id)
        if record is None:
            raise NotFound(f"knowledge chunk {chunk_id} not found")
        vector = normalize_vector(embedding, dim=self._vector_config.dim)
        record.vector = vector
        record.updated_at = utcnow()
        self._vectors.insert(chunk_id, vector)

    def get(self, owner_id: str, chunk_id: int) -> KnowledgeChunk:
        """Return chunk ``chunk_id`` if ``owner_id`` owns it.

        Raises:
            NotFound: If the chunk does not exist.
            OwnerMismatch: If another tenant owns the chunk.
        """
        return self._to_chunk(self._owned_record(owner_id, chunk_id))

    def delete(self, owner_id: str, chunk_id: int) -> KnowledgeChunk:
        """Delete chunk ``chunk_id`` on behalf of its owner.

        Raises:
            NotFound: If the chunk does not exist.
            OwnerMismatch: If another tenant owns the chunk.
        """
        record = self._owned_record(owner_id, chunk_id)
        self._records.delete(chunk_id)
        self._text.remove(chunk_id)
        self._vectors.remove(chunk_id)
        self._observability.metrics.increment("knowledge_deleted")
        return self._to_chunk(record)

    def delete_owner(self, owner_id: str) -> int:
        """Delete every chunk of ``owner_id``; returns how many were removed."""

        removed = self._records.delete_scope(owner_id)
        for record in removed:
            self._text.remove(record.id)
            self._vectors.remove(record.id)
        if removed:
            self._observability.metrics.increment("knowledge_deleted", float(len(removed)))
            logger.info(
                "knowledge-owner-deleted",
                extra={"event": {"owner_id": owner_id, "chunks": len(removed)}},
            )
        return len(removed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def query(
        self,
        owner_id: str,
        query_text: str,
        query_vector: Optional[Sequence[float] | NDArray[Any]],
        top_k: int = 5,
        *,
        ef_search: Optional[int] = None,
        weights: Optional[Mapping[str, float]] = None,
    ) -> KnowledgeQueryResult:
        """Hybrid search over the chunks of ``owner_id``.

        Args:
            owner_id: Tenant whose chunks are searched; other tenants' chunks
                are never candidates.
            query_text: Keyword query.
            query_vector: Query embedding, or ``None`` for keyword-only ranking.
            top_k: Maximum number of hits.
            ef_search: HNSW frontier override (defaults to ``knowledge_ef_search``).
            weights: Channel weight override for weighted fusion.

        Returns:
            Ranked hits with per-stage timings; ``degraded`` is ``True`` when
            ``query_vector`` was ``None``.

        Raises:
            ValueError: If ``owner_id`` is empty or ``top_k`` is not positive.
            DimensionMismatch: If ``query_vector`` has the wrong length.
            IndexCorrupted: If an index stays corrupted after a rebuild.
        """
        if not owner_id:
            raise ValueError("owner_id is required")
        if top_k <= 0:
            raise ValueError("top_k must be positive")
        degraded = query_vector is None
        total_start = time.perf_counter()
        mode = "keyword-only" if degraded else "hybrid"
        with self._observability.trace("knowledge_query", mode=mode):
            candidates = frozenset(self._records.ids_for_scope(owner_id))
            timings: Dict[str, float] = {}
            if not candidates:
                self._observability.metrics.increment("knowledge_queries", mode=mode, result="empty")
                return KnowledgeQueryResult(hits=[], degraded=degraded, timings_ms=timings)

            fetch = top_k * self.retrieval.channel_overfetch
            try:
                text_hits, vector_hits = self._run_channels(
                    candidates, query_text, query_vector, fetch, ef_search, timings
                )
            except IndexCorrupted:
                logger.warning(
                    "knowledge-index-corrupted",
                    extra={"event": {"owner_id": owner_id, "action": "rebuild"}},
                )
                self._rebuild_or_raise()
                text_hits, vector_hits = self._run_channels(
                    candidates, query_text, query_vector, fetch, ef_search, timings
                )

            fusion_start = time.perf_counter()
            ranked = self._ranker.rank(vector_hits, text_hits, weights)
            timings["fusion_ms"] = (time.perf_counter() - fusion_start) * 1000

            hits: List[KnowledgeHit] = []
            for item in ranked.items:
                if len(hits) >= top_k:
                    break
                record = self._records.get(item.id)
                if record is None or record.scope != owner_id:
                    continue
                hits.append(
                    KnowledgeHit(
                        chunk=self._to_chunk(record),
                        score=item.score,
                        rank=len(hits) + 1,
                        vector_score=item.vector_score,
                        text_score=item.text_score,
                        highlights=self._text.highlight(record.text, query_text),
                    )
                )
            timings["total_ms"] = (time.perf_counter() - total_start) * 1000

        metrics = self._observability.metrics
        metrics.increment("knowledge_queries", mode=ranked.mode, result="hit" if hits else "empty")
        metrics.observe("knowledge_query_ms", timings["total_ms"], mode=ranked.mode)
        return KnowledgeQueryResult(hits=hits, degraded=ranked.degraded, timings_ms=timings)

    def build_context(self, hits: Sequence[KnowledgeHit], max_tokens: Optional[int] = None) -> str:
        """Concatenate hit texts in rank order under an estimated token budget.

        Tokens are estimated as ``len(text) / chars_per_token``. Hits are added
        until the next one would exceed the budget.

        Returns:
            Context string, or :data:`NO_CONTEXT_MESSAGE` when ``hits`` is empty.
        """
        if not hits:
            return NO_CONTEXT_MESSAGE
        budget = self.context.max_tokens if max_tokens is None else max_tokens
        parts: List[str] = []
        used = 0.0
        for hit in hits:
            tokens = len(hit.chunk.text) / self.context.chars_per_token
            if used + tokens > budget:
                break
            parts.append(hit.chunk.text)
            used += tokens
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def rebuild(self) -> None:
        """Reconstruct both indexes from the durable records."""

        with self._rebuild_lock:
            self._text.clear()
            self._vectors.clear()
            for record in self._records.all():
                self._text.index(record.id, record.text)
                if record.vector is not None:
                    self._vectors.insert(record.id, record.vector)
        self._observability.metrics.increment("knowledge_rebuilds")
        logger.info("knowledge-rebuilt", extra={"event": {"chunks": len(self)}})

    def check_integrity(self) -> None:
        """Verify both indexes agree with the records.

        Raises:
            IndexCorrupted: On a graph invariant violation or id drift.
        """
        self._vectors.check_integrity()
        records = self._records.all()
        expected_vectors = {record.id for record in records if record.vector is not None}
        if set(self._vectors.ids()) != expected_vectors:
            raise IndexCorrupted("knowledge vector index and records disagree")
        missing_text = [record.id for record in records if record.id not in self._text]
        if missing_text or len(self._text) != len(records):
            raise IndexCorrupted("knowledge text index and records disagree")

    def maintain(self) -> Dict[str, int]:
        """Compact the vector index when tombstones pile up."""

        compacted = self._vectors.compact() if self._vectors.should_compact() else 0
        return {"compacted": compacted}

    def snapshot(self) -> Dict[str, Any]:
        """Return the durable records as a JSON-safe payload."""

        return self._records.snapshot()

    def restore(self, payload: Mapping[str, Any]) -> None:
        """Replace the collection with a :meth:`snapshot` payload and reindex."""

        self._records.restore(payload)
        self.rebuild()

    def close(self) -> None:
        """Release the channel thread pool when this collection created it."""

        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _owned_record(self, owner_id: str, chunk_id: int) -> CollectionRecord:
        record = self._records.get(chunk_id)
        if record is None:
            raise NotFound(f"knowledge chunk {chunk_id} not found")
        if record.scope != owner_id:
            self._observability.metrics.increment("owner_mismatch", collection="knowledge")
            logger.warning(
                "knowledge-owner-mismatch",
                extra={"event": {"owner_id": owner_id, "chunk_id": chunk_id, "actual_owner": record.scope}},
            )
            raise OwnerMismatch(owner_id=owner_id, record_id=chunk_id, actual_owner=record.scope)
        return record

    def _run_channels(
        self,
        candidates: frozenset[int],
        query_text: str,
        query_vector: Optional[Sequence[float] | NDArray[Any]],
        fetch: int,
        ef_search: Optional[int],
        timings: Dict[str, float],
    ) -> tuple[List[TextHit], Optional[List[VectorHit]]]:
        def timed_text() -> List[TextHit]:
            start = time.perf_counter()
            hits = self._text.search(query_text, fetch, candidate_filter=candidates)
            timings["text_ms"] = (time.perf_counter() - start) * 1000
            return hits

        def timed_vector() -> List[VectorHit]:
            start = time.perf_counter()
            hits = self._vectors.search(
                np.asarray(query_vector, dtype=np.float32),
                fetch,
                candidate_filter=candidates,
                ef_search=ef_search or self.retrieval.knowledge_ef_search,
            )
            timings["vector_ms"] = (time.perf_counter() - start) * 1000
            return hits

        futures: Dict[str, Future[Any]] = {"text": self._executor.submit(timed_text)}
        if query_vector is not None:
            futures["vector"] = self._executor.submit(timed_vector)
        results: Dict[str, Any] = {}
        failed_channel: Optional[str] = None
        try:
            for name, future in futures.items():
                failed_channel = name
                results[name] = future.result()
        except Exception:
            for name, future in futures.items():
                if name != failed_channel and not future.done():
                    future.cancel()
            raise
        return results["text"], results.get("vector")

    def _rebuild_or_raise(self) -> None:
        try:
            self.rebuild()
            self.check_integrity()
        except Exception as exc:
            logger.exception("knowledge-rebuild-failed")
            raise IndexCorrupted(f"knowledge index rebuild failed: {exc}") from exc

    @staticmethod
    def _to_chunk(record: CollectionRecord) -> KnowledgeChunk:
        return KnowledgeChunk(
            chunk_id=record.id,
            owner_id=record.scope,
            text=record.text,
            metadata=dict(record.metadata),
            embedding=record.vector,
            tokens=frozenset(record.extra.get("tokens", ())),
            created_at=record.created_at,
        )
