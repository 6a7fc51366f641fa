"""
Core typed structures for recall engine components.

This module defines the records that flow between the vector index, the text
index, the hybrid ranker, the semantic cache, and the session memory store.
Records are the durable source of truth; every index can be rebuilt from them.

Key Features:
- Slotted dataclasses for every persisted record and search result
- Explicit ``degraded`` marker on knowledge results so callers can lower
  their confidence when the vector channel was unavailable
- Helpers converting embeddings between storage precision and float32
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

__all__ = (
    "CollectionRecord",
    "ContextResult",
    "KnowledgeChunk",
    "KnowledgeHit",
    "KnowledgeQueryResult",
    "RankedId",
    "RankedList",
    "RecalledFact",
    "SemanticCacheEntry",
    "SessionMemoryFact",
    "TextHit",
    "VectorHit",
    "as_float32",
    "utcnow",
)


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


def as_float32(vector: Sequence[float] | NDArray[Any]) -> NDArray[np.float32]:
    """Return ``vector`` as a contiguous one-dimensional float32 array."""

    array = np.asarray(vector, dtype=np.float32)
    return np.ascontiguousarray(array.reshape(-1))


@dataclass(slots=True, frozen=True)
class VectorHit:
    """Single nearest-neighbour match returned by the vector index.

    Attributes:
        id: Identifier inserted into the index.
        score: Cosine similarity between the query and the stored vector.
    """

    id: int
    score: float


@dataclass(slots=True, frozen=True)
class TextHit:
    """Single keyword match returned by the text index.

    Attributes:
        id: Identifier indexed into the text index.
        score: Okapi BM25 relevance.
    """

    id: int
    score: float


@dataclass(slots=True, frozen=True)
class RankedId:
    """Fused ranking entry with per-channel diagnostics.

    Attributes:
        id: Record identifier.
        score: Fused score used for ordering.
        vector_score: Normalised vector contribution (0 when absent).
        text_score: Normalised text contribution (0 when absent).
    """

    id: int
    score: float
    vector_score: float = 0.0
    text_score: float = 0.0


@dataclass(slots=True)
class RankedList:
    """Output of :meth:`HybridRanker.rank`.

    Attributes:
        items: Ranked entries ordered by fused score descending, id ascending.
        degraded: ``True`` when the vector channel was unavailable.

    Examples:
        >>> ranked = RankedList(items=[RankedId(id=1, score=1.0)], degraded=True)
        >>> ranked.mode
        'keyword-only'
        >>> ranked.ids
        [1]
    """

    items: Sequence[RankedId]
    degraded: bool = False

    @property
    def mode(self) -> str:
        """Return ``"keyword-only"`` for degraded lists, ``"hybrid"`` otherwise."""

        return "keyword-only" if self.degraded else "hybrid"

    @property
    def ids(self) -> list[int]:
        """Return the ranked identifiers in order."""

        return [item.id for item in self.items]


@dataclass(slots=True)
class KnowledgeChunk:
    """Company knowledge ingested for one tenant.

    Attributes:
        chunk_id: Collection-local identifier assigned at ingestion.
        owner_id: Tenant that owns the chunk; mandatory.
        text: Immutable chunk content.
        metadata: Validated metadata (recognised keys plus opaque extras).
        embedding: Stored embedding, or ``None`` when ingestion ran while the
            embedding provider was unavailable.
        tokens: Analysed token set derived from ``text``.
        created_at: Ingestion timestamp.

    Examples:
        >>> chunk = KnowledgeChunk(chunk_id=1, owner_id="1", text="Java backend")
        >>> chunk.has_embedding
        False
    """

    chunk_id: int
    owner_id: str
    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    embedding: Optional[NDArray[Any]] = None
    tokens: frozenset[str] = frozenset()
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_embedding(self) -> bool:
        """Return ``True`` when a vector was indexed for the chunk."""

        return self.embedding is not None


@dataclass(slots=True)
class KnowledgeHit:
    """Ranked knowledge chunk returned by ``query_knowledge``.

    Attributes:
        chunk: The matching chunk.
        score: Fused score.
        rank: One-based position in the result list.
        vector_score: Normalised vector contribution.
        text_score: Normalised keyword contribution.
        highlights: Query terms present in the chunk text.
    """

    chunk: KnowledgeChunk
    score: float
    rank: int
    vector_score: float = 0.0
    text_score: float = 0.0
    highlights: Sequence[str] = ()


@dataclass(slots=True)
class KnowledgeQueryResult:
    """Response envelope for knowledge queries.

    Attributes:
        hits: Ranked hits for the requesting owner only.
        degraded: ``True`` when results were ranked by the text channel alone.
        timings_ms: Per-stage timings.
    """

    hits: Sequence[KnowledgeHit]
    degraded: bool = False
    timings_ms: Mapping[str, float] = field(default_factory=dict)

    @property
    def mode(self) -> str:
        """Return ``"keyword-only"`` for degraded results, ``"hybrid"`` otherwise."""

        return "keyword-only" if self.degraded else "hybrid"

    @property
    def chunk_ids(self) -> list[int]:
        """Return chunk identifiers in rank order."""

        return [hit.chunk.chunk_id for hit in self.hits]


@dataclass(slots=True)
class SemanticCacheEntry:
    """Stored upstream response keyed by query embedding similarity."""

    entry_id: int
    query_text: str
    response: str
    embedding: NDArray[Any]
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class SessionMemoryFact:
    """Fact extracted from an interview session, unique per (session, topic).

    Attributes:
        fact_id: Stable identifier; preserved across upserts of the same topic.
        session_id: Interview session the fact belongs to.
        topic: Short controlled topic string (e.g. ``"salary"``).
        content: Current fact content.
        source_message: Message the fact was extracted from.
        embedding: Embedding of ``content`` (possibly stale, possibly ``None``).
        embedding_stale: ``True`` when ``embedding`` does not reflect ``content``.
        created_at: First extraction time.
        updated_at: Most recent upsert time.
    """

    fact_id: int
    session_id: str
    topic: str
    content: str
    source_message: str
    embedding: Optional[NDArray[Any]] = None
    embedding_stale: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class RecalledFact:
    """Session memory fact paired with its similarity to the recall query."""

    fact: SessionMemoryFact
    relevance: float


@dataclass(slots=True)
class CollectionRecord:
    """Durable record layout shared by every collection.

    Attributes:
        id: Collection-local identifier.
        scope: Owner id (knowledge), session id (memory) or cache scope.
        text: Indexed text.
        metadata: Opaque metadata mapping.
        vector: Embedding stored with the record, if any.
        created_at: Creation timestamp.
        updated_at: Last mutation timestamp.
        extra: Collection specific fields (e.g. topic, cached response).
    """

    id: int
    scope: str
    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    vector: Optional[NDArray[Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable representation of the record."""

        return {
            "id": self.id,
            "scope": self.scope,
            "text": self.text,
            "metadata": dict(self.metadata),
            "vector": None if self.vector is None else [float(x) for x in self.vector],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CollectionRecord":
        """Rebuild a record from :meth:`to_dict` output."""

        vector = payload.get("vector")
        return cls(
            id=int(payload["id"]),
            scope=str(payload["scope"]),
            text=str(payload.get("text", "")),
            metadata=dict(payload.get("metadata") or {}),
            vector=None if vector is None else as_float32(vector),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            updated_at=datetime.fromisoformat(str(payload["updated_at"])),
            extra=dict(payload.get("extra") or {}),
        )


@dataclass(slots=True)
class ContextResult:
    """Prompt context assembled from knowledge hits for an agent tool call.

    Attributes:
        text: Context string under the configured token budget.
        chunk_ids: Chunks that contributed to ``text`` (empty on a cache hit).
        cached: ``True`` when ``text`` came from the semantic cache.
        degraded: ``True`` when retrieval ran keyword-only.
    """

    text: str
    chunk_ids: Sequence[int] = ()
    cached: bool = False
    degraded: bool = False
