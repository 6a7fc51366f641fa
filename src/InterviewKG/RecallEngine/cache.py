# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine.cache",
#   "purpose": "Semantic response cache with single-flight fills and TTL/capacity eviction",
#   "sections": [
#     {
#       "id": "semanticcache",
#       "name": "SemanticCache",
#       "anchor": "class-semanticcache",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Semantic response cache keyed by query-embedding similarity.

A lookup returns the response stored for the nearest live entry whose cosine
similarity to the query is at least ``CacheConfig.threshold``. Only one entry
is authoritative per lookup, and entries are written only after a miss was
followed by a successful upstream response.

Concurrent misses for the same question are coalesced by
:meth:`SemanticCache.get_or_fill`. The first caller claims a *flight* keyed by
a coarse fingerprint of the query text (its sorted analysed terms); other
callers with the same fingerprint wait for the flight, bounded by
``inflight_timeout_seconds``, and then repeat the lookup. A waiter whose wait
expires treats the situation as a miss and runs its own producer, so a stuck
upstream call can delay but never block other callers.

Entries older than ``ttl_seconds`` are invisible to lookups and removed by
:meth:`SemanticCache.evict_expired`; inserting beyond ``max_entries`` evicts the
oldest entries first. Eviction tombstones vector-index nodes, and lookups that
race an eviction skip ids whose record has already vanished.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .config import CacheConfig, VectorIndexConfig
from .errors import IndexCorrupted
from .observability import Observability
from .storage import RecordStore
from .tokenization import fingerprint
from .types import CollectionRecord, SemanticCacheEntry, utcnow
from .vectorstore import VectorIndex, normalize_vector

# --- Globals ---

logger = logging.getLogger(__name__)

__all__ = ("SemanticCache",)


# --- Private Classes ---


@dataclass(slots=True)
class _Flight:
    event: threading.Event = field(default_factory=threading.Event)
    leader: int = field(default_factory=threading.get_ident)


# --- Public Classes ---


class SemanticCache:
    """Similarity-keyed cache of upstream responses.

    Attributes:
        config: Threshold, TTL, capacity and single-flight settings.
        name: Cache label (``"global"`` or the owning tenant id).

    Examples:
        >>> from InterviewKG.RecallEngine.config import CacheConfig, VectorIndexConfig
        >>> cache = SemanticCache(CacheConfig(), VectorIndexConfig(dim=2))
        >>> _ = cache.record("notice period?", [1.0, 0.0], "Two weeks.")
        >>> cache.lookup("what is the notice period", [0.99, 0.01])
        'Two weeks.'
        >>> cache.lookup("salary band", [0.0, 1.0]) is None
        True
    """

    def __init__(
        self,
        config: CacheConfig,
        vector_config: VectorIndexConfig,
        *,
        name: str = "global",
        observability: Optional[Observability] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.name = name
        self._vector_config = vector_config
        self._observability = observability or Observability()
        self._clock = clock
        self._records = RecordStore(f"cache:{name}")
        self._index = VectorIndex(vector_config, name=f"cache:{name}")
        self._order: Deque[int] = deque()
        self._write_lock = threading.RLock()
        self._flights: Dict[str, _Flight] = {}
        self._flight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return self._records.count()

    @property
    def records(self) -> RecordStore:
        """Return the durable record store backing the cache."""

        return self._records

    def get(self, entry_id: int) -> Optional[SemanticCacheEntry]:
        """Return the entry for ``entry_id`` when it is still stored."""

        record = self._records.get(entry_id)
        return None if record is None else self._to_entry(record)

    def stats(self) -> Mapping[str, float]:
        """Return entry counts plus vector index statistics."""

        payload = {"entries": float(len(self)), "inflight": float(len(self._flights))}
        payload.update({f"index_{key}": value for key, value in self._index.stats().items()})
        return payload

    # ------------------------------------------------------------------
    # Lookup & record
    # ------------------------------------------------------------------
    def lookup(self, query_text: str, query_vector: Sequence[float] | NDArray[Any]) -> Optional[str]:
        """Return the cached response for the nearest entry above the threshold.

        Args:
            query_text: Raw query text (only used for diagnostics).
            query_vector: Embedding of the query.

        Returns:
            Cached response, or ``None`` on a miss.
        """
        found = self.lookup_entry(query_vector)
        metrics = self._observability.metrics
        if found is None:
            metrics.increment("cache_lookups", cache=self.name, result="miss")
            return None
        entry, similarity = found
        metrics.increment("cache_lookups", cache=self.name, result="hit")
        logger.debug(
            "semantic-cache-hit",
            extra={
                "event": {
                    "cache": self.name,
                    "entry_id": entry.entry_id,
                    "similarity": round(similarity, 6),
                    "query_chars": len(query_text),
                }
            },
        )
        return entry.response

    def lookup_entry(
        self, query_vector: Sequence[float] | NDArray[Any]
    ) -> Optional[Tuple[SemanticCacheEntry, float]]:
        """Return ``(entry, similarity)`` for the authoritative live entry, if any.

        Expired and evicted ids are rejected while the graph is walked, so any
        number of stale near-duplicates cannot hide the nearest live entry.
        """

        now = self._clock()

        def is_live(entry_id: int) -> bool:
            record = self._records.get(entry_id)
            return record is not None and not self._is_expired(record, now)

        for hit in self._index.search(query_vector, k=1, candidate_filter=is_live):
            if hit.score < self.config.threshold:
                return None
            record = self._records.get(hit.id)
            if record is not None:
                return self._to_entry(record), hit.score
        return None

    def record(self, query_text: str, query_vector: Sequence[float] | NDArray[Any], response: str) -> int:
        """Store ``response`` for ``query_text`` and wake waiters on its fingerprint.

        Returns:
            Identifier of the new entry.

        Raises:
            DimensionMismatch: If the query vector has the wrong length.
        """
        vector = normalize_vector(query_vector, dim=self._vector_config.dim)
        with self._write_lock:
            entry_id = self._records.allocate_id()
            now = self._clock()
            self._records.put(
                CollectionRecord(
                    id=entry_id,
                    scope=self.name,
                    text=query_text,
                    vector=vector,
                    created_at=now,
                    updated_at=now,
                    extra={"response": response},
                )
            )
            self._index.insert(entry_id, vector)
            self._order.append(entry_id)
            evicted = self._evict_over_capacity()
        self._release_flight(fingerprint(query_text))
        metrics = self._observability.metrics
        metrics.increment("cache_records", cache=self.name)
        metrics.set_gauge("cache_entries", float(len(self)), cache=self.name)
        if evicted:
            metrics.increment("cache_evictions", float(evicted), cache=self.name, reason="capacity")
        return entry_id

    def get_or_fill(
        self,
        query_text: str,
        query_vector: Sequence[float] | NDArray[Any],
        producer: Callable[[], str],
    ) -> str:
        """Return a cached response or produce, record and return a new one.

        Concurrent callers with the same query fingerprint share one producer
        call. When a flight ends without a usable entry (its producer failed),
        the released waiters contend for a new flight so only one of them calls
        upstream next. Waiters whose wait exceeds ``inflight_timeout_seconds``
        run their own producer. A failing producer releases the flight without
        recording and its exception propagates to the caller that ran it.

        Args:
            query_text: Raw query text; its fingerprint keys the flight.
            query_vector: Embedding of the query.
            producer: Zero-argument callable computing the upstream response.

        Returns:
            The cached or freshly produced response.
        """
        cached = self.lookup(query_text, query_vector)
        if cached is not None:
            return cached

        key = fingerprint(query_text)
        metrics = self._observability.metrics
        while True:
            with self._flight_lock:
                flight = self._flights.get(key)
                leader = flight is None
                if flight is None:
                    flight = _Flight()
                    self._flights[key] = flight
            if leader:
                break

            completed = flight.event.wait(self.config.inflight_timeout_seconds)
            metrics.increment("cache_inflight_waits", cache=self.name, outcome="released" if completed else "timeout")
            cached = self.lookup(query_text, query_vector)
            if cached is not None:
                return cached
            if not completed:
                logger.warning(
                    "semantic-cache-inflight-timeout",
                    extra={
                        "event": {
                            "cache": self.name,
                            "timeout_s": self.config.inflight_timeout_seconds,
                        }
                    },
                )
                response = producer()
                self.record(query_text, query_vector, response)
                return response

        try:
            found = self.lookup_entry(query_vector)
            if found is not None:
                return found[0].response
            response = producer()
            self.record(query_text, query_vector, response)
            return response
        finally:
            self._release_flight(key, flight)

    # ------------------------------------------------------------------
    # Eviction & maintenance
    # ------------------------------------------------------------------
    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Remove entries older than ``ttl_seconds``; returns how many were removed."""

        if self.config.ttl_seconds is None:
            return 0
        current = now or self._clock()
        removed = 0
        with self._write_lock:
            for record in self._records.all():
                if self._is_expired(record, current):
                    self._remove(record.id)
                    removed += 1
        if removed:
            self._observability.metrics.increment("cache_evictions", float(removed), cache=self.name, reason="ttl")
            logger.info("semantic-cache-expired", extra={"event": {"cache": self.name, "removed": removed}})
        return removed

    def maintain(self) -> Dict[str, int]:
        """Sweep expired entries and compact the vector index when needed."""

        expired = self.evict_expired()
        compacted = 0
        if self._index.should_compact():
            compacted = self._index.compact()
        return {"expired": expired, "compacted": compacted}

    def clear(self) -> None:
        """Drop every entry."""

        with self._write_lock:
            self._records.clear()
            self._index.clear()
            self._order.clear()

    def rebuild(self) -> None:
        """Rebuild the vector index from the durable records."""

        with self._write_lock:
            self._index.clear()
            self._order.clear()
            for record in self._records.all():
                if record.vector is None:
                    continue
                self._index.insert(record.id, record.vector)
                self._order.append(record.id)
        logger.info("semantic-cache-rebuilt", extra={"event": {"cache": self.name, "entries": len(self)}})

    def check_integrity(self) -> None:
        """Verify the vector index and its agreement with the records.

        Raises:
            IndexCorrupted: On a graph invariant violation or id drift.
        """
        self._index.check_integrity()
        indexed = set(self._index.ids())
        stored = {record.id for record in self._records.all() if record.vector is not None}
        if indexed != stored:
            raise IndexCorrupted(f"cache '{self.name}' index and records disagree")

    def snapshot(self) -> Dict[str, Any]:
        """Return the durable records as a JSON-safe payload."""

        return self._records.snapshot()

    def restore(self, payload: Mapping[str, Any]) -> None:
        """Replace the cache contents with a :meth:`snapshot` payload."""

        with self._write_lock:
            self._records.restore(payload)
            self.rebuild()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _is_expired(self, record: CollectionRecord, now: datetime) -> bool:
        ttl = self.config.ttl_seconds
        if ttl is None:
            return False
        return now - record.created_at > timedelta(seconds=ttl)

    def _evict_over_capacity(self) -> int:
        evicted = 0
        while self._records.count() > self.config.max_entries and self._order:
            oldest = self._order.popleft()
            if self._records.get(oldest) is None:
                continue
            self._remove(oldest, track_order=False)
            evicted += 1
        return evicted

    def _remove(self, entry_id: int, *, track_order: bool = True) -> None:
        self._records.delete(entry_id)
        self._index.remove(entry_id)
        if track_order and entry_id in self._order:
            self._order.remove(entry_id)

    def _release_flight(self, key: str, flight: Optional[_Flight] = None) -> None:
        with self._flight_lock:
            current = self._flights.get(key)
            if current is None:
                return
            if flight is not None and current is not flight:
                return
            del self._flights[key]
        current.event.set()

    @staticmethod
    def _to_entry(record: CollectionRecord) -> SemanticCacheEntry:
        vector = record.vector if record.vector is not None else np.zeros(0, dtype=np.float32)
        return SemanticCacheEntry(
            entry_id=record.id,
            query_text=record.text,
            response=str(record.extra.get("response", "")),
            embedding=vector,
            created_at=record.created_at,
        )
