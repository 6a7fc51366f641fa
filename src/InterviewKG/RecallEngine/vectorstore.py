# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine.vectorstore",
#   "purpose": "In-process HNSW proximity graph used by every recall collection",
#   "sections": [
#     {
#       "id": "vectorindex",
#       "name": "VectorIndex",
#       "anchor": "class-vectorindex",
#       "kind": "class"
#     },
#     {
#       "id": "normalize-vector",
#       "name": "normalize_vector",
#       "anchor": "function-normalize-vector",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Approximate nearest-neighbour search over a multi-layer HNSW graph.

Every collection (knowledge base, semantic cache, session memory) owns one
:class:`VectorIndex`. The index keeps its nodes in an arena (a list indexed by
integer position) and stores per-layer neighbour lists as tuples of arena
positions. Writers never mutate a published tuple: they build a replacement and
swap the list slot, so searches can walk the graph without taking locks.

Key behaviours:

- Vectors are normalised on insert so cosine similarity is a dot product.
- ``candidate_filter`` restricts *results* while leaving traversal untouched.
  Rejected nodes still route the search and the frontier keeps expanding
  until ``ef`` admitted nodes were found or the graph is exhausted.
- Small admitted sets (fewer than ``exact_search_threshold`` ids) are scanned
  exhaustively so tightly scoped queries always reach full recall.
- ``remove`` tombstones nodes. Tombstones keep routing traversal until
  :meth:`VectorIndex.compact` rebuilds the arena without them.

Usage:
    >>> from InterviewKG.RecallEngine.config import VectorIndexConfig
    >>> index = VectorIndex(VectorIndexConfig(dim=3))
    >>> index.insert(1, [1.0, 0.0, 0.0])
    >>> index.insert(2, [0.0, 1.0, 0.0])
    >>> [hit.id for hit in index.search([0.9, 0.1, 0.0], k=1)]
    [1]
"""

from __future__ import annotations

import heapq
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Condition, Lock, RLock
from typing import Any, Callable, Collection, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .config import VectorIndexConfig
from .errors import DimensionMismatch, IndexCorrupted, NotFound
from .types import VectorHit, as_float32

# --- Globals ---

logger = logging.getLogger(__name__)

__all__ = ("CandidateFilter", "VectorIndex", "normalize_vector")

CandidateFilter = Union[Callable[[int], bool], Collection[int]]

_LOCK_STRIPES = 64


# --- Public Functions ---


def normalize_vector(vector: Sequence[float] | NDArray[Any], *, dim: int) -> NDArray[np.float32]:
    """Return a unit-length float32 copy of ``vector``.

    Args:
        vector: Raw embedding.
        dim: Dimension the vector must have.

    Returns:
        Normalised float32 array.

    Raises:
        DimensionMismatch: If ``len(vector) != dim``.
        ValueError: If the vector has zero norm or contains non-finite values.
    """
    array = as_float32(vector)
    if array.shape[0] != dim:
        raise DimensionMismatch(expected=dim, actual=int(array.shape[0]))
    if not np.all(np.isfinite(array)):
        raise ValueError("vector contains non-finite values")
    norm = float(np.linalg.norm(array))
    if norm == 0.0:
        raise ValueError("zero vectors cannot be indexed")
    return array / norm


# --- Private Classes ---


@dataclass(slots=True)
class _Node:
    key: int
    vector: NDArray[Any]
    level: int
    neighbors: List[Tuple[int, ...]]
    deleted: bool = False


@dataclass(slots=True)
class _Graph:
    nodes: List[_Node] = field(default_factory=list)
    id_to_node: Dict[int, int] = field(default_factory=dict)
    # (arena position, top layer); published as one tuple so readers never
    # observe a new entry point with a stale level.
    entry: Optional[Tuple[int, int]] = None
    tombstones: int = 0


class _MaintenanceGate:
    """Shared/exclusive gate: writers share it, compaction and restore own it."""

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._active = 0
        self._exclusive = False

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            self._active += 1
        try:
            yield
        finally:
            with self._cond:
                self._active -= 1
                if not self._active:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            self._exclusive = True
            while self._active:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()


def _dot(a: NDArray[Any], b: NDArray[Any]) -> float:
    return float(np.dot(a.astype(np.float32, copy=False), b.astype(np.float32, copy=False)))


# --- Public Classes ---


class VectorIndex:
    """Thread-safe HNSW index keyed by integer ids.

    Attributes:
        config: Graph sizing and search defaults.
        name: Label used in log events (e.g. ``"knowledge"``).

    Examples:
        >>> from InterviewKG.RecallEngine.config import VectorIndexConfig
        >>> index = VectorIndex(VectorIndexConfig(dim=2))
        >>> index.insert(7, [3.0, 4.0])
        >>> len(index), 7 in index
        (1, True)
    """

    def __init__(self, config: VectorIndexConfig, *, name: str = "default") -> None:
        self.config = config
        self.name = name
        self._dtype = np.dtype(config.storage_dtype)
        self._level_mult = 1.0 / math.log(config.m)
        self._rng = np.random.default_rng(config.seed)
        self._rng_lock = Lock()
        self._lock = RLock()
        self._stripes = tuple(Lock() for _ in range(_LOCK_STRIPES))
        self._gate = _MaintenanceGate()
        self._graph = _Graph()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def dim(self) -> int:
        """Return the vector dimension enforced by the index."""

        return self.config.dim

    def __len__(self) -> int:
        return len(self._graph.id_to_node)

    def __contains__(self, vector_id: object) -> bool:
        return vector_id in self._graph.id_to_node

    def ids(self) -> List[int]:
        """Return live ids in ascending order."""

        return sorted(list(self._graph.id_to_node))

    def vector(self, vector_id: int) -> NDArray[np.float32]:
        """Return the stored (normalised) vector for ``vector_id`` as float32.

        Raises:
            NotFound: If the id is not live in the index.
        """
        graph = self._graph
        position = graph.id_to_node.get(vector_id)
        if position is None:
            raise NotFound(f"vector {vector_id} not found in index '{self.name}'")
        return graph.nodes[position].vector.astype(np.float32)

    @property
    def tombstone_ratio(self) -> float:
        """Return the fraction of arena nodes that are tombstones."""

        graph = self._graph
        total = len(graph.nodes)
        return graph.tombstones / total if total else 0.0

    def should_compact(self) -> bool:
        """Return ``True`` when tombstones exceed the configured ratio."""

        return bool(self._graph.nodes) and self.tombstone_ratio >= self.config.compaction_tombstone_ratio

    def stats(self) -> Mapping[str, float]:
        """Return a small diagnostic summary of the graph."""

        graph = self._graph
        entry = graph.entry
        return {
            "nodes": float(len(graph.nodes)),
            "live": float(len(graph.id_to_node)),
            "tombstones": float(graph.tombstones),
            "max_level": float(entry[1] if entry is not None else -1),
        }

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def insert(self, vector_id: int, vector: Sequence[float] | NDArray[Any]) -> None:
        """Insert ``vector`` under ``vector_id``, replacing any previous vector.

        Args:
            vector_id: Collection-local identifier.
            vector: Embedding of length ``config.dim``.

        Raises:
            DimensionMismatch: If the vector length is wrong.
            ValueError: If the vector is zero or non-finite.
        """
        normalized = normalize_vector(vector, dim=self.config.dim)
        with self._gate.shared():
            self._insert_into(self._graph, int(vector_id), normalized)

    def remove(self, vector_id: int) -> bool:
        """Tombstone ``vector_id``; return ``False`` when it was not present."""

        with self._gate.shared():
            graph = self._graph
            with self._lock:
                position = graph.id_to_node.pop(vector_id, None)
                if position is None:
                    return False
                graph.nodes[position].deleted = True
                graph.tombstones += 1
        return True

    def clear(self) -> None:
        """Drop every node from the index."""

        with self._gate.exclusive():
            self._graph = _Graph()

    def compact(self) -> int:
        """Rebuild the arena without tombstones.

        Readers keep using the previous arena until the rebuilt one is
        published, so searches running during compaction stay correct.

        Returns:
            Number of tombstoned nodes dropped.
        """
        with self._gate.exclusive():
            old = self._graph
            fresh = _Graph()
            for node in old.nodes:
                if node.deleted:
                    continue
                self._insert_into(fresh, node.key, node.vector.astype(np.float32))
            self._graph = fresh
        removed = old.tombstones
        logger.debug(
            "vector-index-compacted",
            extra={"event": {"index": self.name, "removed": removed, "live": len(fresh.id_to_node)}},
        )
        return removed

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    def search(
        self,
        query_vector: Sequence[float] | NDArray[Any],
        k: int,
        candidate_filter: Optional[CandidateFilter] = None,
        ef_search: Optional[int] = None,
    ) -> List[VectorHit]:
        """Return up to ``k`` nearest live ids ordered by cosine similarity.

        Args:
            query_vector: Query embedding of length ``config.dim``.
            k: Maximum number of hits.
            candidate_filter: Either a predicate over ids or a collection of
                admissible ids. Only admitted ids are returned.
            ef_search: Frontier width override; defaults to ``config.ef_search``.

        Returns:
            Hits ordered by score descending, id ascending.

        Raises:
            DimensionMismatch: If the query length is wrong.
        """
        if k <= 0:
            return []
        query = as_float32(query_vector)
        if query.shape[0] != self.config.dim:
            raise DimensionMismatch(expected=self.config.dim, actual=int(query.shape[0]))
        norm = float(np.linalg.norm(query))
        if norm == 0.0 or not math.isfinite(norm):
            return []
        query = query / norm

        graph = self._graph
        predicate: Optional[Callable[[int], bool]]
        if candidate_filter is None:
            predicate = None
        elif callable(candidate_filter):
            predicate = candidate_filter
        else:
            allowed = frozenset(int(item) for item in candidate_filter)
            positions = [graph.id_to_node.get(item) for item in allowed]
            admitted = [position for position in positions if position is not None]
            if len(admitted) < self.config.exact_search_threshold:
                return self._exact_scan(graph, query, admitted, k)
            predicate = allowed.__contains__

        if len(graph.id_to_node) < self.config.exact_search_threshold:
            items = list(graph.id_to_node.items())
            admitted = [pos for key, pos in items if predicate is None or predicate(key)]
            return self._exact_scan(graph, query, admitted, k)

        entry = graph.entry
        if entry is None:
            return []
        current, top = entry
        for layer in range(top, 0, -1):
            current = self._greedy_step(graph, query, current, layer)

        def admit(position: int) -> bool:
            node = graph.nodes[position]
            if node.deleted:
                return False
            return predicate is None or predicate(node.key)

        ef = max(ef_search or self.config.ef_search, k)
        found = self._search_layer(graph, query, [current], ef, 0, admit)
        hits = [VectorHit(id=graph.nodes[pos].key, score=score) for score, pos in found]
        hits.sort(key=lambda hit: (-hit.score, hit.id))
        return hits[:k]

    # ------------------------------------------------------------------
    # Persistence & integrity
    # ------------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        """Serialise the arena (including tombstones) to a JSON-friendly dict."""

        with self._gate.exclusive():
            graph = self._graph
            return {
                "name": self.name,
                "config": {
                    "dim": self.config.dim,
                    "m": self.config.m,
                    "ef_construction": self.config.ef_construction,
                    "ef_search": self.config.ef_search,
                    "exact_search_threshold": self.config.exact_search_threshold,
                    "compaction_tombstone_ratio": self.config.compaction_tombstone_ratio,
                    "storage_dtype": self.config.storage_dtype,
                    "seed": self.config.seed,
                },
                "entry": list(graph.entry) if graph.entry is not None else None,
                "nodes": [
                    {
                        "key": node.key,
                        "level": node.level,
                        "deleted": node.deleted,
                        "vector": [float(x) for x in node.vector],
                        "neighbors": [list(layer) for layer in node.neighbors],
                    }
                    for node in graph.nodes
                ],
            }

    @classmethod
    def restore(cls, payload: Mapping[str, Any], config: Optional[VectorIndexConfig] = None) -> "VectorIndex":
        """Rebuild an index from :meth:`snapshot` output without relinking.

        Raises:
            IndexCorrupted: If the restored graph fails :meth:`check_integrity`.
        """
        resolved = config or VectorIndexConfig(**dict(payload.get("config", {})))
        index = cls(resolved, name=str(payload.get("name", "default")))
        graph = _Graph()
        try:
            for position, raw in enumerate(payload.get("nodes", [])):
                node = _Node(
                    key=int(raw["key"]),
                    vector=np.asarray(raw["vector"], dtype=index._dtype),
                    level=int(raw["level"]),
                    neighbors=[tuple(int(x) for x in layer) for layer in raw["neighbors"]],
                    deleted=bool(raw.get("deleted", False)),
                )
                graph.nodes.append(node)
                if node.deleted:
                    graph.tombstones += 1
                else:
                    graph.id_to_node[node.key] = position
            entry = payload.get("entry")
            graph.entry = (int(entry[0]), int(entry[1])) if entry is not None else None
        except (KeyError, TypeError, ValueError) as exc:
            raise IndexCorrupted(f"invalid vector index snapshot: {exc}") from exc
        index._graph = graph
        index.check_integrity()
        return index

    def check_integrity(self) -> None:
        """Validate graph invariants.

        Raises:
            IndexCorrupted: On dangling or self-referencing edges, edges into a
                layer the target does not reach, an invalid entry point, or an id
                map that disagrees with the arena.
        """
        graph = self._graph
        total = len(graph.nodes)
        if total == 0:
            if graph.entry is not None:
                raise IndexCorrupted(f"index '{self.name}' has an entry point but no nodes")
            return
        if graph.entry is None:
            raise IndexCorrupted(f"index '{self.name}' has nodes but no entry point")
        entry, top = graph.entry
        if not 0 <= entry < total or graph.nodes[entry].level != top:
            raise IndexCorrupted(f"index '{self.name}' entry point {entry} is invalid")
        for position, node in enumerate(graph.nodes):
            if node.vector.shape != (self.config.dim,):
                raise IndexCorrupted(f"node {position} has vector shape {node.vector.shape}")
            if len(node.neighbors) != node.level + 1:
                raise IndexCorrupted(f"node {position} has {len(node.neighbors)} layers for level {node.level}")
            if node.level > top:
                raise IndexCorrupted(f"node {position} is above the entry point level")
            for layer, links in enumerate(node.neighbors):
                for target in links:
                    if not 0 <= target < total or target == position:
                        raise IndexCorrupted(f"node {position} has dangling edge to {target} on layer {layer}")
                    if graph.nodes[target].level < layer:
                        raise IndexCorrupted(f"edge {position}->{target} exceeds target level on layer {layer}")
        for key, position in graph.id_to_node.items():
            if not 0 <= position < total:
                raise IndexCorrupted(f"id {key} maps outside the arena")
            node = graph.nodes[position]
            if node.deleted or node.key != key:
                raise IndexCorrupted(f"id {key} maps to a stale node")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _stripe(self, position: int) -> Lock:
        return self._stripes[position % _LOCK_STRIPES]

    def _draw_level(self) -> int:
        with self._rng_lock:
            uniform = 1.0 - float(self._rng.random())
        return int(math.floor(-math.log(uniform) * self._level_mult))

    def _max_degree(self, layer: int) -> int:
        return self.config.max_layer0_degree if layer == 0 else self.config.m

    def _insert_into(self, graph: _Graph, vector_id: int, normalized: NDArray[np.float32]) -> None:
        level = self._draw_level()
        node = _Node(
            key=vector_id,
            vector=normalized.astype(self._dtype),
            level=level,
            neighbors=[() for _ in range(level + 1)],
        )
        with self._lock:
            position = len(graph.nodes)
            graph.nodes.append(node)
            previous = graph.id_to_node.get(vector_id)
            if previous is not None:
                graph.nodes[previous].deleted = True
                graph.tombstones += 1
            graph.id_to_node[vector_id] = position
            entry = graph.entry
            if entry is None:
                graph.entry = (position, level)
                return

        current, top = entry
        for layer in range(top, level, -1):
            current = self._greedy_step(graph, normalized, current, layer)

        entry_points = [current]
        for layer in range(min(level, top), -1, -1):
            found = self._search_layer(
                graph, normalized, entry_points, self.config.ef_construction, layer, None
            )
            found = [item for item in found if item[1] != position]
            selected = self._select_neighbors(graph, found, self.config.m)
            with self._stripe(position):
                node.neighbors[layer] = tuple(pos for _, pos in selected)
            max_degree = self._max_degree(layer)
            for _, neighbor in selected:
                self._link(graph, neighbor, position, layer, max_degree)
            if found:
                entry_points = [pos for _, pos in found]

        if level > top:
            with self._lock:
                current_entry = graph.entry
                if current_entry is None or level > current_entry[1]:
                    graph.entry = (position, level)

    def _link(self, graph: _Graph, source: int, target: int, layer: int, max_degree: int) -> None:
        with self._stripe(source):
            source_node = graph.nodes[source]
            links = source_node.neighbors[layer]
            if target in links:
                return
            candidates = links + (target,)
            if len(candidates) > max_degree:
                scored = [(_dot(source_node.vector, graph.nodes[pos].vector), pos) for pos in candidates]
                scored.sort(key=lambda item: (-item[0], item[1]))
                candidates = tuple(pos for _, pos in self._select_neighbors(graph, scored, max_degree))
            source_node.neighbors[layer] = candidates

    def _select_neighbors(
        self, graph: _Graph, scored: Sequence[Tuple[float, int]], limit: int
    ) -> List[Tuple[float, int]]:
        """Diversity heuristic: prefer candidates closer to the base than to any pick."""

        selected: List[Tuple[float, int]] = []
        pruned: List[Tuple[float, int]] = []
        for similarity, position in scored:
            if len(selected) >= limit:
                break
            vector = graph.nodes[position].vector
            if all(similarity > _dot(vector, graph.nodes[other].vector) for _, other in selected):
                selected.append((similarity, position))
            else:
                pruned.append((similarity, position))
        for item in pruned:
            if len(selected) >= limit:
                break
            selected.append(item)
        return selected

    def _greedy_step(self, graph: _Graph, query: NDArray[np.float32], start: int, layer: int) -> int:
        current = start
        best = _dot(graph.nodes[current].vector, query)
        improved = True
        while improved:
            improved = False
            node = graph.nodes[current]
            links = node.neighbors[layer] if layer < len(node.neighbors) else ()
            for neighbor in links:
                similarity = _dot(graph.nodes[neighbor].vector, query)
                if similarity > best:
                    best = similarity
                    current = neighbor
                    improved = True
        return current

    def _search_layer(
        self,
        graph: _Graph,
        query: NDArray[np.float32],
        entry_points: Sequence[int],
        ef: int,
        layer: int,
        admit: Optional[Callable[[int], bool]],
    ) -> List[Tuple[float, int]]:
        """Best-first search on one layer.

        ``admit`` decides which visited nodes may enter the result set; every
        node still feeds the candidate frontier. Returns ``(similarity,
        position)`` pairs sorted by similarity descending.
        """
        visited = set(entry_points)
        candidates: List[Tuple[float, int]] = []
        results: List[Tuple[float, int, int]] = []

        def offer(similarity: float, position: int) -> None:
            if admit is not None and not admit(position):
                return
            heapq.heappush(results, (similarity, -graph.nodes[position].key, position))
            if len(results) > ef:
                heapq.heappop(results)

        for position in entry_points:
            similarity = _dot(graph.nodes[position].vector, query)
            heapq.heappush(candidates, (-similarity, position))
            offer(similarity, position)

        while candidates:
            negative, current = heapq.heappop(candidates)
            if len(results) >= ef and -negative < results[0][0]:
                break
            node = graph.nodes[current]
            links = node.neighbors[layer] if layer < len(node.neighbors) else ()
            for neighbor in links:
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                similarity = _dot(graph.nodes[neighbor].vector, query)
                if len(results) < ef or similarity > results[0][0]:
                    heapq.heappush(candidates, (-similarity, neighbor))
                    offer(similarity, neighbor)

        ordered = sorted(results, key=lambda item: (-item[0], -item[1]))
        return [(similarity, position) for similarity, _, position in ordered]

    def _exact_scan(
        self, graph: _Graph, query: NDArray[np.float32], positions: Sequence[int], k: int
    ) -> List[VectorHit]:
        live = [pos for pos in positions if not graph.nodes[pos].deleted]
        if not live:
            return []
        matrix = np.stack([graph.nodes[pos].vector for pos in live]).astype(np.float32, copy=False)
        scores = matrix @ query
        hits = [VectorHit(id=graph.nodes[pos].key, score=float(score)) for pos, score in zip(live, scores)]
        hits.sort(key=lambda hit: (-hit.score, hit.id))
        return hits[:k]
