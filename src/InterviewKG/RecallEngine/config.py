# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine.config",
#   "purpose": "Recall engine configuration models and manager",
#   "sections": [
#     {
#       "id": "vectorindexconfig",
#       "name": "VectorIndexConfig",
#       "anchor": "class-vectorindexconfig",
#       "kind": "class"
#     },
#     {
#       "id": "textindexconfig",
#       "name": "TextIndexConfig",
#       "anchor": "class-textindexconfig",
#       "kind": "class"
#     },
#     {
#       "id": "fusionconfig",
#       "name": "FusionConfig",
#       "anchor": "class-fusionconfig",
#       "kind": "class"
#     },
#     {
#       "id": "retrievalconfig",
#       "name": "RetrievalConfig",
#       "anchor": "class-retrievalconfig",
#       "kind": "class"
#     },
#     {
#       "id": "cacheconfig",
#       "name": "CacheConfig",
#       "anchor": "class-cacheconfig",
#       "kind": "class"
#     },
#     {
#       "id": "memoryconfig",
#       "name": "MemoryConfig",
#       "anchor": "class-memoryconfig",
#       "kind": "class"
#     },
#     {
#       "id": "embeddingconfig",
#       "name": "EmbeddingConfig",
#       "anchor": "class-embeddingconfig",
#       "kind": "class"
#     },
#     {
#       "id": "contextconfig",
#       "name": "ContextConfig",
#       "anchor": "class-contextconfig",
#       "kind": "class"
#     },
#     {
#       "id": "recallengineconfig",
#       "name": "RecallEngineConfig",
#       "anchor": "class-recallengineconfig",
#       "kind": "class"
#     },
#     {
#       "id": "recallengineconfigmanager",
#       "name": "RecallEngineConfigManager",
#       "anchor": "class-recallengineconfigmanager",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Configuration surface area for the InterviewKG recall engine.

The dataclasses defined here describe every user-tunable aspect of the engine:

- ``VectorIndexConfig`` sizes the HNSW proximity graph owned by each collection
  (``m``, ``ef_construction``, default ``ef_search``), the vector dimension, the
  storage precision, and the tombstone ratio that triggers compaction.
- ``TextIndexConfig`` holds the Okapi BM25 hyperparameters and analyser toggles
  used by :mod:`InterviewKG.RecallEngine.lexical`.
- ``FusionConfig`` selects weighted min-max fusion or reciprocal rank fusion and
  the per-channel weights consumed by :class:`~InterviewKG.RecallEngine.fusion.HybridRanker`.
- ``RetrievalConfig`` carries per-query search budgets. Knowledge queries and
  memory recall use different ``ef_search`` defaults because they have different
  latency/recall needs.
- ``CacheConfig`` controls the semantic cache hit threshold, expiry, capacity,
  single-flight wait budget, and whether caches are global or per tenant.
- ``MemoryConfig`` and ``ContextConfig`` encode session-memory truncation and
  the token budget applied when knowledge hits are flattened into prompt context.
- ``EmbeddingConfig`` governs the provider timeout and retry budget.

``RecallEngineConfigManager`` is a thread-safe facade for loading configuration
files. It accepts JSON *and* YAML, caches the current config, and supports
atomic reloads so long-running workers can pick up new thresholds without
racing query threads.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Any, Literal

import yaml

# --- Globals ---

__all__ = (
    "CacheConfig",
    "ContextConfig",
    "EmbeddingConfig",
    "FusionConfig",
    "MemoryConfig",
    "RecallEngineConfig",
    "RecallEngineConfigManager",
    "RetrievalConfig",
    "TextIndexConfig",
    "VectorIndexConfig",
)


# --- Public Classes ---


@dataclass(frozen=True)
class VectorIndexConfig:
    """Configuration for the HNSW vector index owned by each collection.

    Key fields:
    - ``dim``: Embedding dimension every vector must match (1536 default,
      matching ``text-embedding-3-small``).
    - ``m``: Neighbours kept per node on upper layers; layer 0 keeps ``2 * m``.
    - ``ef_construction``: Frontier width used while linking a new node.
    - ``ef_search``: Default frontier width for queries that do not override it.
    - ``exact_search_threshold``: When a candidate filter admits fewer ids than
      this, search scans the admitted ids exhaustively instead of traversing.
    - ``compaction_tombstone_ratio``: Fraction of tombstoned nodes that makes
      :meth:`VectorIndex.should_compact` return ``True``.
    - ``storage_dtype``: Precision used to hold vectors in the arena.

    Examples:
        >>> config = VectorIndexConfig(dim=384, m=8, ef_search=32)
        >>> config.max_layer0_degree
        16
    """

    dim: int = 1536
    m: int = 16
    ef_construction: int = 64
    ef_search: int = 64
    exact_search_threshold: int = 256
    compaction_tombstone_ratio: float = 0.25
    storage_dtype: Literal["float16", "float32"] = "float16"
    seed: int = 13

    def __post_init__(self) -> None:
        if self.dim <= 0:
            raise ValueError("VectorIndexConfig.dim must be positive")
        if self.m < 2:
            raise ValueError("VectorIndexConfig.m must be at least 2")
        if self.ef_construction <= 0 or self.ef_search <= 0:
            raise ValueError("VectorIndexConfig ef parameters must be positive")
        if not 0.0 < self.compaction_tombstone_ratio <= 1.0:
            raise ValueError("VectorIndexConfig.compaction_tombstone_ratio must be within (0, 1]")

    @property
    def max_layer0_degree(self) -> int:
        """Return the neighbour cap applied on the bottom layer."""

        return self.m * 2


@dataclass(frozen=True)
class TextIndexConfig:
    """Configuration for the inverted keyword index.

    Key fields:
    - ``bm25_k1`` / ``bm25_b``: Okapi BM25 saturation and length normalisation.
    - ``stem``: Apply the suffix-stripping stemmer during analysis.
    - ``min_token_length``: Tokens shorter than this are dropped after stemming.
    """

    bm25_k1: float = 1.2
    bm25_b: float = 0.75
    stem: bool = True
    min_token_length: int = 2


@dataclass(frozen=True)
class FusionConfig:
    """Configuration for combining vector and keyword channels.

    Key fields:
    - ``method``: ``"weighted"`` (min-max normalised weighted sum) or ``"rrf"``.
    - ``vector_weight`` / ``text_weight``: Channel weights for weighted fusion.
    - ``normalization``: ``"minmax"`` or ``"clamp"`` (``s / (1 + s)`` squashing).
    - ``k0``: Reciprocal rank fusion constant (60 default).

    Examples:
        >>> FusionConfig(method="rrf", k0=50.0).k0
        50.0
    """

    method: Literal["weighted", "rrf"] = "weighted"
    vector_weight: float = 0.6
    text_weight: float = 0.4
    normalization: Literal["minmax", "clamp"] = "minmax"
    k0: float = 60.0

    def __post_init__(self) -> None:
        if self.vector_weight < 0 or self.text_weight < 0:
            raise ValueError("FusionConfig weights must be non-negative")
        if self.k0 <= 0:
            raise ValueError("FusionConfig.k0 must be positive")

    @property
    def weights(self) -> Mapping[str, float]:
        """Return channel weights keyed by channel name."""

        return {"vector": self.vector_weight, "text": self.text_weight}


@dataclass(frozen=True)
class RetrievalConfig:
    """Per-query search budgets.

    Key fields:
    - ``knowledge_ef_search`` / ``memory_ef_search``: HNSW frontier widths for
      knowledge queries (recall heavy) and session-memory recall (latency heavy).
    - ``channel_overfetch``: Each channel retrieves ``top_k * channel_overfetch``
      candidates before fusion.
    - ``executor_max_workers``: Thread pool size for parallel channel execution.
    """

    knowledge_ef_search: int = 128
    memory_ef_search: int = 32
    channel_overfetch: int = 2
    executor_max_workers: int | None = None

    def __post_init__(self) -> None:
        if self.channel_overfetch < 1:
            raise ValueError("RetrievalConfig.channel_overfetch must be at least 1")
        max_workers = self.executor_max_workers
        if max_workers is None:
            return
        if not isinstance(max_workers, int):
            raise TypeError(
                "RetrievalConfig.executor_max_workers must be an int, "
                f"received {type(max_workers).__name__}"
            )
        if max_workers <= 0:
            raise ValueError("RetrievalConfig.executor_max_workers must be positive")


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the semantic response cache.

    Key fields:
    - ``threshold``: Minimum cosine similarity for a hit (0.95 default).
    - ``ttl_seconds``: Entries older than this are ignored and swept (``None``
      disables age expiry).
    - ``max_entries``: Capacity bound; the oldest entries are evicted first.
    - ``inflight_timeout_seconds``: How long a concurrent caller waits on
      another caller's fill before issuing its own attempt.
    - ``scope``: ``"global"`` shares one cache across tenants, ``"tenant"`` keeps
      one cache per owner.
    - ``idle_tenant_seconds``: Per-tenant caches unused for this long are
      snapshotted and unloaded by maintenance (``None`` keeps them loaded).
    """

    threshold: float = 0.95
    ttl_seconds: float | None = 86_400.0
    max_entries: int = 10_000
    inflight_timeout_seconds: float = 30.0
    scope: Literal["global", "tenant"] = "global"
    idle_tenant_seconds: float | None = None

    def __post_init__(self) -> None:
        if not -1.0 <= self.threshold <= 1.0:
            raise ValueError("CacheConfig.threshold must be a cosine similarity in [-1, 1]")
        if self.max_entries <= 0:
            raise ValueError("CacheConfig.max_entries must be positive")
        if self.inflight_timeout_seconds <= 0:
            raise ValueError("CacheConfig.inflight_timeout_seconds must be positive")
        if self.idle_tenant_seconds is not None and self.idle_tenant_seconds < 0:
            raise ValueError("CacheConfig.idle_tenant_seconds must be non-negative")


@dataclass(frozen=True)
class MemoryConfig:
    """Configuration for the session memory store."""

    content_max_chars: int = 500
    source_max_chars: int = 1000
    recall_min_similarity: float = 0.5


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding provider access.

    Key fields:
    - ``timeout_seconds``: Deadline for a single ``embed`` request, including
      retries. A timeout cancels the request and degrades the caller.
    - ``max_attempts``: Attempts for rate-limited requests (tenacity backoff).
    - ``model`` / ``endpoint``: Used by :class:`HttpEmbeddingProvider`.
    """

    timeout_seconds: float = 5.0
    max_attempts: int = 3
    model: str = "text-embedding-3-small"
    endpoint: str = "https://api.openai.com/v1/embeddings"

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("EmbeddingConfig.timeout_seconds must be positive")
        if self.max_attempts < 1:
            raise ValueError("EmbeddingConfig.max_attempts must be at least 1")


@dataclass(frozen=True)
class ContextConfig:
    """Token budget applied when knowledge hits are flattened into prompt context."""

    max_tokens: int = 2000
    chars_per_token: float = 4.0


@dataclass(frozen=True)
class RecallEngineConfig:
    """Complete configuration for the recall engine.

    Components:
    - ``vector``: HNSW index sizing shared by every collection.
    - ``text``: Keyword index configuration.
    - ``fusion``: Channel fusion configuration.
    - ``retrieval``: Per-query budgets.
    - ``cache``: Semantic cache configuration.
    - ``memory``: Session memory configuration.
    - ``embedding``: Provider access configuration.
    - ``context``: Context formatting budget.

    Examples:
        >>> config = RecallEngineConfig.from_dict({"vector": {"dim": 8}})
        >>> config.vector.dim
        8
    """

    vector: VectorIndexConfig = VectorIndexConfig()
    text: TextIndexConfig = TextIndexConfig()
    fusion: FusionConfig = FusionConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    cache: CacheConfig = CacheConfig()
    memory: MemoryConfig = MemoryConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    context: ContextConfig = ContextConfig()

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> RecallEngineConfig:
        """Construct a config object from a dictionary payload.

        Args:
            payload: Nested mapping whose sections match the dataclass fields.
                Missing sections fall back to defaults.

        Returns:
            Fully populated `RecallEngineConfig` instance.

        Raises:
            ValueError: If ``payload`` or one of its sections is not a mapping.
        """
        if not isinstance(payload, Mapping):
            raise ValueError(
                "RecallEngineConfig.from_dict expected a mapping payload, "
                f"received {type(payload).__name__}"
            )

        def coerce_section(name: str) -> dict[str, Any]:
            section = payload.get(name)
            if section is None:
                return {}
            if not isinstance(section, Mapping):
                raise ValueError(
                    f"RecallEngineConfig.{name} must be a mapping or null, "
                    f"received {type(section).__name__}"
                )
            return dict(section)

        fusion_payload = coerce_section("fusion")
        weights = fusion_payload.pop("weights", None)
        if isinstance(weights, Mapping):
            fusion_payload.setdefault("vector_weight", float(weights.get("vector", 0.6)))
            fusion_payload.setdefault("text_weight", float(weights.get("text", 0.4)))

        return RecallEngineConfig(
            vector=VectorIndexConfig(**coerce_section("vector")),
            text=TextIndexConfig(**coerce_section("text")),
            fusion=FusionConfig(**fusion_payload),
            retrieval=RetrievalConfig(**coerce_section("retrieval")),
            cache=CacheConfig(**coerce_section("cache")),
            memory=MemoryConfig(**coerce_section("memory")),
            embedding=EmbeddingConfig(**coerce_section("embedding")),
            context=ContextConfig(**coerce_section("context")),
        )


class RecallEngineConfigManager:
    """File-backed configuration manager with reload support.

    Internals:
    - ``_path``: Path to the JSON/YAML configuration file.
    - ``_lock``: Threading lock guarding concurrent reloads.
    - ``_config``: Cached :class:`RecallEngineConfig` instance.

    Examples:
        >>> manager = RecallEngineConfigManager(Path("recall.yaml"))  # doctest: +SKIP
        >>> isinstance(manager.get(), RecallEngineConfig)  # doctest: +SKIP
        True
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = RLock()
        self._config = self._load()

    @property
    def path(self) -> Path:
        """Return the file backing this manager."""

        return self._path

    def get(self) -> RecallEngineConfig:
        """Return the currently cached configuration.

        Args:
            None

        Returns:
            Latest `RecallEngineConfig` loaded from disk.
        """
        with self._lock:
            return self._config

    def reload(self) -> RecallEngineConfig:
        """Reload configuration from disk, replacing the cached instance.

        Args:
            None

        Returns:
            Freshly loaded `RecallEngineConfig`.

        Raises:
            FileNotFoundError: If the configuration path is missing.
            ValueError: If the config file is invalid JSON or YAML.
        """
        with self._lock:
            self._config = self._load()
            return self._config

    def _load(self) -> RecallEngineConfig:
        if not self._path.exists():
            raise FileNotFoundError(f"Configuration file {self._path} not found")
        raw = self._path.read_text(encoding="utf-8")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = self._load_yaml(raw)
        return RecallEngineConfig.from_dict(payload)

    def _load_yaml(self, raw: str) -> dict[str, Any]:
        """Parse YAML configuration content into a dictionary.

        Args:
            raw: Raw YAML string read from disk.

        Returns:
            Dictionary representation suitable for :meth:`RecallEngineConfig.from_dict`.

        Raises:
            ValueError: If the content cannot be parsed or does not define a mapping.
        """
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML configuration at {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("YAML configuration must define a mapping")
        return data
