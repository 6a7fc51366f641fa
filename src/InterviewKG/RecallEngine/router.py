"""Tenant-aware routing of semantic caches.

``CacheRouter`` implements the cache-scope choice exposed by
``CacheConfig.scope``: a deployment may share one :class:`SemanticCache`
across every tenant or keep a dedicated cache per owner.

- It keeps a thread-safe map of owner -> cache, creating caches on demand via
  a factory.
- Idle tenant caches can be evicted to reclaim memory. Their records are kept
  as a snapshot payload and restored transparently on the next request.
- ``stats`` and ``snapshot_all`` merge live caches with evicted snapshots so
  persistence and diagnostics see every tenant.
"""

from __future__ import annotations

import logging
import time
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .cache import SemanticCache

DEFAULT_SCOPE = "__global__"
logger = logging.getLogger(__name__)

__all__ = ("CacheRouter", "DEFAULT_SCOPE")


class CacheRouter:
    """Route cache operations to the global cache or a per-tenant cache.

    Examples:
        >>> from InterviewKG.RecallEngine.config import CacheConfig, VectorIndexConfig
        >>> factory = lambda name: SemanticCache(CacheConfig(), VectorIndexConfig(dim=2), name=name)
        >>> router = CacheRouter(per_tenant=True, default_cache=factory(DEFAULT_SCOPE), factory=factory)
        >>> router.get("acme") is router.get("acme"), router.get("acme") is router.get("globex")
        (True, False)
    """

    def __init__(
        self,
        *,
        per_tenant: bool,
        default_cache: SemanticCache,
        factory: Optional[Callable[[str], SemanticCache]] = None,
    ) -> None:
        if per_tenant and factory is None:
            raise ValueError("factory is required when per_tenant=True")
        self._per_tenant = per_tenant
        self._default_cache = default_cache
        self._factory = factory
        self._caches: Dict[str, SemanticCache] = {}
        if per_tenant:
            self._caches[DEFAULT_SCOPE] = default_cache
        self._lock = RLock()
        self._last_used: Dict[str, float] = {DEFAULT_SCOPE: time.time()}
        self._snapshots: Dict[str, Mapping[str, Any]] = {}

    @property
    def per_tenant(self) -> bool:
        """Return ``True`` when each owner gets a dedicated cache."""

        return self._per_tenant

    @property
    def default_cache(self) -> SemanticCache:
        """Return the cache used when no owner is supplied or scoping is global."""

        return self._default_cache

    def get(self, owner_id: Optional[str]) -> SemanticCache:
        """Return the cache serving ``owner_id`` (creating one if necessary)."""

        if not self._per_tenant:
            self._last_used[DEFAULT_SCOPE] = time.time()
            return self._default_cache
        key = owner_id or DEFAULT_SCOPE
        with self._lock:
            cache = self._caches.get(key)
            if cache is None:
                cache = self._factory(key)  # type: ignore[misc]
                snapshot = self._snapshots.pop(key, None)
                if snapshot is not None:
                    try:
                        cache.restore(snapshot)
                    except ValueError:
                        logger.exception(
                            "cache-router-restore-failed",
                            extra={"event": {"scope": key}},
                        )
                self._caches[key] = cache
            self._last_used[key] = time.time()
            return cache

    def iter_caches(self) -> List[Tuple[str, SemanticCache]]:
        """Return a snapshot of live caches keyed by scope."""

        if not self._per_tenant:
            return [(DEFAULT_SCOPE, self._default_cache)]
        with self._lock:
            return list(self._caches.items())

    def drop(self, owner_id: str) -> bool:
        """Forget the cache (live or evicted) of ``owner_id``; returns ``True`` if one existed."""

        if not self._per_tenant or owner_id == DEFAULT_SCOPE:
            return False
        with self._lock:
            cache = self._caches.pop(owner_id, None)
            snapshot = self._snapshots.pop(owner_id, None)
            self._last_used.pop(owner_id, None)
        return cache is not None or snapshot is not None

    def evict_idle(self, max_idle_seconds: float, *, now: Optional[float] = None) -> List[str]:
        """Snapshot and unload tenant caches unused for ``max_idle_seconds``."""

        if not self._per_tenant:
            return []
        current = time.time() if now is None else now
        evicted: List[str] = []
        with self._lock:
            for key, cache in list(self._caches.items()):
                if key == DEFAULT_SCOPE:
                    continue
                if current - self._last_used.get(key, 0.0) < max_idle_seconds:
                    continue
                self._snapshots[key] = cache.snapshot()
                del self._caches[key]
                evicted.append(key)
        if evicted:
            logger.info("cache-router-evicted", extra={"event": {"scopes": evicted}})
        return evicted

    def stats(self) -> Dict[str, object]:
        """Return per-scope stats plus aggregate totals."""

        scopes: Dict[str, Dict[str, object]] = {}
        for key, cache in self.iter_caches():
            payload: Dict[str, object] = dict(cache.stats())
            payload["last_used_ts"] = self._last_used.get(key, 0.0)
            payload["evicted"] = False
            scopes[key] = payload
        with self._lock:
            for key, snapshot in self._snapshots.items():
                scopes.setdefault(
                    key,
                    {
                        "evicted": True,
                        "entries": float(len(snapshot.get("records", []))),
                        "last_used_ts": self._last_used.get(key, 0.0),
                    },
                )
        totals: Dict[str, float] = {}
        for payload in scopes.values():
            for name, value in payload.items():
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    totals[name] = totals.get(name, 0.0) + float(value)
        return {"scopes": scopes, "aggregate": totals}

    def snapshot_all(self) -> Dict[str, Mapping[str, Any]]:
        """Return record snapshots for every live and evicted cache."""

        payloads: Dict[str, Mapping[str, Any]] = {key: cache.snapshot() for key, cache in self.iter_caches()}
        with self._lock:
            for key, snapshot in self._snapshots.items():
                payloads.setdefault(key, snapshot)
        return payloads

    def restore_all(self, payloads: Mapping[str, Mapping[str, Any]]) -> None:
        """Restore caches from :meth:`snapshot_all` output.

        Tenant payloads are held as snapshots and materialised lazily by :meth:`get`.
        """
        for key, payload in payloads.items():
            if key == DEFAULT_SCOPE or not self._per_tenant:
                self._default_cache.restore(payload)
                continue
            with self._lock:
                self._caches.pop(key, None)
                self._snapshots[key] = payload
