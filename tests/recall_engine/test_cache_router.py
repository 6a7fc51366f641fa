"""Unit tests covering the CacheRouter scoping and snapshot workflow."""

from __future__ import annotations

import pytest

from InterviewKG.RecallEngine.cache import SemanticCache
from InterviewKG.RecallEngine.config import CacheConfig, VectorIndexConfig
from InterviewKG.RecallEngine.router import DEFAULT_SCOPE, CacheRouter

VECTORS = VectorIndexConfig(dim=3)


def _factory(name: str) -> SemanticCache:
    return SemanticCache(CacheConfig(), VECTORS, name=name)


def test_global_router_shares_one_cache() -> None:
    router = CacheRouter(per_tenant=False, default_cache=_factory(DEFAULT_SCOPE))
    assert router.get("acme") is router.get("globex") is router.default_cache
    assert not router.drop("acme")
    assert [scope for scope, _ in router.iter_caches()] == [DEFAULT_SCOPE]


def test_tenant_router_isolates_entries() -> None:
    router = CacheRouter(per_tenant=True, default_cache=_factory(DEFAULT_SCOPE), factory=_factory)
    router.get("acme").record("benefits?", [1.0, 0.0, 0.0], "Acme benefits")
    assert router.get("globex").lookup("benefits?", [1.0, 0.0, 0.0]) is None
    assert router.get("acme").lookup("benefits?", [1.0, 0.0, 0.0]) == "Acme benefits"
    assert router.get(None) is router.default_cache


def test_tenant_router_requires_factory() -> None:
    with pytest.raises(ValueError):
        CacheRouter(per_tenant=True, default_cache=_factory(DEFAULT_SCOPE))


def test_evicted_cache_is_restored_on_demand() -> None:
    router = CacheRouter(per_tenant=True, default_cache=_factory(DEFAULT_SCOPE), factory=_factory)
    original = router.get("acme")
    original.record("q", [0.0, 1.0, 0.0], "answer")

    assert router.evict_idle(0.0, now=1e12) == ["acme"]
    stats = router.stats()
    assert stats["scopes"]["acme"]["evicted"] is True

    revived = router.get("acme")
    assert revived is not original
    assert revived.lookup("q", [0.0, 1.0, 0.0]) == "answer"


def test_drop_forgets_live_and_evicted_caches() -> None:
    router = CacheRouter(per_tenant=True, default_cache=_factory(DEFAULT_SCOPE), factory=_factory)
    router.get("acme").record("q", [1.0, 1.0, 0.0], "a")
    router.evict_idle(0.0, now=1e12)
    assert router.drop("acme")
    assert not router.drop("acme")
    assert len(router.get("acme")) == 0


def test_snapshot_all_and_restore_all() -> None:
    router = CacheRouter(per_tenant=True, default_cache=_factory(DEFAULT_SCOPE), factory=_factory)
    router.get("acme").record("q", [1.0, 0.0, 0.0], "acme answer")
    router.default_cache.record("g", [0.0, 0.0, 1.0], "global answer")
    payloads = router.snapshot_all()
    assert set(payloads) == {DEFAULT_SCOPE, "acme"}

    fresh = CacheRouter(per_tenant=True, default_cache=_factory(DEFAULT_SCOPE), factory=_factory)
    fresh.restore_all(payloads)
    assert fresh.default_cache.lookup("g", [0.0, 0.0, 1.0]) == "global answer"
    assert fresh.get("acme").lookup("q", [1.0, 0.0, 0.0]) == "acme answer"
    assert fresh.stats()["aggregate"]["entries"] == 2.0
