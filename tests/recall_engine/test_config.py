"""Tests for :mod:`InterviewKG.RecallEngine.config`."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from InterviewKG.RecallEngine.config import (
    CacheConfig,
    FusionConfig,
    RecallEngineConfig,
    RecallEngineConfigManager,
    RetrievalConfig,
    VectorIndexConfig,
)


def test_defaults_match_production_values() -> None:
    config = RecallEngineConfig()
    assert config.vector.dim == 1536
    assert config.cache.threshold == pytest.approx(0.95)
    assert config.fusion.k0 == pytest.approx(60.0)
    assert config.context.max_tokens == 2000
    assert config.memory.content_max_chars == 500
    assert config.memory.source_max_chars == 1000
    assert config.memory.recall_min_similarity == pytest.approx(0.5)


def test_from_dict_fills_missing_sections_with_defaults() -> None:
    config = RecallEngineConfig.from_dict({"vector": {"dim": 8, "m": 4}, "cache": None})
    assert config.vector.dim == 8
    assert config.vector.max_layer0_degree == 8
    assert config.cache == CacheConfig()


def test_from_dict_accepts_weights_mapping() -> None:
    config = RecallEngineConfig.from_dict({"fusion": {"weights": {"vector": 0.3, "text": 0.7}}})
    assert config.fusion.weights == {"vector": pytest.approx(0.3), "text": pytest.approx(0.7)}


def test_from_dict_explicit_weight_wins_over_mapping() -> None:
    config = RecallEngineConfig.from_dict(
        {"fusion": {"vector_weight": 0.9, "weights": {"vector": 0.3, "text": 0.7}}}
    )
    assert config.fusion.vector_weight == pytest.approx(0.9)
    assert config.fusion.text_weight == pytest.approx(0.7)


@pytest.mark.parametrize("payload", [[1, 2], "vector", None])
def test_from_dict_rejects_non_mapping_payload(payload: object) -> None:
    with pytest.raises(ValueError):
        RecallEngineConfig.from_dict(payload)  # type: ignore[arg-type]


def test_from_dict_rejects_non_mapping_section() -> None:
    with pytest.raises(ValueError, match="vector"):
        RecallEngineConfig.from_dict({"vector": [1536]})


def test_from_dict_rejects_unknown_keys() -> None:
    with pytest.raises(TypeError):
        RecallEngineConfig.from_dict({"cache": {"treshold": 0.9}})


@pytest.mark.parametrize(
    "factory",
    [
        lambda: VectorIndexConfig(dim=0),
        lambda: VectorIndexConfig(m=1),
        lambda: VectorIndexConfig(ef_search=0),
        lambda: VectorIndexConfig(compaction_tombstone_ratio=0.0),
        lambda: FusionConfig(vector_weight=-0.1),
        lambda: FusionConfig(k0=0.0),
        lambda: RetrievalConfig(channel_overfetch=0),
        lambda: RetrievalConfig(executor_max_workers=0),
        lambda: CacheConfig(threshold=1.5),
        lambda: CacheConfig(max_entries=0),
        lambda: CacheConfig(inflight_timeout_seconds=0.0),
        lambda: CacheConfig(idle_tenant_seconds=-1.0),
    ],
)
def test_invalid_values_raise(factory) -> None:
    with pytest.raises(ValueError):
        factory()


def test_executor_workers_must_be_int() -> None:
    with pytest.raises(TypeError):
        RetrievalConfig(executor_max_workers=2.5)  # type: ignore[arg-type]


def test_manager_loads_json_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "recall.json"
    path.write_text(json.dumps({"vector": {"dim": 32}}), encoding="utf-8")
    manager = RecallEngineConfigManager(path)
    assert manager.path == path
    assert manager.get().vector.dim == 32

    path.write_text(json.dumps({"vector": {"dim": 64}, "cache": {"scope": "tenant"}}), encoding="utf-8")
    reloaded = manager.reload()
    assert reloaded.vector.dim == 64
    assert manager.get().cache.scope == "tenant"


def test_manager_falls_back_to_yaml(tmp_path: Path) -> None:
    path = tmp_path / "recall.yaml"
    path.write_text(
        "vector:\n  dim: 16\nfusion:\n  method: rrf\ncache:\n  threshold: 0.9\n  ttl_seconds: null\n",
        encoding="utf-8",
    )
    config = RecallEngineConfigManager(path).get()
    assert config.vector.dim == 16
    assert config.fusion.method == "rrf"
    assert config.cache.ttl_seconds is None


def test_manager_rejects_invalid_yaml(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("vector: [unclosed\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Failed to parse YAML"):
        RecallEngineConfigManager(path)


def test_manager_rejects_yaml_scalar(tmp_path: Path) -> None:
    path = tmp_path / "scalar.yaml"
    path.write_text("just-a-string: [\n", encoding="utf-8")
    with pytest.raises(ValueError):
        RecallEngineConfigManager(path)
    path.write_text("plain text\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        RecallEngineConfigManager(path)


def test_manager_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RecallEngineConfigManager(tmp_path / "absent.yaml")
