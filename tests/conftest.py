# === NAVMAP v1 ===
# {
#   "module": "tests.conftest",
#   "purpose": "Shared pytest fixtures for suite",
#   "sections": [
#     {
#       "id": "hashing-provider",
#       "name": "hashing_provider",
#       "anchor": "function-hashing-provider",
#       "kind": "function"
#     },
#     {
#       "id": "engine-factory",
#       "name": "engine_factory",
#       "anchor": "function-engine-factory",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Pytest Configuration

This module puts ``src`` on ``sys.path`` so the suite runs from a checkout
without installation, and provides engine fixtures backed by the offline
hashing embedder.

Usage:
    pytest tests/recall_engine
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest

# --- Globals ---

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from InterviewKG.RecallEngine.config import RecallEngineConfig  # noqa: E402
from InterviewKG.RecallEngine.devtools import HashingEmbeddingProvider  # noqa: E402
from InterviewKG.RecallEngine.service import RecallEngine  # noqa: E402

TEST_DIM = 128


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = {key: dict(value) for key, value in base.items()}
    for section, values in overrides.items():
        merged.setdefault(section, {}).update(values)
    return merged


# --- Fixtures ---


@pytest.fixture
def hashing_provider() -> HashingEmbeddingProvider:
    """Deterministic embedder sized for the test configuration."""

    return HashingEmbeddingProvider(dim=TEST_DIM)


@pytest.fixture
def engine_factory(
    hashing_provider: HashingEmbeddingProvider,
) -> Generator[Callable[..., RecallEngine], None, None]:
    """Build engines with small vectors; every engine is closed on teardown."""

    engines: List[RecallEngine] = []

    def factory(
        overrides: Optional[Dict[str, Any]] = None,
        *,
        provider: Any = hashing_provider,
    ) -> RecallEngine:
        payload = _merge({"vector": {"dim": TEST_DIM}, "embedding": {"timeout_seconds": 2.0}}, overrides or {})
        engine = RecallEngine(RecallEngineConfig.from_dict(payload), provider=provider)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(engine_factory: Callable[..., RecallEngine]) -> RecallEngine:
    """Engine with default settings and the hashing embedder."""

    return engine_factory()
