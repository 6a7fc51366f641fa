"""Deterministic embedding providers for tests, notebooks and local runs.

``HashingEmbeddingProvider`` derives a pseudo-random unit vector per analysed
term from its SHA-256 digest and sums them, so texts that analyse to the same
terms embed identically and unrelated texts are close to orthogonal. The
vectors carry no semantics beyond term overlap, which is exactly what tests
need to reason about similarity thresholds.

``FlakyEmbeddingProvider`` wraps another provider and injects outages, slow
responses and rate limits on demand.
"""

from __future__ import annotations

import hashlib
import threading
from functools import lru_cache
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from ..errors import EmbeddingUnavailable
from ..tokenization import analyze, tokenize

__all__ = ("FlakyEmbeddingProvider", "HashingEmbeddingProvider")


class HashingEmbeddingProvider:
    """Term-hashing embedder with a fixed output dimension.

    Examples:
        >>> provider = HashingEmbeddingProvider(dim=16)
        >>> a = provider.embed("What is the notice period?", threading.Event())
        >>> b = provider.embed("notice periods", threading.Event())
        >>> bool(np.allclose(a, b))
        True
    """

    def __init__(self, *, dim: int = 1536) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self._dim = dim
        self.calls = 0
        self._lock = threading.Lock()

    @property
    def dim(self) -> int:
        """Return the embedding dimensionality."""

        return self._dim

    def embed(self, text: str, cancel_event: threading.Event) -> NDArray[np.float32]:
        with self._lock:
            self.calls += 1
        terms: Sequence[str] = analyze(text) or tokenize(text) or [text]
        aggregate = np.zeros(self._dim, dtype=np.float32)
        for term in terms:
            aggregate += _term_vector(term, self._dim)
        norm = float(np.linalg.norm(aggregate))
        if norm == 0.0:
            return _term_vector(text, self._dim)
        return aggregate / norm


@lru_cache(maxsize=16384)
def _term_vector(term: str, dim: int) -> NDArray[np.float32]:
    digest = hashlib.sha256(term.encode("utf-8")).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "little"))
    vector = rng.standard_normal(dim).astype(np.float32)
    vector /= np.linalg.norm(vector)
    vector.setflags(write=False)
    return vector


class FlakyEmbeddingProvider:
    """Fault-injecting wrapper around another provider.

    Attributes:
        inner: Provider used when no fault is active.
        down: When ``True`` every call fails with ``reason``.
        delay_seconds: Artificial latency; honours the cancel event.
        failures_before_success: Number of upcoming calls that fail before
            calls are forwarded again (useful for retry tests).
        reason: ``EmbeddingUnavailable.reason`` used for injected failures.
    """

    def __init__(
        self,
        inner: HashingEmbeddingProvider,
        *,
        down: bool = False,
        delay_seconds: float = 0.0,
        failures_before_success: int = 0,
        reason: str = "provider_error",
    ) -> None:
        self.inner = inner
        self.down = down
        self.delay_seconds = delay_seconds
        self.failures_before_success = failures_before_success
        self.reason = reason
        self.calls = 0
        self.cancelled = 0
        self._lock = threading.Lock()

    @property
    def dim(self) -> int:
        """Return the wrapped provider's dimensionality."""

        return self.inner.dim

    def embed(self, text: str, cancel_event: threading.Event) -> NDArray[np.float32]:
        with self._lock:
            self.calls += 1
            inject = self.down or self.failures_before_success > 0
            if self.failures_before_success > 0:
                self.failures_before_success -= 1
        if self.delay_seconds > 0 and cancel_event.wait(self.delay_seconds):
            with self._lock:
                self.cancelled += 1
            raise EmbeddingUnavailable("embedding request cancelled", reason="timeout")
        if inject:
            raise EmbeddingUnavailable(f"injected {self.reason}", reason=self.reason)
        return self.inner.embed(text, cancel_event)

    def set_down(self, down: bool, *, reason: Optional[str] = None) -> None:
        """Toggle the simulated outage."""

        with self._lock:
            self.down = down
            if reason is not None:
                self.reason = reason
