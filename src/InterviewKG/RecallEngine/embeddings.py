"""Embedding provider access with deadlines, cancellation and retry.

The engine never calls an embedding provider directly. Every request goes
through :class:`EmbeddingClient`, which

- runs the provider on a worker thread and waits at most
  ``EmbeddingConfig.timeout_seconds`` for the result,
- sets the request's cancellation :class:`threading.Event` on timeout so a
  cooperative provider can abandon the network call,
- retries rate-limited and transient failures with Tenacity's full-jitter
  exponential backoff (the sleep between attempts observes the cancel event),
- converts every provider failure into :class:`EmbeddingUnavailable` so callers
  can take their degraded path (keyword-only ranking, stale memory facts).

:class:`HttpEmbeddingProvider` talks to an OpenAI-compatible ``/embeddings``
endpoint through HTTPX.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

import httpx
import numpy as np
from numpy.typing import NDArray
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_random_exponential

from .config import EmbeddingConfig
from .errors import DimensionMismatch, EmbeddingUnavailable
from .observability import Observability
from .types import as_float32

logger = logging.getLogger(__name__)

__all__ = (
    "EmbeddingClient",
    "EmbeddingProvider",
    "HttpEmbeddingProvider",
    "is_retryable_embedding_error",
)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Computes embeddings for text.

    Implementations should poll ``cancel_event`` around blocking work and
    give up once it is set; the result of a cancelled request is discarded.
    """

    def embed(self, text: str, cancel_event: threading.Event) -> Sequence[float]:
        """Return the embedding of ``text``."""


def is_retryable_embedding_error(exc: BaseException) -> bool:
    """Return ``True`` for failures worth another attempt.

    Rate limits, transport errors and 5xx responses are retried; everything
    else (bad requests, authentication, malformed payloads) fails fast.
    """
    if isinstance(exc, EmbeddingUnavailable):
        return exc.reason == "rate_limit"
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class EmbeddingClient:
    """Deadline-bounded, retrying wrapper around an :class:`EmbeddingProvider`.

    Attributes:
        provider: Underlying provider.
        config: Timeout and retry budget.
        dim: Expected embedding dimension.

    Examples:
        >>> from InterviewKG.RecallEngine.devtools import HashingEmbeddingProvider
        >>> client = EmbeddingClient(HashingEmbeddingProvider(dim=8), EmbeddingConfig(), dim=8)
        >>> client.embed("salary expectations").shape
        (8,)
        >>> client.close()
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: Optional[EmbeddingConfig] = None,
        *,
        dim: int,
        observability: Optional[Observability] = None,
        max_workers: int = 4,
    ) -> None:
        self.provider = provider
        self.config = config or EmbeddingConfig()
        self.dim = dim
        self._observability = observability or Observability()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="recall-embed")
        self._closed = False

    def embed(self, text: str) -> NDArray[np.float32]:
        """Embed ``text`` within the configured deadline.

        Args:
            text: Text to embed.

        Returns:
            Float32 embedding of length ``dim``.

        Raises:
            EmbeddingUnavailable: On timeout, rate limiting or provider failure.
            DimensionMismatch: If the provider returned a vector of the wrong length.
        """
        if self._closed:
            raise EmbeddingUnavailable("embedding client is closed", reason="provider_error")
        metrics = self._observability.metrics
        cancel_event = threading.Event()
        with self._observability.trace("embed"):
            future = self._executor.submit(self._embed_with_retry, text, cancel_event)
            try:
                raw = future.result(timeout=self.config.timeout_seconds)
            except FutureTimeoutError:
                cancel_event.set()
                future.cancel()
                metrics.increment("embedding_failures", reason="timeout")
                logger.warning(
                    "embedding-timeout",
                    extra={"event": {"timeout_s": self.config.timeout_seconds, "chars": len(text)}},
                )
                raise EmbeddingUnavailable(
                    f"embedding provider did not answer within {self.config.timeout_seconds}s",
                    reason="timeout",
                ) from None
            except EmbeddingUnavailable as exc:
                metrics.increment("embedding_failures", reason=exc.reason)
                logger.warning("embedding-unavailable", extra={"event": {"reason": exc.reason, "error": str(exc)}})
                raise
            except Exception as exc:
                metrics.increment("embedding_failures", reason="provider_error")
                logger.warning(
                    "embedding-unavailable",
                    extra={"event": {"reason": "provider_error", "error": str(exc)}},
                )
                raise EmbeddingUnavailable(f"embedding provider failed: {exc}", reason="provider_error") from exc

        vector = as_float32(raw)
        if vector.shape[0] != self.dim:
            raise DimensionMismatch(expected=self.dim, actual=int(vector.shape[0]))
        metrics.increment("embeddings_computed")
        return vector

    def close(self) -> None:
        """Stop accepting requests and release worker threads."""

        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _embed_with_retry(self, text: str, cancel_event: threading.Event) -> Sequence[float]:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_random_exponential(multiplier=0.05, max=1.0),
            retry=retry_if_exception(is_retryable_embedding_error),
            sleep=cancel_event.wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if cancel_event.is_set():
                    raise EmbeddingUnavailable("embedding request cancelled", reason="timeout")
                result = self.provider.embed(text, cancel_event)
        return result


class HttpEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` client built on HTTPX.

    Attributes:
        config: Endpoint, model and timeout settings.
        dimensions: Optional ``dimensions`` request parameter for models that
            support shortened embeddings.
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        *,
        api_key: Optional[str] = None,
        dimensions: Optional[int] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self.dimensions = dimensions
        self._api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY", "")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(self.config.timeout_seconds))

    def embed(self, text: str, cancel_event: threading.Event) -> Sequence[float]:
        """POST ``text`` to the embeddings endpoint and return the first vector.

        Raises:
            EmbeddingUnavailable: On 429 responses, cancellation, or a malformed body.
            httpx.HTTPError: On transport failures and other error statuses.
        """
        body: dict[str, Any] = {"model": self.config.model, "input": text}
        if self.dimensions is not None:
            body["dimensions"] = self.dimensions
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        response = self._client.post(self.config.endpoint, json=body, headers=headers)
        if cancel_event.is_set():
            raise EmbeddingUnavailable("embedding request cancelled", reason="timeout")
        if response.status_code == 429:
            raise EmbeddingUnavailable("embedding provider rate limited the request", reason="rate_limit")
        response.raise_for_status()
        try:
            payload = response.json()
            return [float(value) for value in payload["data"][0]["embedding"]]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EmbeddingUnavailable(f"malformed embedding response: {exc}", reason="provider_error") from exc

    def close(self) -> None:
        """Close the underlying HTTP client when this provider created it."""

        if self._owns_client:
            self._client.close()
