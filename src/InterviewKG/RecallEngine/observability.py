"""
Lightweight observability primitives for the recall engine.

Every collection (knowledge base, semantic cache, session memory) reports
through one :class:`Observability` facade so operators can see cache hit
ratios, degraded-query counts, embedding timeouts, and per-channel latency
without wiring an external metrics backend:

- ``MetricsCollector`` keeps thread-safe counters, bounded histograms and
  gauges keyed by ``(name, labels)``.
- ``TraceRecorder`` times a block, records ``trace_<name>_ms`` and emits a
  ``recall-trace`` log record carrying the span payload under ``extra["event"]``.
- ``Observability`` bundles both with the ``InterviewKG.RecallEngine`` logger.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass
from threading import RLock
from typing import Deque, Dict, Iterable, Iterator, Mapping, MutableMapping, Optional, Tuple

__all__ = (
    "CounterSample",
    "GaugeSample",
    "HistogramSample",
    "MetricsCollector",
    "Observability",
    "TraceRecorder",
)

_MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass
class CounterSample:
    """Sample from a counter metric with labels and value."""

    name: str
    labels: Mapping[str, str]
    value: float


@dataclass
class HistogramSample:
    """Sample from a histogram metric with percentile statistics."""

    name: str
    labels: Mapping[str, str]
    count: int
    p50: float
    p95: float
    p99: float


@dataclass
class GaugeSample:
    """Latest value recorded for a gauge metric."""

    name: str
    labels: Mapping[str, str]
    value: float


class MetricsCollector:
    """In-memory, thread-safe metrics collector.

    Histograms keep a sliding window of the most recent ``histogram_window``
    observations so long-lived engines do not grow without bound.

    Examples:
        >>> collector = MetricsCollector()
        >>> collector.increment("cache_lookups", result="hit")
        >>> collector.value("cache_lookups", result="hit")
        1.0
    """

    def __init__(self, *, histogram_window: int = 512) -> None:
        self._lock = RLock()
        self._histogram_window = histogram_window

        def _deque_factory() -> Deque[float]:
            return deque(maxlen=self._histogram_window)

        self._counters: MutableMapping[_MetricKey, float] = defaultdict(float)
        self._histograms: MutableMapping[_MetricKey, Deque[float]] = defaultdict(_deque_factory)
        self._gauges: MutableMapping[_MetricKey, float] = {}

    @staticmethod
    def _key(name: str, labels: Mapping[str, str]) -> _MetricKey:
        return (name, tuple(sorted((str(k), str(v)) for k, v in labels.items())))

    def increment(self, name: str, amount: float = 1.0, **labels: str) -> None:
        """Increase a counter metric by ``amount`` for the supplied label set.

        Args:
            name: Counter metric identifier.
            amount: Amount to add to the counter.
            **labels: Key/value labels that partition the metric stream.

        Returns:
            None
        """
        key = self._key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe(self, name: str, value: float, **labels: str) -> None:
        """Record a new observation for a histogram metric."""

        key = self._key(name, labels)
        with self._lock:
            self._histograms[key].append(value)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        """Store the latest value for a gauge metric."""

        key = self._key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def value(self, name: str, **labels: str) -> float:
        """Return the current value of a counter (0.0 when never incremented)."""

        key = self._key(name, labels)
        with self._lock:
            return float(self._counters.get(key, 0.0))

    def percentile(self, name: str, percentile: float, **labels: str) -> Optional[float]:
        """Return the requested percentile for a histogram metric if available.

        Args:
            name: Histogram metric identifier.
            percentile: Desired percentile expressed between 0.0 and 1.0.
            **labels: Key/value labels that partition the metric stream.

        Returns:
            The percentile value when samples exist, otherwise ``None``.
        """
        key = self._key(name, labels)
        with self._lock:
            samples = sorted(self._histograms.get(key, ()))
        if not samples:
            return None
        percentile = min(max(percentile, 0.0), 1.0)
        return samples[int(percentile * (len(samples) - 1))]

    def export_counters(self) -> Iterable[CounterSample]:
        """Yield counter samples suitable for serialization."""

        with self._lock:
            items = list(self._counters.items())
        for (name, labels), value in items:
            yield CounterSample(name=name, labels=dict(labels), value=value)

    def export_histograms(self) -> Iterable[HistogramSample]:
        """Yield histogram samples enriched with common percentiles."""

        with self._lock:
            items = [(key, sorted(samples)) for key, samples in self._histograms.items()]
        for (name, labels), samples in items:
            count = len(samples)
            if count == 0:
                continue
            yield HistogramSample(
                name=name,
                labels=dict(labels),
                count=count,
                p50=samples[int(0.5 * (count - 1))],
                p95=samples[int(0.95 * (count - 1))],
                p99=samples[int(0.99 * (count - 1))],
            )

    def export_gauges(self) -> Iterable[GaugeSample]:
        """Yield gauge samples representing the latest recorded values."""

        with self._lock:
            items = list(self._gauges.items())
        for (name, labels), value in items:
            yield GaugeSample(name=name, labels=dict(labels), value=value)


class TraceRecorder:
    """Context manager producing timing spans for tracing.

    Examples:
        >>> recorder = TraceRecorder(MetricsCollector(), logging.getLogger("test"))
        >>> with recorder.span("example"):
        ...     pass
    """

    def __init__(self, metrics: MetricsCollector, logger: logging.Logger) -> None:
        self._metrics = metrics
        self._logger = logger

    @contextmanager
    def span(self, name: str, **attributes: str) -> Iterator[None]:
        """Record execution duration for a traced operation.

        Args:
            name: Span name, used in metric and log emission.
            **attributes: Additional context attached to metrics and logs.

        Yields:
            None

        Raises:
            Exception: Propagates any exception raised inside the traced block.
        """
        start = time.perf_counter()
        status = "error"
        try:
            yield
            status = "ok"
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self._metrics.observe(f"trace_{name}_ms", duration_ms, **attributes)
            payload: Dict[str, object] = {
                "span": name,
                "duration_ms": round(duration_ms, 3),
                "status": status,
            }
            payload.update(attributes)
            self._logger.debug("recall-trace", extra={"event": payload})


class Observability:
    """Facade for metrics, structured logging, and tracing.

    Examples:
        >>> obs = Observability()
        >>> sorted(obs.metrics_snapshot())
        ['counters', 'gauges', 'histograms']
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._metrics = MetricsCollector()
        self._logger = logger or logging.getLogger("InterviewKG.RecallEngine")
        self._tracer = TraceRecorder(self._metrics, self._logger)

    @property
    def metrics(self) -> MetricsCollector:
        """Return the shared metrics collector."""

        return self._metrics

    @property
    def logger(self) -> logging.Logger:
        """Return the logger scoped to recall engine events."""

        return self._logger

    def trace(self, name: str, **attributes: str) -> Iterator[None]:
        """Create a tracing span that records timing and metadata."""

        return self._tracer.span(name, **attributes)

    def metrics_snapshot(self) -> Dict[str, list[Mapping[str, object]]]:
        """Export a JSON-serializable snapshot of counters, histograms, and gauges."""

        counters = [sample.__dict__ for sample in self._metrics.export_counters()]
        histograms = [sample.__dict__ for sample in self._metrics.export_histograms()]
        gauges = [sample.__dict__ for sample in self._metrics.export_gauges()]
        return {"counters": counters, "histograms": histograms, "gauges": gauges}
