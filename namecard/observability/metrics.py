from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
import math
from typing import Any, Deque, Iterable


logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "NameCard"
# Values kept per series for percentile reporting.
RECENT_VALUES = 2048


@dataclass(frozen=True)
class MetricEvent:
    name: str
    value: float
    unit: str
    dimensions: dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSeries:
    name: str
    unit: str
    samples: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None
    recent: Deque[float] = field(default_factory=lambda: deque(maxlen=RECENT_VALUES))

    def add(self, value: float) -> None:
        self.samples += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)
        self.recent.append(value)

    def percentile(self, q: float) -> float | None:
        # Nearest-rank percentile over the retained values.
        if not self.recent:
            return None
        ordered = sorted(self.recent)
        rank = max(0, math.ceil(q / 100.0 * len(ordered)) - 1)
        return ordered[rank]

    def summary(self) -> dict[str, Any]:
        return {
            "unit": self.unit,
            "samples": self.samples,
            "total": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "p95": self.percentile(95),
        }


class MetricAggregator:
    """Process-wide roll-up of flushed metric events, keyed by metric name."""

    def __init__(self) -> None:
        self._series: dict[str, MetricSeries] = {}

    def add(self, name: str, value: float, unit: str = "Count") -> None:
        series = self._series.get(name)
        if series is None:
            series = self._series[name] = MetricSeries(name=name, unit=unit)
        series.add(value)

    def ingest(self, events: Iterable[MetricEvent]) -> None:
        for event in events:
            self.add(event.name, event.value, event.unit)

    def series(self, name: str) -> MetricSeries | None:
        return self._series.get(name)

    def total(self, name: str) -> float:
        series = self._series.get(name)
        return series.total if series is not None else 0.0

    def counters(self) -> dict[str, float]:
        return {name: series.total for name, series in self._series.items() if series.unit == "Count"}

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: series.summary() for name, series in self._series.items()}

    def reset(self) -> None:
        self._series.clear()


_aggregator = MetricAggregator()


def get_aggregator() -> MetricAggregator:
    return _aggregator


def record_request(*, status_code: int, latency_ms: float) -> None:
    # Host-level request outcome; feeds availability and latency on the ops endpoint.
    _aggregator.add("requestsServed", 1)
    if status_code >= 500:
        _aggregator.add("requestsFailed", 1)
    _aggregator.add("requestLatencyMs", latency_ms, "Milliseconds")


def availability() -> float | None:
    # Percentage of requests answered without a 5xx since process start.
    served = _aggregator.total("requestsServed")
    if not served:
        return None
    return ((served - _aggregator.total("requestsFailed")) / served) * 100.0


class MetricsBuffer:
    """Per-invocation metric buffer, written out once by ``flush``."""

    def __init__(
        self,
        service: str,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        aggregator: MetricAggregator | None = None,
    ) -> None:
        self.service = service
        self.namespace = namespace
        self._aggregator = aggregator or _aggregator
        self._events: list[MetricEvent] = []

    def count(self, name: str, value: float = 1, dimensions: dict[str, str] | None = None) -> None:
        self._events.append(MetricEvent(name=name, value=value, unit="Count", dimensions=dict(dimensions or {})))

    def duration(self, name: str, milliseconds: float, dimensions: dict[str, str] | None = None) -> None:
        self._events.append(
            MetricEvent(name=name, value=milliseconds, unit="Milliseconds", dimensions=dict(dimensions or {}))
        )

    def gauge(self, name: str, value: float, dimensions: dict[str, str] | None = None) -> None:
        self._events.append(MetricEvent(name=name, value=value, unit="None", dimensions=dict(dimensions or {})))

    @property
    def pending(self) -> list[MetricEvent]:
        return list(self._events)

    def flush(self) -> list[MetricEvent]:
        # Emit the batch as one log line and roll it into the process aggregate.
        if not self._events:
            return []
        batch, self._events = self._events, []
        self._aggregator.ingest(batch)
        logger.info(
            "metrics.flush",
            extra={
                "namespace": self.namespace,
                "metrics": [asdict(event) for event in batch],
                "flushed_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        return batch

    def __len__(self) -> int:
        return len(self._events)
