"""In-process counters and latency histograms for engine runtime."""

from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

Tags = tuple[tuple[str, str], ...]


class MetricsSink(Protocol):
    """External metrics collaborator."""

    def emit(self, event_name: str, tags: dict[str, str], value: float) -> None:
        """Receive one metric sample."""


class LoggingMetricsSink:
    """Sink that writes every sample to the log at DEBUG level."""

    def __init__(self, *, level: int = logging.DEBUG) -> None:
        self.level = level

    def emit(self, event_name: str, tags: dict[str, str], value: float) -> None:
        logger.log(self.level, "metric %s %s=%s", event_name, _format_tags(_freeze(tags)), value)


@dataclass(slots=True)
class LatencyPercentiles:
    """Latency percentiles for one histogram series."""

    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float
    max_seconds: float


@dataclass(slots=True)
class MetricsSnapshot:
    """Point-in-time view used by stats rendering and tests."""

    counters: dict[str, float]
    histograms: dict[str, LatencyPercentiles]

    def counter(self, name: str, **tags: str) -> float:
        return self.counters.get(_series_key(name, _freeze(tags)), 0)


class MetricsRegistry:
    """Thread-safe counters and histograms keyed by (name, tags).

    Every sample is also forwarded to the optional :class:`MetricsSink`.
    """

    def __init__(self, *, sink: MetricsSink | None = None, max_samples: int = 10_000) -> None:
        self.sink = sink
        self.max_samples = max_samples
        self._counters = Counter[tuple[str, Tags]]()
        self._histograms: dict[tuple[str, Tags], list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def increment(self, name: str, tags: dict[str, str] | None = None, value: float = 1) -> None:
        frozen = _freeze(tags or {})
        with self._lock:
            self._counters[(name, frozen)] += value
        self._forward(name, tags or {}, value)

    def observe(self, name: str, tags: dict[str, str] | None = None, *, value: float) -> None:
        frozen = _freeze(tags or {})
        with self._lock:
            samples = self._histograms[(name, frozen)]
            samples.append(value)
            if len(samples) > self.max_samples:
                del samples[0]
        self._forward(name, tags or {}, value)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            counters = {
                _series_key(name, tags): value for (name, tags), value in self._counters.items()
            }
            histograms = {
                _series_key(name, tags): _build_percentiles(values)
                for (name, tags), values in self._histograms.items()
                if values
            }
        return MetricsSnapshot(counters=counters, histograms=histograms)

    def _forward(self, name: str, tags: dict[str, str], value: float) -> None:
        if self.sink is None:
            return
        try:
            self.sink.emit(name, dict(tags), value)
        except Exception:  # noqa: BLE001
            logger.warning("Metrics sink rejected %s", name, exc_info=True)


def render_stats_lines(*, snapshot: MetricsSnapshot) -> list[str]:
    """Render a snapshot into human-readable CLI lines."""

    lines: list[str] = []
    if snapshot.counters:
        lines.append("Counters:")
        lines.extend(f"  {key} = {_fmt_number(value)}" for key, value in sorted(snapshot.counters.items()))
    else:
        lines.append("Counters: none")

    if snapshot.histograms:
        lines.append("Latency percentiles:")
        for key, percentiles in sorted(snapshot.histograms.items()):
            lines.append(
                f"  {key}: n={percentiles.sample_size} "
                f"p50={percentiles.p50_seconds:.3f}s "
                f"p90={percentiles.p90_seconds:.3f}s "
                f"p99={percentiles.p99_seconds:.3f}s "
                f"max={percentiles.max_seconds:.3f}s",
            )
    else:
        lines.append("Latency percentiles: none")
    return lines


def _build_percentiles(values: list[float]) -> LatencyPercentiles:
    return LatencyPercentiles(
        sample_size=len(values),
        p50_seconds=_percentile(values, 0.50),
        p90_seconds=_percentile(values, 0.90),
        p99_seconds=_percentile(values, 0.99),
        max_seconds=max(values),
    )


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight


def _freeze(tags: dict[str, str]) -> Tags:
    return tuple(sorted((str(key), str(value)) for key, value in tags.items()))


def _series_key(name: str, tags: Tags) -> str:
    if not tags:
        return name
    return f"{name}{{{_format_tags(tags)}}}"


def _format_tags(tags: Tags) -> str:
    return ",".join(f"{key}={value}" for key, value in tags)


def _fmt_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}"
