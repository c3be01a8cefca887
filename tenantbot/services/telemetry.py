from __future__ import annotations

import math
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Mapping


LabelSet = tuple[tuple[str, str], ...]

# Latency buckets (seconds) for client creation and job durations.
DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0)


def _labels(labels: Mapping[str, object] | None) -> LabelSet:
    if not labels:
        return ()
    return tuple(sorted((str(key), str(value)) for key, value in labels.items()))


def _format_labels(labels: LabelSet, extra: tuple[tuple[str, str], ...] = ()) -> str:
    items = labels + extra
    if not items:
        return ""
    rendered = ",".join(f'{key}="{_escape(value)}"' for key, value in items)
    return "{" + rendered + "}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if value == math.inf:
        return "+Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


@dataclass
class _Histogram:
    buckets: tuple[float, ...]
    bucket_counts: list[int]
    total: float = 0.0
    count: int = 0
    # Recent raw samples for p95 reporting on the ops surface.
    samples: Deque[float] = field(default_factory=lambda: deque(maxlen=2000))

    def observe(self, value: float) -> None:
        self.total += value
        self.count += 1
        self.samples.append(value)
        for idx, bound in enumerate(self.buckets):
            if value <= bound:
                self.bucket_counts[idx] += 1


class MetricsRegistry:
    """In-process counters, gauges and histograms with label support.

    One instance is owned by the service registry and handed to every
    component that reports metrics; `render_prometheus` produces the text
    exposition served by the ops app.
    """

    def __init__(self, *, buckets: tuple[float, ...] = DEFAULT_BUCKETS) -> None:
        self._buckets = buckets
        self._counters: dict[str, dict[LabelSet, float]] = defaultdict(lambda: defaultdict(float))
        self._gauges: dict[str, dict[LabelSet, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[LabelSet, _Histogram]] = defaultdict(dict)
        self._help: dict[str, str] = {}
        # Metrics may be touched from executor threads (sync secret loaders, tests).
        self._lock = threading.Lock()

    def describe(self, name: str, help_text: str) -> None:
        self._help[name] = help_text

    def increment_counter(self, name: str, value: float = 1, *, labels: Mapping[str, object] | None = None) -> None:
        with self._lock:
            self._counters[name][_labels(labels)] += value

    def set_gauge(self, name: str, value: float, *, labels: Mapping[str, object] | None = None) -> None:
        with self._lock:
            self._gauges[name][_labels(labels)] = float(value)

    def observe(self, name: str, value: float, *, labels: Mapping[str, object] | None = None) -> None:
        key = _labels(labels)
        with self._lock:
            series = self._histograms[name]
            histogram = series.get(key)
            if histogram is None:
                histogram = _Histogram(buckets=self._buckets, bucket_counts=[0] * len(self._buckets))
                series[key] = histogram
            histogram.observe(value)

    def counter_value(self, name: str, *, labels: Mapping[str, object] | None = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_labels(labels), 0.0)

    def gauge_value(self, name: str, *, labels: Mapping[str, object] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(name, {}).get(_labels(labels))

    def histogram_count(self, name: str, *, labels: Mapping[str, object] | None = None) -> int:
        with self._lock:
            histogram = self._histograms.get(name, {}).get(_labels(labels))
            return histogram.count if histogram else 0

    def p95(self, name: str, *, labels: Mapping[str, object] | None = None) -> float | None:
        with self._lock:
            histogram = self._histograms.get(name, {}).get(_labels(labels))
            if histogram is None or not histogram.samples:
                return None
            latencies = sorted(histogram.samples)
        idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        return latencies[idx]

    def counters_snapshot(self) -> dict[str, dict[str, float]]:
        # Flatten label sets into "k=v,k=v" keys for JSON responses.
        with self._lock:
            return {
                name: {",".join(f"{k}={v}" for k, v in key): value for key, value in series.items()}
                for name, series in self._counters.items()
            }

    def render_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._counters):
                self._header(lines, name, "counter")
                for key, value in sorted(self._counters[name].items()):
                    lines.append(f"{name}{_format_labels(key)} {_format_value(value)}")
            for name in sorted(self._gauges):
                self._header(lines, name, "gauge")
                for key, value in sorted(self._gauges[name].items()):
                    lines.append(f"{name}{_format_labels(key)} {_format_value(value)}")
            for name in sorted(self._histograms):
                self._header(lines, name, "histogram")
                for key, histogram in sorted(self._histograms[name].items()):
                    for bound, count in zip(histogram.buckets, histogram.bucket_counts):
                        le = (("le", _format_value(bound)),)
                        lines.append(f"{name}_bucket{_format_labels(key, le)} {count}")
                    inf = (("le", "+Inf"),)
                    lines.append(f"{name}_bucket{_format_labels(key, inf)} {histogram.count}")
                    lines.append(f"{name}_sum{_format_labels(key)} {_format_value(histogram.total)}")
                    lines.append(f"{name}_count{_format_labels(key)} {histogram.count}")
        return "\n".join(lines) + "\n"

    def _header(self, lines: list[str], name: str, kind: str) -> None:
        help_text = self._help.get(name)
        if help_text:
            lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {kind}")
