"""
Process-local metrics exported in Prometheus text format at /metrics.

Series live in memory per worker; quota decisions, store outages, migration
writes and checkout reconciliations are counted next to HTTP traffic.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelValues = Tuple[str, ...]


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names or ())
        self._series: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _series_key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._series.get(self._series_key(labels), 0.0)

    def _render_labels(self, values: LabelValues) -> str:
        if not self.label_names:
            return ""
        pairs = []
        for name, raw in zip(self.label_names, values):
            escaped = raw.replace("\\", "\\\\").replace('"', '\\"')
            pairs.append(f'{name}="{escaped}"')
        return "{" + ",".join(pairs) + "}"

    def render(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            series = sorted(self._series.items())
        lines.extend(f"{self.name}{self._render_labels(values)} {amount}" for values, amount in series)
        return lines

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters only go up")
        key = self._series_key(labels)
        with self._lock:
            self._series[key] = self._series.get(key, 0.0) + float(amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._series_key(labels)
        with self._lock:
            self._series[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls, name: str, help_text: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, help_text, label_names)
            elif not isinstance(metric, cls):
                raise ValueError(f"Metric {name} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._get_or_create(Counter, name, help_text, label_names)

    def gauge(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._get_or_create(Gauge, name, help_text, label_names)

    def export_prometheus(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        lines: List[str] = []
        for metric in metrics:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status", ["method", "path", "status"]
)
quota_checks_total = METRICS.counter(
    "quota_checks_total", "Usage gate decisions", ["tier", "kind", "outcome"]
)
quota_store_errors_total = METRICS.counter(
    "quota_store_errors_total", "Counter store calls that failed", ["tier"]
)
migration_entities_total = METRICS.counter(
    "migration_entities_total", "Guest entities written during migration", ["entity"]
)
billing_reconciliations_total = METRICS.counter(
    "billing_reconciliations_total", "Checkout reconciliations by outcome", ["outcome"]
)
ratelimit_block_total = METRICS.counter(
    "ratelimit_block_total", "Requests refused by the rate limiter", ["tier"]
)
guest_cache_entries = METRICS.gauge("guest_cache_entries", "Guests with a live workspace cache entry")


# Numeric ids, uuids and prefixed entity ids such as tile_3f2a...
_ID_SEGMENT_RE = re.compile(r"^(\d+|[0-9a-fA-F-]{8,}|[a-z]+_[0-9a-fA-F]{8,})$")


def normalize_path(path: str) -> str:
    """Replace id-like path segments with :id."""
    segments = [":id" if _ID_SEGMENT_RE.match(s) else s for s in path.split("/") if s]
    return "/" + "/".join(segments)
