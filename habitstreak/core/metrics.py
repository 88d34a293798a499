"""In-memory streak and HTTP metrics, exported in Prometheus text format."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._values: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _series(self, values: LabelValues) -> str:
        if not self.label_names:
            return self.name
        pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, values))
        return f"{self.name}{{{pairs}}}"

    def export(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            lines.extend(f"{self._series(values)} {value}" for values, value in self._values.items())
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, help_text: str, label_names):
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = cls(name, help_text, label_names)
            metric = self._metrics[name]
        if not isinstance(metric, cls):
            raise ValueError(f"metric {name} already registered as {metric.kind}")
        return metric

    def counter(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, help_text, label_names)

    def gauge(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, help_text, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in list(self._metrics.values()):
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status", ["method", "path", "status"]
)
streak_operations_total = METRICS.counter(
    "streak_operations_total", "Engine operations by outcome (ok or error kind)", ["operation", "outcome"]
)
streak_txn_conflicts_total = METRICS.counter(
    "streak_txn_conflicts_total", "Commits that lost an optimistic version check", ["operation"]
)
streak_integrity_corrections_total = METRICS.counter(
    "streak_integrity_corrections_total", "Streak states replaced by the log recount", ["operation"]
)
streak_fraud_flags_total = METRICS.counter("streak_fraud_flags_total", "Advisory anti-fraud flags raised", ["flag"])
streak_sweep_runs_total = METRICS.counter("streak_sweep_runs_total", "Scheduled sweep runs by status", ["status"])

streak_cache_entries = METRICS.gauge("streak_cache_entries", "Streak states held in the engine cache")


_ID_SEGMENT = re.compile(r"^[0-9a-fA-F-]{8,}$")


def normalize_path(path: str) -> str:
    """Collapse numeric and uuid-like segments to :id to bound label cardinality."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if s.isdigit() or _ID_SEGMENT.match(s) else s for s in segments)
