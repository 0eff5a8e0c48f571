# dispatch_engine/infra/metrics.py
"""
In-process metrics: labelled counters and windowed histograms.

Keys are rendered as ``name{label=value,...}`` with labels sorted, e.g.
``escalations_total{action=OPERATOR_ALERT}``.  ``GET /metrics`` returns
``get_metrics()`` as JSON.  Histograms keep the most recent
``HISTOGRAM_WINDOW`` samples so a long-running dispatcher stays bounded.
"""
from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Deque, Dict, Optional

from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)

HISTOGRAM_WINDOW = 2048


def metric_key(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return f"{name}{{{label_str}}}"


def _summarize(samples: Deque[float]) -> dict:
    if not samples:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0, "p99": 0}

    ordered = sorted(samples)
    count = len(ordered)

    def percentile(p: float) -> float:
        return ordered[min(int(count * p), count - 1)]

    return {
        "count": count,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / count,
        "p50": percentile(0.50),
        "p95": percentile(0.95),
        "p99": percentile(0.99),
    }


class MetricsCollector:
    """Thread-safe counter and histogram store for one process."""

    def __init__(self, histogram_window: int = HISTOGRAM_WINDOW):
        self._window = histogram_window
        self._counters: Dict[str, int] = {}
        self._histograms: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = metric_key(name, labels)
        with self._lock:
            samples = self._histograms.get(key)
            if samples is None:
                samples = self._histograms[key] = deque(maxlen=self._window)
            samples.append(value)

    def get_counter(self, name: str, **labels) -> int:
        """Current value of one counter (0 if never incremented)"""
        with self._lock:
            return self._counters.get(metric_key(name, labels), 0)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            histograms = {k: _summarize(v) for k, v in self._histograms.items()}
        return {"counters": counters, "histograms": histograms}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager recording elapsed seconds into a histogram"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started: float | None = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self._started, **self.labels)


class DispatchMetrics:
    """Named dispatch metrics, so call sites cannot drift on names or labels"""

    @staticmethod
    def dispatch_started(category: str) -> None:
        inc_counter("dispatch_started_total", category=category)

    @staticmethod
    def attempts_created(count: int, step: int) -> None:
        inc_counter("dispatch_attempts_created_total", count, step=step)

    @staticmethod
    def response_recorded(outcome: str) -> None:
        inc_counter("dispatch_responses_total", outcome=outcome)

    @staticmethod
    def step_expired(step: int) -> None:
        inc_counter("dispatch_step_timeouts_total", step=step)

    @staticmethod
    def escalation_fired(action: str) -> None:
        inc_counter("escalations_total", action=action)

    @staticmethod
    def override_applied(action: str) -> None:
        inc_counter("escalation_overrides_total", action=action)

    @staticmethod
    def conflict(command: str) -> None:
        inc_counter("command_conflicts_total", command=command)

    @staticmethod
    def signal_discarded(kind: str) -> None:
        inc_counter("stale_signals_discarded_total", kind=kind)

    @staticmethod
    def sla_warning(kind: str) -> None:
        inc_counter("sla_warnings_total", kind=kind)

    @staticmethod
    def sla_breach(kind: str) -> None:
        inc_counter("sla_breaches_total", kind=kind)

    @staticmethod
    def delivery_failed(channel: str) -> None:
        inc_counter("delivery_failures_total", channel=channel)

    @staticmethod
    def track_selection_time(category: str) -> Timer:
        return Timer("candidate_selection_seconds", category=category)
