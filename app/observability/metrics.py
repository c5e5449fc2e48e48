"""Authorization and audit metrics. Thread-safe, in-memory, Prometheus-style naming."""

import threading
from typing import Any, Optional

AUTHZ_DECISIONS = "authz_decisions_total"
AUTHZ_LATENCY = "authz_decision_latency_ms"
AUDIT_WRITE_FAILURES = "audit_write_failures_total"


class MetricsCollector:
    """
    In-memory registry of counters and latency histograms.
    Counters may carry one dimension: a role or a category (e.g. the verdict code).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, float] = {}
        self._counters_by_labels: dict[str, dict[str, float]] = {}
        self._histograms: dict[str, list[float]] = {}

    @staticmethod
    def _label_key(name: str, role: Optional[str], category: Optional[str]) -> Optional[str]:
        if role is not None:
            return f"{name}:role={role}"
        if category is not None:
            return f"{name}:category={category}"
        return None

    def increment(
        self,
        name: str,
        value: float = 1.0,
        *,
        role: Optional[str] = None,
        category: Optional[str] = None,
    ) -> None:
        with self._lock:
            key = self._label_key(name, role, category)
            if key is None:
                self._counters[name] = self._counters.get(name, 0) + value
            else:
                labelled = self._counters_by_labels.setdefault(name, {})
                labelled[key] = labelled.get(key, 0) + value

    def get_counter(
        self,
        name: str,
        *,
        role: Optional[str] = None,
        category: Optional[str] = None,
    ) -> float:
        with self._lock:
            key = self._label_key(name, role, category)
            if key is None:
                return self._counters.get(name, 0)
            return self._counters_by_labels.get(name, {}).get(key, 0)

    def observe_latency(self, name: str, latency_ms: float, *, route: Optional[str] = None) -> None:
        with self._lock:
            bucket = name if route is None else f"{name}:route={route}"
            self._histograms.setdefault(bucket, []).append(latency_ms)

    def export_metrics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "counters_by_labels": {k: dict(v) for k, v in self._counters_by_labels.items()},
                "histograms": {
                    k: {"count": len(v), "sum": sum(v), "max": max(v) if v else 0.0}
                    for k, v in self._histograms.items()
                },
            }

    def reset(self) -> None:
        """Reset all metrics (for tests)."""
        with self._lock:
            self._counters.clear()
            self._counters_by_labels.clear()
            self._histograms.clear()
