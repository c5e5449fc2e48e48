"""Observability layer: in-process authorization and audit metrics."""

from app.observability.metrics import MetricsCollector

__all__ = [
    "MetricsCollector",
]
