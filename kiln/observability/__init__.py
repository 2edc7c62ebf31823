"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from kiln.observability.logging import bind_task_context, clear_task_context, setup_logging
from kiln.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from kiln.observability.tracing import get_tracer, setup_tracing, task_span

__all__ = [
    "setup_logging",
    "bind_task_context",
    "clear_task_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "task_span",
]
