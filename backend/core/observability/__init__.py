"""Minimal observability for logging, health checks and metrics.

Provides JSON logging, health/readiness endpoints and in-process metrics
for the periodic jobs and the ops API.
"""
import uuid
from typing import Optional

from . import logging as logging_module
from . import metrics


def generate_trace_id() -> str:
    """Generate a new trace ID for a job run or request."""
    return str(uuid.uuid4())


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Set or generate trace ID for the current thread."""
    if not trace_id:
        trace_id = generate_trace_id()
    logging_module.set_trace_id(trace_id)
    return trace_id


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "metrics",
    "generate_trace_id",
    "set_trace_id",
    "init_observability",
]
