"""
Observability module - Logging, Metrics, and Tracing.
"""

from purchase_helper.observability.logging import get_logger, log_context, setup_logging
from purchase_helper.observability.metrics import metrics, track_operation
from purchase_helper.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "track_operation",
    "setup_tracing",
    "trace_operation",
]
