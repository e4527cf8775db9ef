"""
Observability module - Logging, Metrics, and Tracing.
"""

from bitindie.observability.logging import get_logger, log_context, setup_logging
from bitindie.observability.metrics import metrics
from bitindie.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
