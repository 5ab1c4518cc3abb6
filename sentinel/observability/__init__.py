"""
Observability module - Logging, Metrics, and Tracing.
"""

from sentinel.observability.logging import get_logger, log_context, setup_logging
from sentinel.observability.metrics import metrics
from sentinel.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
