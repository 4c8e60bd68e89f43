"""
Observability module - Logging, Metrics, and Tracing.
"""

from keyguard.observability.logging import log_context, setup_logging
from keyguard.observability.metrics import metrics
from keyguard.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
