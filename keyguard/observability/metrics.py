"""
Metrics Collection with Prometheus.

Exposes access-decision and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from keyguard.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    STATE = "state"
    REASON = "reason"
    PLAN = "plan"
    ERROR_TYPE = "error_type"


class KeyguardMetrics:
    """
    Centralized metrics for the Keyguard API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Access decisions (rate by state/reason, duration)
    - Credential lifecycle (issued, revoked)
    - Abuse guard (blocks applied)
    - Audit log write failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "keyguard_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "keyguard_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "keyguard_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "keyguard_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Access Decision Metrics
        # ====================================================================
        self.access_decisions_total = Counter(
            "keyguard_access_decisions_total",
            "Total access decisions",
            [MetricLabels.STATE, MetricLabels.REASON],
        )

        self.access_decision_duration_seconds = Histogram(
            "keyguard_access_decision_duration_seconds",
            "Access decision duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        # ====================================================================
        # Credential Metrics
        # ====================================================================
        self.credentials_issued_total = Counter(
            "keyguard_credentials_issued_total",
            "Total credentials issued",
            [MetricLabels.PLAN],
        )

        self.credentials_revoked_total = Counter(
            "keyguard_credentials_revoked_total",
            "Total credential revocations",
        )

        # ====================================================================
        # Abuse Guard Metrics
        # ====================================================================
        self.origin_blocks_total = Counter(
            "keyguard_origin_blocks_total",
            "Total origin blocks applied",
            ["manual"],
        )

        # ====================================================================
        # Audit / Error Metrics
        # ====================================================================
        self.audit_write_failures_total = Counter(
            "keyguard_audit_write_failures_total",
            "Audit entries that could not be persisted",
        )

        self.errors_total = Counter(
            "keyguard_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_access_decision(self, state: str, reason: str, duration: float) -> None:
        """Record access decision metrics."""
        self.access_decisions_total.labels(state=state, reason=reason).inc()
        self.access_decision_duration_seconds.observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = KeyguardMetrics()
