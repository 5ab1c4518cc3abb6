"""
Metrics Collection with Prometheus.

Exposes scanning, token and payment metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from sentinel.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    CONTENT_TYPE = "content_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class DashboardMetrics:
    """
    Centralized metrics for the dashboard API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Scans (rate by content type and outcome, upstream latency)
    - Tokens (consumed, added)
    - Payments (initializations, verifications)
    - Database operations and errors
    """

    def __init__(self) -> None:
        self.service_info = Info("sentinel_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # HTTP
        self.http_requests_total = Counter(
            "sentinel_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )
        self.http_request_duration_seconds = Histogram(
            "sentinel_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )
        self.http_requests_in_progress = Gauge(
            "sentinel_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # Scans
        self.scans_total = Counter(
            "sentinel_scans_total",
            "Total scans attempted",
            [MetricLabels.CONTENT_TYPE, MetricLabels.OUTCOME],
        )
        self.scan_upstream_duration_seconds = Histogram(
            "sentinel_scan_upstream_duration_seconds",
            "Remote scanning API latency in seconds",
            [MetricLabels.CONTENT_TYPE],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # Tokens
        self.tokens_consumed_total = Counter(
            "sentinel_tokens_consumed_total",
            "Tokens deducted for scans",
        )
        self.tokens_added_total = Counter(
            "sentinel_tokens_added_total",
            "Tokens added to profiles",
            ["source"],
        )

        # Payments
        self.payments_total = Counter(
            "sentinel_payments_total",
            "Payment gateway calls",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        # Database
        self.db_queries_total = Counter(
            "sentinel_db_queries_total",
            "Total database operations",
            [MetricLabels.OPERATION, "success"],
        )

        # Errors
        self.errors_total = Counter(
            "sentinel_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

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

    def record_scan(self, content_type: str, outcome: str, duration: float | None = None) -> None:
        """Record a scan attempt and, when known, the upstream latency."""
        self.scans_total.labels(content_type=content_type, outcome=outcome).inc()
        if duration is not None:
            self.scan_upstream_duration_seconds.labels(content_type=content_type).observe(duration)

    def record_tokens(self, delta: int, source: str = "adjustment") -> None:
        """Record a token balance change."""
        if delta < 0:
            self.tokens_consumed_total.inc(-delta)
        elif delta > 0:
            self.tokens_added_total.labels(source=source).inc(delta)

    def record_payment(self, operation: str, outcome: str) -> None:
        """Record a payment gateway call."""
        self.payments_total.labels(operation=operation, outcome=outcome).inc()

    def record_db_query(self, operation: str, success: bool) -> None:
        """Record database operation metrics."""
        self.db_queries_total.labels(operation=operation, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = DashboardMetrics()
