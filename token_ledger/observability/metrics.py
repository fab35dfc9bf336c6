"""
Metrics Collection with Prometheus.

Exposes ledger and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from token_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    POOL = "pool"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the token ledger.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Deductions (outcome, tokens per pool, duration)
    - Credits (pool, tokens)
    - Daily refreshes (outcome)
    - Premium resolution (cache hits, source, flag repairs)
    - Errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("ledger_service", "Service information")
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Deduction Metrics
        # ====================================================================
        self.deductions_total = Counter(
            "ledger_deductions_total",
            "Total deduction attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.tokens_deducted_total = Counter(
            "ledger_tokens_deducted_total",
            "Tokens deducted, by pool",
            [MetricLabels.POOL],
        )

        self.deduction_duration_seconds = Histogram(
            "ledger_deduction_duration_seconds",
            "Deduction duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.tokens_credited_total = Counter(
            "ledger_tokens_credited_total",
            "Tokens credited, by pool",
            [MetricLabels.POOL],
        )

        # ====================================================================
        # Daily Refresh Metrics
        # ====================================================================
        self.daily_refreshes_total = Counter(
            "ledger_daily_refreshes_total",
            "Daily refresh checks by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Premium Resolution Metrics
        # ====================================================================
        self.premium_resolutions_total = Counter(
            "ledger_premium_resolutions_total",
            "Premium status resolutions by source",
            ["source", "is_premium"],
        )

        self.premium_cache_hits_total = Counter(
            "ledger_premium_cache_hits_total",
            "Premium status cache hits",
        )

        self.premium_flag_repairs_total = Counter(
            "ledger_premium_flag_repairs_total",
            "Self-healing flag write-backs by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
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

    def record_deduction(
        self,
        outcome: str,
        from_paid: int,
        from_free: int,
        duration: float,
    ) -> None:
        """Record a deduction attempt."""
        self.deductions_total.labels(outcome=outcome).inc()
        if from_paid:
            self.tokens_deducted_total.labels(pool="paid").inc(from_paid)
        if from_free:
            self.tokens_deducted_total.labels(pool="free").inc(from_free)
        self.deduction_duration_seconds.observe(duration)

    def record_credit(self, pool: str, tokens: int) -> None:
        """Record tokens credited to a pool."""
        self.tokens_credited_total.labels(pool=pool).inc(tokens)

    def record_refresh(self, outcome: str, count: int = 1) -> None:
        """Record daily refresh checks (refreshed, not_due, skipped, failed)."""
        self.daily_refreshes_total.labels(outcome=outcome).inc(count)

    def record_premium_resolution(self, source: str, is_premium: bool) -> None:
        """Record a premium status computed from the store or a fallback."""
        self.premium_resolutions_total.labels(source=source, is_premium=str(is_premium)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
