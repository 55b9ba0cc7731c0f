"""
Metrics Collection with Prometheus.

Exposes billing-decision, ledger and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from credit_engine.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ROUTE = "route"
    REASON = "reason"
    RESULT = "result"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class EngineMetrics:
    """
    Centralized metrics for the credit engine.

    - HTTP requests (rate, duration)
    - Billing decisions (route, denial reason, latency)
    - Ledger writes (debits, credits, resets)
    - Reconciliation (outcomes, refunds, shortfalls)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "credit_engine_service",
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
            "credit_engine_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "credit_engine_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Billing Decision Metrics
        # ====================================================================
        self.decisions_total = Counter(
            "credit_engine_decisions_total",
            "Billing decisions by route and denial reason",
            [MetricLabels.ROUTE, MetricLabels.REASON],
        )

        self.decision_duration_seconds = Histogram(
            "credit_engine_decision_duration_seconds",
            "Billing decision duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        self.estimated_cost_credits = Histogram(
            "credit_engine_estimated_cost_credits",
            "Estimated cost of approved platform-credit requests",
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_writes_total = Counter(
            "credit_engine_ledger_writes_total",
            "Ledger write attempts",
            [MetricLabels.OPERATION, MetricLabels.RESULT],
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "credit_engine_reconciliations_total",
            "Reconciled requests by route and outcome",
            [MetricLabels.ROUTE, MetricLabels.OUTCOME],
        )

        self.reconciliation_refund_credits = Counter(
            "credit_engine_reconciliation_refund_credits_total",
            "Credits refunded after over-estimates and cancellations",
        )

        self.reconciliation_shortfall_credits = Counter(
            "credit_engine_reconciliation_shortfall_credits_total",
            "Credits that could not be collected after under-estimates",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "credit_engine_errors_total",
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

    def record_decision(
        self, route: str, reason: str | None, duration: float, estimated_cost: int = 0
    ) -> None:
        """Record billing decision metrics."""
        self.decisions_total.labels(route=route, reason=reason or "approved").inc()
        self.decision_duration_seconds.observe(duration)
        if estimated_cost > 0:
            self.estimated_cost_credits.observe(estimated_cost)

    def record_ledger_write(self, operation: str, result: str) -> None:
        """Record a ledger write attempt."""
        self.ledger_writes_total.labels(operation=operation, result=result).inc()

    def record_reconciliation(
        self, route: str, outcome: str, refunded: int = 0, shortfall: int = 0
    ) -> None:
        """Record reconciliation metrics."""
        self.reconciliations_total.labels(route=route, outcome=outcome).inc()
        if refunded > 0:
            self.reconciliation_refund_credits.inc(refunded)
        if shortfall > 0:
            self.reconciliation_shortfall_credits.inc(shortfall)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EngineMetrics()
