"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from bitindie.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ENTRY_TYPE = "entry_type"
    ERROR_TYPE = "error_type"


class MarketplaceMetrics:
    """
    Centralized metrics for the BitIndie purchase API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Purchases and payment notifications
    - Ledger appends (including dedupe hits)
    - Guest claims
    - Payout webhooks and their anomalies
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "bitindie_service",
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
            "bitindie_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "bitindie_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "bitindie_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.purchases_created_total = Counter(
            "bitindie_purchases_created_total",
            "Total purchases created at checkout",
            ["guest"],
        )

        self.purchase_amount_msat = Histogram(
            "bitindie_purchase_amount_msat",
            "Purchase amounts in millisatoshis",
            buckets=(1_000, 10_000, 100_000, 1_000_000, 10_000_000, 100_000_000, 1_000_000_000),
        )

        self.purchase_payments_total = Counter(
            "bitindie_purchase_payments_total",
            "Payment notifications by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_entries_total = Counter(
            "bitindie_ledger_entries_total",
            "Ledger appends by type",
            [MetricLabels.ENTRY_TYPE, "deduplicated"],
        )

        # ====================================================================
        # Claim Metrics
        # ====================================================================
        self.claims_total = Counter(
            "bitindie_claims_total",
            "Guest receipt claims by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Payout Webhook Metrics
        # ====================================================================
        self.payout_webhooks_total = Counter(
            "bitindie_payout_webhooks_total",
            "Payout confirmation webhooks by outcome",
            [MetricLabels.OUTCOME],
        )

        self.payout_webhook_anomalies_total = Counter(
            "bitindie_payout_webhook_anomalies_total",
            "Payout webhook anomalies by kind",
            ["kind"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "bitindie_errors_total",
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

    def record_purchase_created(self, guest: bool, amount_msat: int) -> None:
        """Record checkout metrics."""
        self.purchases_created_total.labels(guest=str(guest)).inc()
        self.purchase_amount_msat.observe(amount_msat)

    def record_payment(self, outcome: str) -> None:
        """Record a payment notification outcome."""
        self.purchase_payments_total.labels(outcome=outcome).inc()

    def record_ledger_entry(self, entry_type: str, deduplicated: bool) -> None:
        """Record a ledger append."""
        self.ledger_entries_total.labels(
            entry_type=entry_type, deduplicated=str(deduplicated)
        ).inc()

    def record_claim(self, outcome: str) -> None:
        """Record a claim outcome."""
        self.claims_total.labels(outcome=outcome).inc()

    def record_payout_webhook(self, outcome: str) -> None:
        """Record a payout webhook outcome."""
        self.payout_webhooks_total.labels(outcome=outcome).inc()

    def record_webhook_anomaly(self, kind: str) -> None:
        """Record a payout webhook anomaly."""
        self.payout_webhook_anomalies_total.labels(kind=kind).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MarketplaceMetrics()
