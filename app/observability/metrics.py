"""
Metrics Collection with Prometheus.

Exposes booking, ledger and HTTP metrics for monitoring.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class BookingMetrics:
    """
    Centralized metrics for the booking engine.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Reservations and cancellations by outcome
    - Grant reversal cascades
    - Optimistic concurrency retries and exhaustion
    - Reconciliation divergences
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "booking_service",
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
            "booking_http_requests_total",
            "Total HTTP requests",
            ["endpoint", "method", "status_code"],
        )

        self.http_request_duration_seconds = Histogram(
            "booking_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["endpoint", "method"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "booking_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            ["endpoint", "method"],
        )

        # ====================================================================
        # Reservation Metrics
        # ====================================================================
        self.reservations_total = Counter(
            "booking_reservations_total",
            "Reservation attempts by outcome",
            ["outcome"],
        )

        self.cancellations_total = Counter(
            "booking_cancellations_total",
            "Cancellations by refund decision",
            ["refunded", "cascade"],
        )

        self.operation_duration_seconds = Histogram(
            "booking_operation_duration_seconds",
            "Booking engine transaction duration in seconds, retries included",
            ["operation"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )

        # ====================================================================
        # Grant Metrics
        # ====================================================================
        self.grants_created_total = Counter(
            "booking_grants_created_total",
            "Plan grants created",
            ["unlimited"],
        )

        self.grant_reversals_total = Counter(
            "booking_grant_reversals_total",
            "Grant reversal cascades processed",
            ["already_reversed"],
        )

        self.reversal_cancelled_bookings = Histogram(
            "booking_reversal_cancelled_bookings",
            "Bookings cancelled per grant reversal",
            buckets=(0, 1, 2, 5, 10, 25, 50),
        )

        # ====================================================================
        # Concurrency Metrics
        # ====================================================================
        self.conflict_retries_total = Counter(
            "booking_conflict_retries_total",
            "Transactions retried after a concurrent modification",
            ["operation"],
        )

        self.conflicts_exhausted_total = Counter(
            "booking_conflicts_exhausted_total",
            "Operations that gave up after exhausting retries",
            ["operation"],
        )

        # ====================================================================
        # Integrity Metrics
        # ====================================================================
        self.divergences_total = Counter(
            "booking_reconciliation_divergences_total",
            "Divergences detected by reconciliation",
            ["subject_type"],
        )

        self.errors_total = Counter(
            "booking_errors_total",
            "Total errors by type",
            ["error_type", "operation"],
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

    def record_reservation(self, outcome: str, duration: float) -> None:
        """Record a reservation attempt. outcome is "success" or an error kind."""
        self.reservations_total.labels(outcome=outcome).inc()
        self.operation_duration_seconds.labels(operation="reserve").observe(duration)

    def record_cancellation(self, refunded: bool, cascade: bool = False) -> None:
        """Record a booking cancellation."""
        self.cancellations_total.labels(refunded=str(refunded), cascade=str(cascade)).inc()

    def record_grant_created(self, unlimited: bool) -> None:
        """Record a new plan grant."""
        self.grants_created_total.labels(unlimited=str(unlimited)).inc()

    def record_reversal(self, already_reversed: bool, cancelled_bookings: int) -> None:
        """Record a grant reversal cascade."""
        self.grant_reversals_total.labels(already_reversed=str(already_reversed)).inc()
        if not already_reversed:
            self.reversal_cancelled_bookings.observe(cancelled_bookings)

    def record_retry(self, operation: str) -> None:
        """Record a transaction retry after a lost race."""
        self.conflict_retries_total.labels(operation=operation).inc()

    def record_conflict_exhausted(self, operation: str) -> None:
        """Record an operation that ran out of retries."""
        self.conflicts_exhausted_total.labels(operation=operation).inc()

    def record_divergence(self, subject_type: str) -> None:
        """Record a reconciliation divergence."""
        self.divergences_total.labels(subject_type=subject_type).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BookingMetrics()

