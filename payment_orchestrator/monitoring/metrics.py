"""
Prometheus metrics for the payment orchestrator.

Tracks:
- Confirmation and cancellation outcomes
- Gateway call counts, errors and latency
- Order-management backend sync results
- Reconciliation incidents (capture/reversal not recorded locally)
- Notification failures
- Outbox queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Saga outcome metrics
confirmation_outcomes_total = Counter(
    "confirmation_outcomes_total",
    "Payment confirmations by outcome",
    ["outcome"],
)

confirmation_duration_seconds = Histogram(
    "confirmation_duration_seconds",
    "Payment confirmation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

cancellation_outcomes_total = Counter(
    "cancellation_outcomes_total",
    "Order cancellations by outcome",
    ["outcome"],
)

payment_failures_recorded_total = Counter(
    "payment_failures_recorded_total",
    "Checkout failures recorded",
    ["applied"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # operation: confirm, cancel
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Secondary backend metrics
secondary_sync_total = Counter(
    "secondary_sync_total",
    "Order-management backend pushes by result",
    ["result"],  # ok, not_found, retryable_error
)

# Consistency metrics
reconciliation_incidents_total = Counter(
    "reconciliation_incidents_total",
    "Money moved at the gateway but the local record could not be updated",
    ["incident"],
)

notification_failures_total = Counter(
    "notification_failures_total",
    "Notifications that failed to dispatch",
    ["kind"],
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_confirmation(outcome: str, duration_seconds: float) -> None:
        """Record a confirmation result."""
        confirmation_outcomes_total.labels(outcome=outcome).inc()
        confirmation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_cancellation(outcome: str) -> None:
        """Record a cancellation result."""
        cancellation_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payment_failure(applied: bool) -> None:
        """Record a checkout failure report."""
        payment_failures_recorded_total.labels(applied=str(applied).lower()).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_secondary_sync(result: str) -> None:
        """Record an order-management backend push."""
        secondary_sync_total.labels(result=result).inc()

    @staticmethod
    def record_reconciliation_incident(incident: str) -> None:
        """Record a gateway/local divergence that needs an operator."""
        reconciliation_incidents_total.labels(incident=incident).inc()

    @staticmethod
    def record_notification_failure(kind: str) -> None:
        """Record a dropped notification."""
        notification_failures_total.labels(kind=kind).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        """Record outbox batch duration."""
        outbox_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
