"""
Prometheus metrics for the billing back office.

Tracks:
- Reconciliation runs, item outcomes and open discrepancies
- Renewal attempts and subscription lifecycle transitions
- Webhook events by provider
- Gateway calls, errors and circuit breaker state
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Total reconciliation runs",
    ["status"],  # success, partial, failed, dry_run
)

reconciliation_items_total = Counter(
    "reconciliation_items_total",
    "Reconciliation items written, by outcome",
    ["status"],
)

reconciliation_discrepancy_amount = Gauge(
    "reconciliation_discrepancy_amount",
    "Absolute app vs gateway amount difference of the last run",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

discrepancies_resolved_total = Counter(
    "discrepancies_resolved_total",
    "Discrepancy items closed by operators",
    ["action"],
)

# Renewal and lifecycle metrics
renewal_attempts_total = Counter(
    "renewal_attempts_total",
    "Auto-renewal charge attempts",
    ["outcome", "attempt_type"],  # outcome: succeeded, retry_scheduled, failed
)

subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Subscription lifecycle transitions",
    ["transition"],  # grace_period, downgraded, suspended, renewed
)

renewal_reminders_sent_total = Counter(
    "renewal_reminders_sent_total",
    "Renewal reminders handed to the outbox",
    ["reminder_type"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["provider"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "status"],  # processed, failed, ignored, duplicate
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["gateway", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["gateway", "error_type"],  # transient, permanent, not_configured
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
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


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_reconciliation_run(
        status: str, item_counts: dict[str, int], discrepancy_amount: float, duration_seconds: float
    ) -> None:
        """Record a completed (or failed) reconciliation run."""
        reconciliation_runs_total.labels(status=status).inc()
        for item_status, count in item_counts.items():
            if count:
                reconciliation_items_total.labels(status=item_status).inc(count)
        reconciliation_discrepancy_amount.set(discrepancy_amount)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def record_discrepancy_resolved(action: str) -> None:
        """Record an operator closing a discrepancy."""
        discrepancies_resolved_total.labels(action=action).inc()

    @staticmethod
    def record_renewal_attempt(outcome: str, attempt_type: str) -> None:
        """Record an auto-renewal attempt."""
        renewal_attempts_total.labels(outcome=outcome, attempt_type=attempt_type).inc()

    @staticmethod
    def record_subscription_transition(transition: str) -> None:
        """Record a subscription lifecycle transition."""
        subscription_transitions_total.labels(transition=transition).inc()

    @staticmethod
    def record_reminder_sent(reminder_type: str) -> None:
        """Record a renewal reminder handed off for delivery."""
        renewal_reminders_sent_total.labels(reminder_type=reminder_type).inc()

    @staticmethod
    def record_webhook_event(provider: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider).inc()
        webhook_events_processed_total.labels(provider=provider, status=status).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a payment gateway call."""
        gateway_requests_total.labels(gateway=gateway, operation=operation, status=status).inc()
        gateway_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(gateway: str, error_type: str) -> None:
        """Record a payment gateway error."""
        gateway_errors_total.labels(gateway=gateway, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
