"""
Prometheus metrics for forwarding engine monitoring.

Tracks:
- Payments created and terminal transitions by status
- Claim outcomes and transfer legs
- Hot cache lookups
- Settlement listener handles, reconnects and duplicates
- Sweeper results
- Ledger API calls and errors
- Webhook events and outbox depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payments_created_total = Counter(
    "payments_created_total",
    "Total number of pending payments created",
    ["display_currency"],
)

payment_amount_sats = Histogram(
    "payment_amount_sats",
    "Invoice totals in sats",
    buckets=(100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000, 10000000),
)

payment_terminal_transitions_total = Counter(
    "payment_terminal_transitions_total",
    "Total terminal status transitions",
    ["status"],
)

payment_claims_total = Counter(
    "payment_claims_total",
    "Total claim attempts",
    ["outcome"],  # claimed, already_claimed, not_found
)

# Forwarding metrics
forwarding_legs_total = Counter(
    "forwarding_legs_total",
    "Total transfer legs by kind and outcome",
    ["kind", "outcome"],  # kind: merchant, tip; outcome: succeeded, failed, skipped
)

forwarding_leg_attempts_total = Counter(
    "forwarding_leg_attempts_total",
    "Total transfer attempts including retries",
    ["kind", "status"],
)

forwarding_duration_seconds = Histogram(
    "forwarding_duration_seconds",
    "Time from claim to terminal transition",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# Cache metrics
payment_cache_lookups_total = Counter(
    "payment_cache_lookups_total",
    "Payment store reads by source",
    ["source"],  # redis, database, miss
)

payment_cache_errors_total = Counter(
    "payment_cache_errors_total",
    "Redis errors swallowed by the store",
    ["operation"],
)

# Listener metrics
listener_open_handles = Gauge(
    "listener_open_handles",
    "Number of open settlement subscriptions",
)

listener_reconnects_total = Counter(
    "listener_reconnects_total",
    "Total settlement subscription reconnect attempts",
)

listener_notifications_total = Counter(
    "listener_notifications_total",
    "Settlement notifications received",
    ["source", "status"],  # status: dispatched, duplicate, failed
)

# Sweeper metrics
sweeper_expired_total = Counter(
    "sweeper_expired_total",
    "Total pending records expired by the sweeper",
)

sweeper_exceptions_outstanding = Gauge(
    "sweeper_exceptions_outstanding",
    "completed_with_exceptions records older than the grace period",
)

sweeper_stale_processing = Gauge(
    "sweeper_stale_processing",
    "processing records older than the stuck threshold",
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Timestamp of last sweeper run",
)

# Ledger API metrics
ledger_api_requests_total = Counter(
    "ledger_api_requests_total",
    "Total ledger API requests",
    ["operation", "status"],
)

ledger_api_errors_total = Counter(
    "ledger_api_errors_total",
    "Total ledger API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

ledger_api_duration_seconds = Histogram(
    "ledger_api_duration_seconds",
    "Ledger API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

ledger_circuit_breaker_state = Gauge(
    "ledger_circuit_breaker_state",
    "Ledger circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, ignored
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
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
    def record_payment_created(display_currency: str, total_amount: int) -> None:
        """Record a pending payment."""
        payments_created_total.labels(display_currency=display_currency).inc()
        payment_amount_sats.observe(total_amount)

    @staticmethod
    def record_terminal_transition(status: str) -> None:
        """Record a terminal status transition."""
        payment_terminal_transitions_total.labels(status=status).inc()

    @staticmethod
    def record_claim(outcome: str) -> None:
        """Record a claim attempt outcome."""
        payment_claims_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_leg(kind: str, outcome: str) -> None:
        """Record the final outcome of a transfer leg."""
        forwarding_legs_total.labels(kind=kind, outcome=outcome).inc()

    @staticmethod
    def record_leg_attempt(kind: str, status: str) -> None:
        """Record a single transfer attempt."""
        forwarding_leg_attempts_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def record_forwarding_duration(duration_seconds: float) -> None:
        """Record claim-to-terminal duration."""
        forwarding_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_cache_lookup(source: str) -> None:
        """Record where a store read was served from."""
        payment_cache_lookups_total.labels(source=source).inc()

    @staticmethod
    def record_cache_error(operation: str) -> None:
        """Record a swallowed Redis error."""
        payment_cache_errors_total.labels(operation=operation).inc()

    @staticmethod
    def set_listener_handles(count: int) -> None:
        """Set number of open listener handles."""
        listener_open_handles.set(count)

    @staticmethod
    def record_listener_reconnect() -> None:
        """Record a listener reconnect attempt."""
        listener_reconnects_total.inc()

    @staticmethod
    def record_notification(source: str, status: str) -> None:
        """Record a settlement notification."""
        listener_notifications_total.labels(source=source, status=status).inc()

    @staticmethod
    def set_sweeper_metrics(expired: int, exceptions: int, stale_processing: int) -> None:
        """Set sweeper metrics."""
        sweeper_expired_total.inc(expired)
        sweeper_exceptions_outstanding.set(exceptions)
        sweeper_stale_processing.set(stale_processing)
        sweeper_last_run_timestamp.set(time.time())

    @staticmethod
    def record_ledger_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record ledger API call."""
        ledger_api_requests_total.labels(operation=operation, status=status).inc()
        ledger_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_ledger_api_error(error_type: str) -> None:
        """Record ledger API error."""
        ledger_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        ledger_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

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
