"""
Prometheus metrics for deposit gateway monitoring.

Tracks:
- Deposit requests by flow and outcome
- Deposit amounts
- FedaPay API calls, errors and latency
- Reconciliation attempts by entry point and outcome
- Balance credits
- Webhook events
- Pending sweeper runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Deposit metrics
deposit_requests_total = Counter(
    "deposit_requests_total",
    "Total number of deposit requests",
    ["flow", "outcome"],  # flow: manual, automatic
)

deposit_processing_duration_seconds = Histogram(
    "deposit_processing_duration_seconds",
    "Deposit creation duration in seconds",
    ["flow"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0),
)

deposit_amount = Histogram(
    "deposit_amount",
    "Requested deposit amounts in the smallest currency unit",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# FedaPay API metrics
processor_api_requests_total = Counter(
    "processor_api_requests_total",
    "Total FedaPay API requests",
    ["operation", "status"],  # status: success, error
)

processor_api_errors_total = Counter(
    "processor_api_errors_total",
    "Total FedaPay API errors",
    ["error_type"],  # rejected, invalid_response, unavailable
)

processor_api_duration_seconds = Histogram(
    "processor_api_duration_seconds",
    "FedaPay API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

processor_circuit_breaker_state = Gauge(
    "processor_circuit_breaker_state",
    "FedaPay circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
reconciliation_attempts_total = Counter(
    "reconciliation_attempts_total",
    "Reconciliation attempts",
    ["source", "outcome"],  # outcome: applied, noop, pending, not_found
)

balance_credits_total = Counter(
    "balance_credits_total",
    "Balance credits applied for completed deposits",
)

balance_credited_amount_total = Counter(
    "balance_credited_amount_total",
    "Total amount credited to user balances",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, ignored, unmatched, rejected, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Sweeper metrics
sweeper_refreshed_total = Counter(
    "sweeper_refreshed_total",
    "Pending deposits refreshed by the sweeper",
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Timestamp of last pending sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_deposit_request(flow: str, outcome: str, amount: int) -> None:
        """Record a deposit request."""
        deposit_requests_total.labels(flow=flow, outcome=outcome).inc()
        deposit_amount.observe(amount)

    @staticmethod
    def record_deposit_duration(flow: str, duration_seconds: float) -> None:
        """Record deposit creation duration."""
        deposit_processing_duration_seconds.labels(flow=flow).observe(duration_seconds)

    @staticmethod
    def record_processor_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record FedaPay API call."""
        processor_api_requests_total.labels(operation=operation, status=status).inc()
        processor_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_processor_error(error_type: str) -> None:
        """Record FedaPay API error."""
        processor_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        processor_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_reconciliation(source: str, outcome: str) -> None:
        reconciliation_attempts_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_balance_credit(amount: int) -> None:
        balance_credits_total.inc()
        balance_credited_amount_total.inc(amount)

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_sweep(refreshed: int) -> None:
        """Record a pending sweep run."""
        sweeper_refreshed_total.inc(refreshed)
        sweeper_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
