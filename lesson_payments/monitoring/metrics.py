"""
Prometheus metrics for purchase reconciliation monitoring.

Tracks:
- Gateway call counts, latency and error types
- Gateway circuit breaker state
- Purchase state transitions
- Ledger write retries after a remote money movement
- Escalations handed to manual reconciliation
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # operation: create_order, capture_order, refund_capture, ...
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

# Purchase lifecycle metrics
purchase_transitions_total = Counter(
    "purchase_transitions_total",
    "Ledger state transitions",
    ["transition"],  # created, completed, cancelled, refunded, completed_repeat, ...
)

purchase_amount_cents = Histogram(
    "purchase_amount_cents",
    "Purchase amounts in minor currency units",
    buckets=(100, 250, 500, 1000, 2500, 5000, 10000, 25000, 50000),
)

ledger_write_retries_total = Counter(
    "ledger_write_retries_total",
    "Ledger write attempts retried after a remote money movement",
    ["operation"],
)

purchase_escalations_total = Counter(
    "purchase_escalations_total",
    "Purchases escalated to manual reconciliation",
    ["kind"],  # capture, refund
)

escalation_replays_total = Counter(
    "escalation_replays_total",
    "Escalations replayed by an operator",
    ["outcome"],  # resolved, unresolved
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last escalation replay",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_transition(transition: str, amount_cents: int = 0) -> None:
        """Record a ledger transition."""
        purchase_transitions_total.labels(transition=transition).inc()
        if amount_cents > 0:
            purchase_amount_cents.observe(amount_cents)

    @staticmethod
    def record_ledger_retry(operation: str) -> None:
        """Record a retried ledger write."""
        ledger_write_retries_total.labels(operation=operation).inc()

    @staticmethod
    def record_escalation(kind: str) -> None:
        """Record an escalation."""
        purchase_escalations_total.labels(kind=kind).inc()

    @staticmethod
    def record_replay(resolved: int, unresolved: int) -> None:
        """Record the outcome of an escalation replay."""
        escalation_replays_total.labels(outcome="resolved").inc(resolved)
        escalation_replays_total.labels(outcome="unresolved").inc(unresolved)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
