"""Prometheus metrics for the billing engine."""

from prometheus_client import Counter, Gauge, Histogram

# Request metrics
request_latency_seconds = Histogram(
    "propnova_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    ["endpoint", "method"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

request_total = Counter(
    "propnova_request_total",
    "Total number of HTTP requests",
    ["endpoint", "method", "status"],
)

active_requests = Gauge(
    "propnova_active_requests",
    "Number of active HTTP requests",
)

# Metering
quota_consume_total = Counter(
    "propnova_quota_consume_total",
    "Consumption attempts by resource, debit source and outcome",
    ["resource_type", "source", "outcome"],
)

# Payments
checkouts_total = Counter(
    "propnova_checkouts_total",
    "Checkout sessions initiated",
    ["kind"],
)

payment_confirmations_total = Counter(
    "propnova_payment_confirmations_total",
    "Inbound payment confirmations by session kind and outcome",
    ["kind", "outcome"],
)

subscription_transitions_total = Counter(
    "propnova_subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status"],
)

reconciliation_total = Counter(
    "propnova_reconciliation_total",
    "Activation reconciliation outcomes",
    ["outcome"],
)


def track_consume(resource_type: str, source: str, outcome: str) -> None:
    """Count one consumption attempt."""
    quota_consume_total.labels(
        resource_type=resource_type, source=source, outcome=outcome
    ).inc()


def track_confirmation(kind: str, outcome: str) -> None:
    """Count one processed payment confirmation."""
    payment_confirmations_total.labels(kind=kind, outcome=outcome).inc()


def track_transition(from_status: str, to_status: str) -> None:
    """Count one subscription status transition."""
    subscription_transitions_total.labels(
        from_status=from_status, to_status=to_status
    ).inc()


def track_reconciliation(outcome: str) -> None:
    """Count one finished reconciliation poll."""
    reconciliation_total.labels(outcome=outcome).inc()


def track_checkout(kind: str) -> None:
    """Count one checkout session handed to the gateway."""
    checkouts_total.labels(kind=kind).inc()
