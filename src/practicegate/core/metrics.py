"""Prometheus metrics for monitoring PracticeGate."""

from prometheus_client import Counter, Gauge, Histogram

# Request metrics
request_latency_seconds = Histogram(
    "practicegate_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    ["endpoint", "method"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

request_total = Counter(
    "practicegate_request_total",
    "Total number of HTTP requests",
    ["endpoint", "method", "status"],
)

active_requests = Gauge(
    "practicegate_active_requests",
    "Number of active HTTP requests",
)

# Entitlement metrics
usage_attempts_total = Counter(
    "practicegate_usage_attempts_total",
    "Metered usage attempts by outcome",
    ["action_kind", "outcome"],
)

# Billing metrics
reconcile_events_total = Counter(
    "practicegate_reconcile_events_total",
    "Provider subscription events by reconciliation outcome",
    ["outcome"],
)

billing_provider_failures_total = Counter(
    "practicegate_billing_provider_failures_total",
    "Billing provider calls that failed after retries",
    ["operation"],
)

# Export metrics
export_jobs_total = Counter(
    "practicegate_export_jobs_total",
    "Export job lifecycle events",
    ["event"],
)


def track_usage_attempt(action_kind: str, outcome: str) -> None:
    """Track a usage attempt.

    Args:
        action_kind: Metered action (e.g., 'conversation')
        outcome: 'allowed', 'quota_exceeded' or 'subscription_inactive'
    """
    usage_attempts_total.labels(action_kind=action_kind, outcome=outcome).inc()


def track_reconcile(outcome: str) -> None:
    reconcile_events_total.labels(outcome=outcome).inc()


def track_provider_failure(operation: str) -> None:
    billing_provider_failures_total.labels(operation=operation).inc()


def track_export_event(event: str) -> None:
    """Track an export lifecycle event ('requested', 'claimed', 'completed', 'failed')."""
    export_jobs_total.labels(event=event).inc()
