"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Hold metrics
hold_requests = Counter(
    'hold_requests_total',
    'Hold creation requests',
    ['result']  # created, replayed, rejected
)

# State machine metrics
booking_transitions = Counter(
    'booking_transitions_total',
    'Booking state transition attempts',
    ['trigger', 'result']  # applied, noop, rejected
)

ledger_version_conflicts = Counter(
    'ledger_version_conflicts_total',
    'Compare-and-swap attempts lost to a concurrent writer'
)

# Callback authentication
signature_failures = Counter(
    'signature_failures_total',
    'Rejected payment signatures',
    ['source']  # verify, webhook
)

# Webhook metrics
webhook_events = Counter(
    'webhook_events_total',
    'Webhook events by type and processing result',
    ['event_type', 'result']  # recorded, duplicate, mismatch, applied, noop, rejected, ignored, failed
)

# Gateway metrics
gateway_requests = Counter(
    'gateway_requests_total',
    'Payment gateway calls',
    ['operation', 'result']  # success, rejected, malformed, unavailable
)

gateway_latency = Histogram(
    'gateway_request_latency_seconds',
    'Payment gateway call latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Reconciliation metrics
reconcile_sweeps = Counter(
    'reconcile_sweeps_total',
    'Reconciliation sweeps',
    ['result']  # completed, skipped
)

reconcile_bookings = Counter(
    'reconcile_bookings_total',
    'Bookings handled by reconciliation sweeps',
    ['outcome']  # expired, skipped, failed, flagged
)

reconcile_duration = Histogram(
    'reconcile_sweep_duration_seconds',
    'Reconciliation sweep duration',
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0]
)

bookings_needing_review = Gauge(
    'bookings_needing_review',
    'Bookings flagged for manual review in the last sweep'
)

# Redis metrics
redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection failures (sweep lock fails open)'
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_hold(result: str):
    """Record hold request. Result: created, replayed, rejected"""
    hold_requests.labels(result=result).inc()

def record_transition(trigger: str, result: str):
    booking_transitions.labels(trigger=trigger, result=result).inc()

def record_version_conflict():
    ledger_version_conflicts.inc()

def record_signature_failure(source: str):
    signature_failures.labels(source=source).inc()

def record_webhook(event_type: str, result: str):
    webhook_events.labels(event_type=event_type, result=result).inc()

def record_gateway_call(operation: str, result: str, seconds: float):
    gateway_requests.labels(operation=operation, result=result).inc()
    gateway_latency.labels(operation=operation).observe(seconds)

def record_reconcile_booking(outcome: str):
    reconcile_bookings.labels(outcome=outcome).inc()

def record_reconcile_sweep(result: str, seconds: float = 0.0):
    reconcile_sweeps.labels(result=result).inc()
    if result == "completed":
        reconcile_duration.observe(seconds)
