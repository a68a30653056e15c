"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Reservation metrics
reservation_attempts = Counter(
    'reservation_attempts_total',
    'Total reservation attempts',
    ['result']  # reserved, free, sold_out, already_reserved, unavailable, rolled_back
)

# Admission gate metrics
admission_requests = Counter(
    'admission_requests_total',
    'Total admission gate decisions',
    ['result']  # admitted, rejected
)

redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection errors'
)

redis_circuit_breaker_open = Gauge(
    'redis_circuit_breaker_open',
    'Redis admission gate state (1=failing open, 0=healthy)'
)

# Webhook metrics
webhook_events = Counter(
    'webhook_events_total',
    'Gateway webhook deliveries',
    ['name', 'outcome']  # outcome: applied, noop, unknown_reference, ignored
)

# Gateway metrics
gateway_requests = Counter(
    'gateway_requests_total',
    'Outbound payment gateway requests',
    ['operation', 'result']  # operation: token, create_payment, refund
)

gateway_latency = Histogram(
    'gateway_request_latency_seconds',
    'Outbound payment gateway request latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

token_fetches = Counter(
    'gateway_token_fetches_total',
    'Access token fetches (cache misses)'
)

# Refund metrics
refund_attempts = Counter(
    'refund_attempts_total',
    'Refund attempts against the gateway',
    ['result']  # succeeded, failed
)

# Notification metrics
notifications = Counter(
    'notifications_total',
    'Notification dispatch outcomes',
    ['type', 'result']  # result: sent, opted_out, no_email, failed
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_reservation(result: str):
    reservation_attempts.labels(result=result).inc()


def record_admission(admitted: bool):
    """Record admission gate decision."""
    result = "admitted" if admitted else "rejected"
    admission_requests.labels(result=result).inc()


def record_webhook(name: str, outcome: str):
    webhook_events.labels(name=name or "unknown", outcome=outcome).inc()


def record_gateway_request(operation: str, result: str, seconds: float):
    gateway_requests.labels(operation=operation, result=result).inc()
    gateway_latency.labels(operation=operation).observe(seconds)


def record_refund(succeeded: bool):
    refund_attempts.labels(result="succeeded" if succeeded else "failed").inc()


def record_notification(notification_type: str, result: str):
    notifications.labels(type=notification_type, result=result).inc()
