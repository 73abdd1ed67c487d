"""
Prometheus metrics for the webhook service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook gate outcome counter (result)
- Pipeline outcome counter (outcome)
- AI backend call counter (outcome) and latency histogram
- Outbound message counter (kind, result)
- Provider delivery status counter (status)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: processed, duplicate, in_progress, rate_limited, invalid_signature,
# validation_error, invalid_phone, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

pipeline_outcomes_total = Counter(
    "pipeline_outcomes_total",
    "Inbound message pipeline outcomes",
    labelnames=["outcome"]
)

# outcome: success, retry, failure
ai_backend_requests_total = Counter(
    "ai_backend_requests_total",
    "AI backend attempts by outcome",
    labelnames=["outcome"]
)

ai_backend_latency_seconds = Histogram(
    "ai_backend_latency_seconds",
    "AI backend attempt latency in seconds",
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

# kind: text, template; result: sent, failed
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound provider sends",
    labelnames=["kind", "result"]
)

delivery_status_total = Counter(
    "delivery_status_total",
    "Provider delivery status callbacks",
    labelnames=["status"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_pipeline_outcome(outcome: str) -> None:
    pipeline_outcomes_total.labels(outcome=outcome).inc()


def record_ai_attempt(outcome: str, latency_seconds: float) -> None:
    ai_backend_requests_total.labels(outcome=outcome).inc()
    ai_backend_latency_seconds.observe(latency_seconds)


def record_outbound(kind: str, result: str) -> None:
    outbound_messages_total.labels(kind=kind, result=result).inc()


def record_delivery_status(status: str) -> None:
    delivery_status_total.labels(status=status or "unknown").inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
