"""
Prometheus metrics for the bridge API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Ingestion outcome counter (endpoint, result)
- Outbound claim counter (result)
- Fan-out notification counter (result)
- Live real-time sessions gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# endpoint: web_send, bot_reply, channel_inbound
# result: created, validation_error, identity_not_found, invalid_signature, conflict
ingest_requests_total = Counter(
    "ingest_requests_total",
    "Message ingestion outcomes",
    labelnames=["endpoint", "result"]
)

# result: claimed, already_claimed, not_found, empty
outbound_claims_total = Counter(
    "outbound_claims_total",
    "Outbound claim outcomes",
    labelnames=["result"]
)

# result: delivered, undelivered, error
fanout_notifications_total = Counter(
    "fanout_notifications_total",
    "Real-time notification outcomes",
    labelnames=["result"]
)

live_sessions = Gauge(
    "live_sessions",
    "Real-time sessions currently joined to a user room"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (bounded label set), not the raw request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_ingest_outcome(endpoint: str, result: str) -> None:
    ingest_requests_total.labels(endpoint=endpoint, result=result).inc()


def record_claim_outcome(result: str, count: int = 1) -> None:
    outbound_claims_total.labels(result=result).inc(count)


def record_fanout_outcome(result: str) -> None:
    fanout_notifications_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
