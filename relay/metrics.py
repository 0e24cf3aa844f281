"""
Prometheus metrics for the chat gateway.

This module provides:
- HTTP request counter and latency histogram (method, path)
- Chat submission outcome counter (result)
- Broadcast event counter (event)
- Replayed / paginated message counters
- Live WebSocket connection gauge (per worker)

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

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, error, invalid
chat_submissions_total = Counter(
    "chat_submissions_total",
    "Total chat message submission outcomes",
    labelnames=["result"]
)

broadcast_events_total = Counter(
    "broadcast_events_total",
    "Events published on the broadcast bus by this worker",
    labelnames=["event"]
)

recovered_messages_total = Counter(
    "recovered_messages_total",
    "Messages replayed to reconnecting clients"
)

# result: ok, empty, error
history_requests_total = Counter(
    "history_requests_total",
    "History page requests by outcome",
    labelnames=["result"]
)

ws_connections = Gauge(
    "ws_connections",
    "Live WebSocket connections on this worker"
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


def record_submission_outcome(result: str) -> None:
    """
    Record a chat submission outcome.

    Args:
        result: One of "created", "duplicate", "error", "invalid"
    """
    chat_submissions_total.labels(result=result).inc()


def record_broadcast(event: str) -> None:
    broadcast_events_total.labels(event=event).inc()


def record_recovered(count: int) -> None:
    if count:
        recovered_messages_total.inc(count)


def record_history_request(result: str) -> None:
    history_requests_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
