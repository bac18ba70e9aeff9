"""
Prometheus metrics for the chat API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat operation counter (room_kind, operation, result)
- Scheduled posts published counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Chat operation outcomes
# operation: post, list, summary, delete, stats
# result: ok, validation_error, forbidden, not_found, timeout, storage_error, ...
chat_operations_total = Counter(
    "chat_operations_total",
    "Total chat operations by outcome",
    labelnames=["room_kind", "operation", "result"]
)

scheduled_posts_published_total = Counter(
    "scheduled_posts_published_total",
    "Total scheduled posts promoted to published"
)

# Request latency histogram in seconds
# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (e.g. /chapters/{room_id}/messages) or raw path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
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


def record_chat_operation(room_kind: str, operation: str, result: str) -> None:
    """Record the outcome of one chat operation."""
    chat_operations_total.labels(
        room_kind=room_kind,
        operation=operation,
        result=result
    ).inc()


def record_scheduled_posts_published(count: int) -> None:
    scheduled_posts_published_total.inc(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
