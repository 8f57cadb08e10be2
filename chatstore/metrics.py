"""
Prometheus metrics for the conversation store.

This module provides:
- Store operation counter (operation, result)
- Snapshot notification counter
- HTTP request counter (method, path, status) for the local adapter
- Request latency histogram (method, path)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# Write API outcomes
# result: ok, not_found, invalid_argument, storage_failure
store_operations_total = Counter(
    "store_operations_total",
    "Total store write operations by outcome",
    labelnames=["operation", "result"]
)

# Snapshot callbacks that completed without raising
snapshot_notifications_total = Counter(
    "snapshot_notifications_total",
    "Total snapshot deliveries to subscribers"
)

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_store_operation(operation: str, result: str) -> None:
    """
    Record the outcome of a store write operation.

    Args:
        operation: Write API method name (e.g. "send_message")
        result: One of ok, not_found, invalid_argument, storage_failure
    """
    store_operations_total.labels(operation=operation, result=result).inc()


def record_notification() -> None:
    snapshot_notifications_total.inc()


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, so ids do not become label values
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


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
