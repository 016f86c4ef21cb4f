"""
Prometheus metrics for the messaging service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message send outcome counter and latency histogram
- Event publish and fanout delivery counters
- Active push session gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

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

# result: created, duplicate
messages_sent_total = Counter(
    "messages_sent_total",
    "Total accepted message sends",
    labelnames=["result"]
)

message_send_latency_seconds = Histogram(
    "message_send_latency_seconds",
    "Latency of the message write path in seconds",
)

events_published_total = Counter(
    "events_published_total",
    "Total events appended to the event log",
    labelnames=["type"]
)

# outcome: delivered, failed
fanout_deliveries_total = Counter(
    "fanout_deliveries_total",
    "Push attempts made by the fanout dispatcher",
    labelnames=["outcome"]
)

push_sessions_active = Gauge(
    "push_sessions_active",
    "Number of open push channels tracked by the session registry",
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


def record_send_outcome(result: str) -> None:
    """Record a message send outcome ("created" or "duplicate")."""
    messages_sent_total.labels(result=result).inc()


def record_event_published(event_type: str) -> None:
    events_published_total.labels(type=event_type).inc()


def record_delivery(outcome: str) -> None:
    fanout_deliveries_total.labels(outcome=outcome).inc()


def get_metrics(active_sessions: int) -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Args:
        active_sessions: Current session registry count, sampled at scrape time

    Returns:
        Metrics in Prometheus text format as bytes
    """
    push_sessions_active.set(active_sessions)
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
