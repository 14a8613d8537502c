"""
Prometheus metrics for the message log API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Ingestion outcome counter (result)
- Realtime event counter (event) and connected viewer gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


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

# Ingestion outcome counter, one increment per message or status event
# result: created, duplicate, status_updated, status_ignored, malformed, invalid
ingestion_events_total = Counter(
    "ingestion_events_total",
    "Total webhook events processed by outcome",
    labelnames=["result"]
)

# Realtime events published, and how many viewer deliveries they produced
realtime_events_total = Counter(
    "realtime_events_total",
    "Total realtime events published",
    labelnames=["event"]
)
realtime_deliveries_total = Counter(
    "realtime_deliveries_total",
    "Total realtime event deliveries to viewers",
    labelnames=["event"]
)

realtime_connected_viewers = Gauge(
    "realtime_connected_viewers",
    "Currently connected realtime viewers"
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


def record_ingestion_outcome(result: str) -> None:
    """
    Record a webhook event outcome.

    Args:
        result: Processing result - one of:
            - "created": New message stored
            - "duplicate": Message already existed (idempotent)
            - "status_updated": Status moved forward
            - "status_ignored": No matching message, or not a forward transition
            - "malformed": Payload shape violation
            - "invalid": Message failed required-field validation
    """
    ingestion_events_total.labels(result=result).inc()


def record_realtime_event(event: str, deliveries: int) -> None:
    realtime_events_total.labels(event=event).inc()
    realtime_deliveries_total.labels(event=event).inc(deliveries)


def set_connected_viewers(count: int) -> None:
    realtime_connected_viewers.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
