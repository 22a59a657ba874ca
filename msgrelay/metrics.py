"""
Prometheus metrics for the delivery pipeline.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook event outcome counter (provider, result)
- Send outcome counter (status, reason)
- Delivery / read latency histograms fed by inbound callbacks
- Orphan reconciliation counter

Metrics are stored in-memory using prometheus-client.
"""

from typing import Optional

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# result: processed, ignored, stored_orphan, duplicate, rejected
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound delivery callbacks by outcome",
    labelnames=["provider", "result"]
)

# status: already_sent, skipped, sent, failed
send_outcomes_total = Counter(
    "send_outcomes_total",
    "Send attempts by outcome",
    labelnames=["status", "reason"]
)

# Seconds from provider acceptance to handset delivery
delivery_latency_seconds = Histogram(
    "delivery_latency_seconds",
    "Seconds between sent and delivered",
    buckets=(1, 5, 15, 30, 60, 300, 900, 3600, 21600, 86400),
)

read_latency_seconds = Histogram(
    "read_latency_seconds",
    "Seconds between delivered and read",
    buckets=(5, 30, 60, 300, 900, 3600, 21600, 86400, 604800),
)

orphans_reconciled_total = Counter(
    "orphans_reconciled_total",
    "Orphan delivery events linked to a message record by the sweep",
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/messages/"):
        normalized_path = "/messages/{key}/events" if normalized_path.endswith("/events") else "/messages/{key}"
    elif normalized_path.startswith("/tenants/"):
        normalized_path = "/tenants/{tenant_id}/stats"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(provider: str, result: str) -> None:
    webhook_events_total.labels(provider=provider, result=result).inc()


def record_send_outcome(status: str, reason: Optional[str]) -> None:
    send_outcomes_total.labels(status=status, reason=reason or "none").inc()


def observe_delivery_latency(seconds: Optional[float]) -> None:
    if seconds is not None and seconds >= 0:
        delivery_latency_seconds.observe(seconds)


def observe_read_latency(seconds: Optional[float]) -> None:
    if seconds is not None and seconds >= 0:
        read_latency_seconds.observe(seconds)


def record_orphans_reconciled(count: int) -> None:
    if count:
        orphans_reconciled_total.inc(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
