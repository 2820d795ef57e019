"""Prometheus metric definitions shared by the API and background workers."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook notifications by type and outcome",
    ["service", "event_type", "outcome"],
)
intents_routed_total = Counter(
    "intents_routed_total",
    "Purchase events classified by the use-case router",
    ["service", "intent", "fallback"],
)
licenses_provisioned_total = Counter(
    "licenses_provisioned_total",
    "Licenses created",
    ["service", "purchase_kind", "path"],
)
provisioning_latency_seconds = Histogram(
    "provisioning_latency_seconds",
    "Synchronous provisioning latency seconds",
    ["service", "intent"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
queue_items_total = Counter(
    "queue_items_total",
    "Provisioning queue item outcomes",
    ["service", "outcome"],
)
queue_pending_total = Gauge(
    "queue_pending_total",
    "Current count of provisioning queue items not yet terminal",
    ["service"],
)
queue_oldest_pending_age_seconds = Gauge(
    "queue_oldest_pending_age_seconds",
    "Age in seconds of the oldest non-terminal queue item",
    ["service"],
)
reconciliation_pending_total = Gauge(
    "reconciliation_pending_total",
    "Deferred reconciliation tasks not yet applied",
    ["service"],
)
refunds_total = Counter("refunds_total", "Automatic refunds issued", ["service", "outcome"])
rollbacks_total = Counter("rollbacks_total", "Saga compensations executed", ["service", "step", "outcome"])
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate deliveries answered from the idempotency store",
    ["service", "scope"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
