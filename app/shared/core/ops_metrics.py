"""
Operational metrics for the billing core.

Prometheus counters and histograms for webhook intake, lifecycle transitions,
gateway calls and refunds. Scraped from `/metrics`.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Webhook intake ---
WEBHOOK_EVENTS_TOTAL = Counter(
    "parley_billing_webhook_events_total",
    "Webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)

WEBHOOK_PROCESSING_DURATION = Histogram(
    "parley_billing_webhook_processing_seconds",
    "Time spent processing a webhook delivery end to end",
    ["event_type"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

WEBHOOK_RETRY_BACKLOG = Gauge(
    "parley_billing_webhook_retry_backlog",
    "Failed webhook events due for retry at the last sweep",
)

# --- Subscription lifecycle ---
SUBSCRIPTION_TRANSITIONS_TOTAL = Counter(
    "parley_billing_subscription_transitions_total",
    "Committed subscription lifecycle transitions",
    ["from_status", "to_status", "source"],
)

TENANT_LOCK_WAIT_SECONDS = Histogram(
    "parley_billing_tenant_lock_wait_seconds",
    "Time spent waiting for the per-tenant lifecycle lock",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1, 5, 30),
)

# --- Gateway ---
GATEWAY_REQUESTS_TOTAL = Counter(
    "parley_billing_gateway_requests_total",
    "Payment gateway requests by operation and result",
    ["operation", "result"],
)

GATEWAY_REQUEST_DURATION = Histogram(
    "parley_billing_gateway_request_seconds",
    "Payment gateway request latency",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20),
)

# --- Refunds ---
REFUNDS_TOTAL = Counter(
    "parley_billing_refunds_total",
    "Refund requests by final status and reason",
    ["status", "reason"],
)

# --- API ---
API_ERRORS_TOTAL = Counter(
    "parley_billing_api_errors_total",
    "Total number of API errors by status code and path",
    ["path", "method", "status_code"],
)
