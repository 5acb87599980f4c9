"""Prometheus metrics definitions for DeployGate."""

from prometheus_client import Counter, Histogram, Info

# ---------------------------------------------------------------------------
# HTTP layer
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "deploygate_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "deploygate_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------------------------------------------------------
# Outbound webhooks
# ---------------------------------------------------------------------------

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "deploygate_webhook_deliveries_total",
    "Total webhook delivery attempts",
    ["event_type", "success"],   # success: "true" | "false"
)

WEBHOOK_DURATION = Histogram(
    "deploygate_webhook_duration_seconds",
    "Webhook HTTP POST latency per attempt",
    ["event_type"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

WEBHOOK_RETRIES_SCHEDULED_TOTAL = Counter(
    "deploygate_webhook_retries_scheduled_total",
    "Webhook retries scheduled after a failed attempt",
    ["event_type"],
)

WEBHOOK_BROADCASTS_TOTAL = Counter(
    "deploygate_webhook_broadcasts_total",
    "Domain events fanned out to webhook endpoints",
    ["event_type"],
)

# ---------------------------------------------------------------------------
# Inbound webhooks
# ---------------------------------------------------------------------------

INBOUND_WEBHOOKS_TOTAL = Counter(
    "deploygate_inbound_webhooks_total",
    "Inbound webhook requests by event and outcome",
    ["event_type", "outcome"],   # outcome: "ok" or an error class name
)

# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

APPROVAL_TRANSITIONS_TOTAL = Counter(
    "deploygate_approval_transitions_total",
    "Approval request status transitions",
    ["status"],           # "pending" | "approved" | "rejected" | "expired"
)

APPROVAL_ACTIONS_TOTAL = Counter(
    "deploygate_approval_actions_total",
    "Approval actions recorded",
    ["action"],           # "approve" | "reject"
)

# ---------------------------------------------------------------------------
# Service info
# ---------------------------------------------------------------------------

SERVICE_INFO = Info(
    "deploygate_service",
    "DeployGate service metadata",
)
SERVICE_INFO.info({"version": "0.1.0"})
