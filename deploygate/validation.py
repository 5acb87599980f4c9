"""Input validation utilities."""

from urllib.parse import urlparse

WEBHOOK_EVENTS = frozenset({
    "approval.requested",
    "approval.approved",
    "approval.rejected",
    "approval.expired",
    "deployment.started",
    "deployment.completed",
    "deployment.failed",
})

# Sent only by direct test deliveries, never broadcast
TEST_EVENT = "webhook.test"

APPROVAL_ACTIONS = frozenset({"approve", "reject"})


def is_valid_webhook_url(url: str) -> bool:
    parsed = urlparse(url or "")
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_event_type(event: str) -> bool:
    return event in WEBHOOK_EVENTS


def validate_webhook_url(url: str) -> str:
    """Validate and return a webhook URL, raising ValueError if invalid."""
    if not is_valid_webhook_url(url):
        raise ValueError(f"Invalid webhook URL: {url!r}. Must be an absolute http(s) URL")
    return url


def validate_event_types(events: list[str]) -> list[str]:
    unknown = sorted(e for e in set(events) if not is_valid_event_type(e))
    if unknown:
        raise ValueError(
            f"Invalid event type(s): {', '.join(unknown)}. "
            f"Valid events: {', '.join(sorted(WEBHOOK_EVENTS))}"
        )
    return sorted(set(events))


def validate_approval_action(action: str) -> str:
    if not isinstance(action, str) or action not in APPROVAL_ACTIONS:
        raise ValueError(
            f"Invalid approval action: {action!r}. "
            f"Valid actions: {', '.join(sorted(APPROVAL_ACTIONS))}"
        )
    return action
