"""Error taxonomy shared by the webhook and approval services."""


class DeployGateError(Exception):
    """Base class. ``status_code`` is the HTTP status a route maps it to."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    default_message = "Internal error"


# ---------------------------------------------------------------------------
# Inbound webhook routing
# ---------------------------------------------------------------------------

class MalformedPayload(DeployGateError):
    status_code = 400
    default_message = "Invalid JSON payload"


class InvalidSignature(DeployGateError):
    status_code = 400
    default_message = "Invalid signature"


class MissingFields(DeployGateError):
    status_code = 400
    default_message = "Missing required fields"

    def __init__(self, fields: list[str] | None = None):
        self.fields = fields or []
        message = self.default_message
        if self.fields:
            message = f"{message}: {', '.join(self.fields)}"
        super().__init__(message)


class UnknownEventType(DeployGateError):
    status_code = 400
    default_message = "Unknown event type"


# ---------------------------------------------------------------------------
# Outbound delivery
# ---------------------------------------------------------------------------

class DeliveryError(DeployGateError):
    status_code = 502
    default_message = "Webhook delivery failed"


class DeliveryTransportError(DeliveryError):
    """Network failure or timeout before a response arrived."""

    default_message = "Webhook transport error"


class DeliveryHTTPError(DeliveryError):
    """The endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = ""):
        self.response_status = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}")


# ---------------------------------------------------------------------------
# Registries and state machine
# ---------------------------------------------------------------------------

class NotFound(DeployGateError):
    status_code = 404
    default_message = "Not found"


class EndpointDisabled(DeployGateError):
    status_code = 409
    default_message = "Webhook not found or disabled"


class RequestNotPending(DeployGateError):
    status_code = 409
    default_message = "Approval request is no longer pending"
