"""Inbound webhook routing: verify, validate, and dispatch by event type.

Every outcome is returned as an :class:`InboundResult`; errors are converted
at this boundary and never raised to the HTTP route. Validation happens
before any state is touched.
"""

import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from deploygate.errors import (
    DeployGateError,
    MalformedPayload,
    MissingFields,
    UnknownEventType,
)
from deploygate.metrics import INBOUND_WEBHOOKS_TOTAL
from deploygate.models.domain import ApprovalAction
from deploygate.services import signing
from deploygate.services.approvals import ApprovalStateMachine
from deploygate.services.webhooks import EventBroadcaster
from deploygate.validation import validate_approval_action

logger = logging.getLogger(__name__)

DeploymentStatusSink = Callable[[dict], Awaitable[None]]

INBOUND_EVENTS = frozenset({"approval.response", "deployment.status"})

# Deployment statuses relayed to outbound subscribers as deployment.<status>
RELAYED_DEPLOYMENT_STATUSES = frozenset({"started", "completed", "failed"})


@dataclass
class InboundResult:
    success: bool
    message: str
    status_code: int = 200

    def as_dict(self) -> dict:
        return {"success": self.success, "message": self.message}


class DeploymentStatusRelay:
    """Default deployment-status sink: log the update and fan it out."""

    def __init__(self, broadcaster: EventBroadcaster | None = None) -> None:
        self._broadcaster = broadcaster

    async def __call__(self, data: dict) -> None:
        status = str(data.get("status", "")).lower()
        logger.info(
            "Deployment status update: %s -> %s", data.get("deploymentId"), status,
        )
        if self._broadcaster is not None and status in RELAYED_DEPLOYMENT_STATUSES:
            self._broadcaster.publish(f"deployment.{status}", data)


class InboundWebhookRouter:
    def __init__(
        self,
        approvals: ApprovalStateMachine,
        secret: str | None = None,
        deployment_status: DeploymentStatusSink | None = None,
    ) -> None:
        self._approvals = approvals
        self._secret = secret or None
        self._deployment_status = deployment_status or DeploymentStatusRelay()

    async def handle_incoming(self, raw_body, signature: str | None = None) -> InboundResult:
        event = "unparsed"
        try:
            payload = self._parse(raw_body)
            event = payload.get("event")
            if not isinstance(event, str) or event not in INBOUND_EVENTS:
                event = "other"
            if self._secret:
                signing.require_valid_signature(
                    payload, signature, self._secret,
                    raw=raw_body if isinstance(raw_body, (bytes, str)) else None,
                )

            if event == "approval.response":
                result = await self._handle_approval_response(payload.get("data"))
            elif event == "deployment.status":
                result = await self._handle_deployment_status(payload.get("data"))
            else:
                raise UnknownEventType()
        except DeployGateError as exc:
            INBOUND_WEBHOOKS_TOTAL.labels(event_type=event, outcome=type(exc).__name__).inc()
            logger.warning(
                "Inbound webhook rejected: %s", exc.message,
                extra={"event_type": event, "status_code": exc.status_code},
            )
            return InboundResult(success=False, message=exc.message, status_code=exc.status_code)
        except Exception:
            INBOUND_WEBHOOKS_TOTAL.labels(event_type=event, outcome="error").inc()
            logger.exception("Inbound webhook failed", extra={"event_type": event})
            return InboundResult(success=False, message="Internal error", status_code=500)

        INBOUND_WEBHOOKS_TOTAL.labels(event_type=event, outcome="ok").inc()
        return result

    # -- Parsing ----------------------------------------------------------

    @staticmethod
    def _parse(raw_body) -> dict:
        if isinstance(raw_body, dict):
            return raw_body
        try:
            payload = json.loads(raw_body)
        except (TypeError, ValueError):
            raise MalformedPayload()
        if not isinstance(payload, dict):
            raise MalformedPayload("Payload must be a JSON object")
        return payload

    @staticmethod
    def _require(data, fields: tuple[str, ...]) -> dict:
        if not isinstance(data, dict):
            raise MissingFields(list(fields))
        missing = [f for f in fields if not data.get(f)]
        if missing:
            raise MissingFields(missing)
        return data

    # -- Handlers ---------------------------------------------------------

    async def _handle_approval_response(self, data) -> InboundResult:
        data = self._require(data, ("requestId", "action", "userId"))
        for field in ("userName", "userEmail", "comment"):
            if data.get(field) is not None and not isinstance(data[field], str):
                raise MalformedPayload(f"Field {field} must be a string")
        try:
            validate_approval_action(data["action"])
        except ValueError as e:
            raise MalformedPayload(str(e))

        action = ApprovalAction(
            user_id=str(data["userId"]),
            user_name=data.get("userName") or "External User",
            user_email=data.get("userEmail") or "external@system.com",
            action=data["action"],
            comment=data.get("comment") or "",
        )
        await self._approvals.record_action(str(data["requestId"]), action)
        return InboundResult(success=True, message="Approval response processed")

    async def _handle_deployment_status(self, data) -> InboundResult:
        data = self._require(data, ("deploymentId", "status"))
        await self._deployment_status(data)
        return InboundResult(success=True, message="Deployment status updated")
