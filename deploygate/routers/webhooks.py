"""Outbound webhook endpoint management, delivery logs, and manual broadcast."""

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from deploygate.dependencies import Services, get_services
from deploygate.errors import DeployGateError
from deploygate.models.domain import (
    RetryPolicy,
    WebhookAuth,
    WebhookEndpoint,
    WebhookEndpointPatch,
)
from deploygate.services.webhooks import remove_endpoint, send_test_webhook, update_endpoint
from deploygate.validation import WEBHOOK_EVENTS, is_valid_event_type

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


class CreateWebhookRequest(BaseModel):
    name: str
    url: str
    events: list[str] = Field(default_factory=list)
    is_enabled: bool = True
    authentication: WebhookAuth = Field(default_factory=WebhookAuth)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout: int = Field(default=30000, gt=0)
    secret: str | None = None


class BroadcastRequest(BaseModel):
    event: str
    data: Any = None


@router.get("")
async def list_webhooks(services: Services = Depends(get_services)):
    return [e.public_view() for e in services.webhooks.list_endpoints()]


@router.post("", status_code=201)
async def create_webhook(req: CreateWebhookRequest, services: Services = Depends(get_services)):
    """Register a new outbound webhook endpoint."""
    try:
        endpoint = await services.webhooks.add(WebhookEndpoint(**req.model_dump()))
    except ValueError as e:
        raise HTTPException(400, str(e))
    logger.info("Webhook %s registered for %s", endpoint.id, ", ".join(endpoint.events))
    return endpoint.public_view()


# Static paths are declared before /{webhook_id} so they are not shadowed

@router.get("/logs")
async def list_delivery_logs(
    event_type: str | None = Query(default=None),
    success: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    """Delivery attempts across all endpoints, newest first."""
    logs = services.webhooks.list_logs(event=event_type, success=success, limit=limit)
    return [log.model_dump(mode="json") for log in logs]


@router.delete("/logs")
async def clear_delivery_logs(
    webhook_id: str | None = Query(default=None),
    services: Services = Depends(get_services),
):
    removed = await services.webhooks.clear_logs(webhook_id)
    return {"removed": removed}


@router.post("/broadcast")
async def broadcast_event(req: BroadcastRequest, services: Services = Depends(get_services)):
    """Fan an event out to every subscribed endpoint and wait for first attempts."""
    if not is_valid_event_type(req.event):
        raise HTTPException(
            400, f"Invalid event type: {req.event}. Valid events: {', '.join(sorted(WEBHOOK_EVENTS))}"
        )
    result = await services.broadcaster.broadcast(req.event, req.data)
    return asdict(result)


@router.get("/{webhook_id}")
async def get_webhook(webhook_id: str, services: Services = Depends(get_services)):
    endpoint = services.webhooks.get(webhook_id)
    if not endpoint:
        raise HTTPException(404, "Webhook not found")
    return endpoint.public_view()


@router.patch("/{webhook_id}")
async def patch_webhook(
    webhook_id: str,
    patch: WebhookEndpointPatch,
    services: Services = Depends(get_services),
):
    """Partially update an endpoint. Disabling it cancels waiting retries."""
    try:
        endpoint = await update_endpoint(services.engine, webhook_id, patch)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if not endpoint:
        raise HTTPException(404, "Webhook not found")
    return endpoint.public_view()


@router.delete("/{webhook_id}")
async def delete_webhook(webhook_id: str, services: Services = Depends(get_services)):
    if not await remove_endpoint(services.engine, webhook_id):
        raise HTTPException(404, "Webhook not found")
    return {"deleted": webhook_id}


@router.post("/{webhook_id}/test")
async def test_webhook(webhook_id: str, services: Services = Depends(get_services)):
    """Send a webhook.test event straight to one endpoint."""
    try:
        log = await send_test_webhook(services.engine, webhook_id)
    except DeployGateError as e:
        raise HTTPException(e.status_code, e.message)
    if log is None:
        raise HTTPException(409, "A delivery of this event is already in flight")
    return log.model_dump(mode="json")


@router.get("/{webhook_id}/logs")
async def webhook_logs(
    webhook_id: str,
    limit: int = Query(default=50, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    """Delivery attempts for one endpoint, newest first. Logs outlive the endpoint."""
    return [log.model_dump(mode="json") for log in services.webhooks.logs_for(webhook_id, limit)]
