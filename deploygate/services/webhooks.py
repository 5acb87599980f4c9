"""Webhook fan-out: domain events to every enabled, subscribed endpoint.

Features:
- One payload per event, delivered to all matching endpoints concurrently
- Best effort: individual failures are logged by the delivery engine and
  reported in aggregate, ``broadcast`` itself never raises
- Non-blocking: ``publish`` schedules a broadcast as a background task
- Endpoint lifecycle helpers that cancel waiting retries when an endpoint is
  disabled or removed
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from deploygate.metrics import WEBHOOK_BROADCASTS_TOTAL
from deploygate.models.domain import (
    WebhookDeliveryLog,
    WebhookEndpoint,
    WebhookEndpointPatch,
    WebhookPayload,
)
from deploygate.services.delivery import DeliveryEngine
from deploygate.validation import TEST_EVENT

logger = logging.getLogger(__name__)


@dataclass
class BroadcastResult:
    event: str
    event_id: str
    endpoints: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    webhook_ids: list[str] = field(default_factory=list)


class EventBroadcaster:
    def __init__(self, engine: DeliveryEngine) -> None:
        self.engine = engine
        self._background: set[asyncio.Task] = set()

    async def broadcast(self, event: str, data: Any) -> BroadcastResult:
        """Deliver ``event`` to every enabled endpoint subscribed to it."""
        payload = WebhookPayload(event=event, data=data)
        endpoints = self.engine.registry.list_enabled_subscribed_to(event)
        result = BroadcastResult(
            event=event,
            event_id=payload.id,
            endpoints=len(endpoints),
            webhook_ids=[e.id for e in endpoints],
        )
        WEBHOOK_BROADCASTS_TOTAL.labels(event_type=event).inc()
        if not endpoints:
            return result

        outcomes = await asyncio.gather(
            *(self.engine.dispatch(endpoint, payload) for endpoint in endpoints),
            return_exceptions=True,
        )
        for endpoint, outcome in zip(endpoints, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Failed to send webhook %s", endpoint.id,
                    exc_info=outcome, extra={"event_type": event},
                )
                result.failed += 1
            elif outcome is None:
                result.skipped += 1
            elif outcome.success:
                result.delivered += 1
            else:
                result.failed += 1

        logger.info(
            "Broadcast %s to %d endpoint(s): %d delivered, %d failed",
            event, result.endpoints, result.delivered, result.failed,
            extra={"event_id": payload.id},
        )
        return result

    def publish(self, event: str, data: Any) -> asyncio.Task:
        """Schedule a broadcast as a background task (non-blocking)."""
        task = asyncio.create_task(self.broadcast(event, data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def join(self, include_retries: bool = True) -> None:
        """Wait for outstanding publishes and, optionally, their retries."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if include_retries:
            await self.engine.scheduler.join()


# ---------------------------------------------------------------------------
# Endpoint lifecycle
# ---------------------------------------------------------------------------

async def update_endpoint(
    engine: DeliveryEngine, webhook_id: str, patch: WebhookEndpointPatch
) -> WebhookEndpoint | None:
    endpoint = await engine.registry.update(webhook_id, patch)
    if endpoint is not None and not endpoint.is_enabled:
        engine.scheduler.cancel(webhook_id)
    return endpoint


async def remove_endpoint(engine: DeliveryEngine, webhook_id: str) -> bool:
    removed = await engine.registry.remove(webhook_id)
    engine.scheduler.cancel(webhook_id)
    return removed


async def send_test_webhook(engine: DeliveryEngine, webhook_id: str) -> WebhookDeliveryLog | None:
    """Send a ``webhook.test`` event straight to one endpoint."""
    payload = WebhookPayload(
        event=TEST_EVENT,
        data={
            "message": "This is a test webhook from DeployGate",
            "webhook_id": webhook_id,
        },
    )
    return await engine.send(webhook_id, payload)
