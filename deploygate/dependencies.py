"""Service construction and the FastAPI dependency that hands them to routes."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx
from fastapi import Request

from deploygate.config import Settings
from deploygate.models.domain import utcnow
from deploygate.services.approval_registry import ApprovalRegistry
from deploygate.services.approvals import ApprovalStateMachine
from deploygate.services.delivery import DeliveryEngine, RetryScheduler
from deploygate.services.inbound import DeploymentStatusRelay, InboundWebhookRouter
from deploygate.services.persistence import MemoryPersistence, PersistencePort, SqlPersistence
from deploygate.services.webhook_registry import WebhookRegistry
from deploygate.services.webhooks import EventBroadcaster

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    persistence: PersistencePort
    http_client: httpx.AsyncClient
    webhooks: WebhookRegistry
    engine: DeliveryEngine
    broadcaster: EventBroadcaster
    approval_registry: ApprovalRegistry
    approvals: ApprovalStateMachine
    inbound: InboundWebhookRouter

    async def aclose(self) -> None:
        """Let pending broadcasts finish, drop waiting retries, close HTTP."""
        await self.broadcaster.join(include_retries=False)
        await self.engine.scheduler.shutdown()
        await self.http_client.aclose()


def default_persistence(settings: Settings) -> PersistencePort:
    if settings.persistence_backend == "memory":
        return MemoryPersistence()
    from deploygate.db import async_session

    return SqlPersistence(async_session)


async def build_services(
    settings: Settings,
    persistence: PersistencePort | None = None,
    http_client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], object] = asyncio.sleep,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    persistence = persistence or default_persistence(settings)
    http_client = http_client or httpx.AsyncClient(
        timeout=settings.webhook_default_timeout_ms / 1000,
    )

    webhooks = WebhookRegistry(
        persistence,
        state_key=settings.webhooks_state_key,
        log_limit=settings.webhook_log_limit,
    )
    engine = DeliveryEngine(
        webhooks,
        http_client,
        scheduler=RetryScheduler(sleep=sleep),
        secret=settings.webhook_secret,
        user_agent=settings.webhook_user_agent,
    )
    broadcaster = EventBroadcaster(engine)

    approval_registry = ApprovalRegistry(persistence, state_key=settings.approvals_state_key)
    approvals = ApprovalStateMachine(
        approval_registry,
        broadcaster=broadcaster,
        count_distinct_approvers=settings.approval_count_distinct_approvers,
        clock=clock,
    )
    inbound = InboundWebhookRouter(
        approvals,
        secret=settings.inbound_webhook_secret,
        deployment_status=DeploymentStatusRelay(broadcaster),
    )

    await webhooks.load()
    await approval_registry.load()

    return Services(
        settings=settings,
        persistence=persistence,
        http_client=http_client,
        webhooks=webhooks,
        engine=engine,
        broadcaster=broadcaster,
        approval_registry=approval_registry,
        approvals=approvals,
        inbound=inbound,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
