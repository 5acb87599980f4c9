"""In-memory webhook registry with snapshot persistence.

Holds endpoint configurations and delivery logs. All mutations run under a
single ``asyncio.Lock`` and write the full state through the persistence
port afterwards.
"""

import asyncio
import logging

from deploygate.models.domain import (
    WebhookDeliveryLog,
    WebhookEndpoint,
    WebhookEndpointPatch,
    apply_patch,
)
from deploygate.services.persistence import PersistencePort, save_snapshot
from deploygate.validation import validate_event_types, validate_webhook_url

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 1000


class WebhookRegistry:
    def __init__(
        self,
        persistence: PersistencePort,
        state_key: str = "deploygate_webhooks",
        log_limit: int = DEFAULT_LOG_LIMIT,
    ) -> None:
        self._persistence = persistence
        self._state_key = state_key
        self._log_limit = log_limit
        self._lock = asyncio.Lock()
        self._endpoints: dict[str, WebhookEndpoint] = {}
        self._logs: dict[str, WebhookDeliveryLog] = {}

    # -- Snapshot ---------------------------------------------------------

    async def load(self) -> None:
        """Replace in-memory state with the persisted snapshot, if any."""
        blob = await self._persistence.load(self._state_key)
        if not blob:
            return
        async with self._lock:
            self._endpoints = {
                k: WebhookEndpoint.model_validate(v)
                for k, v in blob.get("endpoints", {}).items()
            }
            self._logs = {
                k: WebhookDeliveryLog.model_validate(v)
                for k, v in blob.get("logs", {}).items()
            }
        logger.info(
            "Loaded webhook state",
            extra={"endpoints": len(self._endpoints), "logs": len(self._logs)},
        )

    def snapshot(self) -> dict:
        return {
            "endpoints": {k: v.model_dump(mode="json") for k, v in self._endpoints.items()},
            "logs": {k: v.model_dump(mode="json") for k, v in self._logs.items()},
        }

    async def _persist(self) -> None:
        await save_snapshot(self._persistence, self._state_key, self.snapshot())

    # -- Endpoints --------------------------------------------------------

    async def add(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        validate_webhook_url(endpoint.url)
        validate_event_types(endpoint.events)
        async with self._lock:
            self._endpoints[endpoint.id] = endpoint
            await self._persist()
        return endpoint

    async def update(self, endpoint_id: str, patch: WebhookEndpointPatch) -> WebhookEndpoint | None:
        """Apply ``patch``. A missing id is a no-op and returns None."""
        if patch.url is not None:
            validate_webhook_url(patch.url)
        if patch.events is not None:
            validate_event_types(patch.events)
        async with self._lock:
            current = self._endpoints.get(endpoint_id)
            if current is None:
                return None
            updated = apply_patch(current, patch)
            self._endpoints[endpoint_id] = updated
            await self._persist()
        return updated

    async def remove(self, endpoint_id: str) -> bool:
        """Delete an endpoint. Its delivery logs are kept."""
        async with self._lock:
            removed = self._endpoints.pop(endpoint_id, None)
            if removed is not None:
                await self._persist()
        return removed is not None

    def get(self, endpoint_id: str) -> WebhookEndpoint | None:
        return self._endpoints.get(endpoint_id)

    def list_endpoints(self) -> list[WebhookEndpoint]:
        return sorted(self._endpoints.values(), key=lambda e: e.created_at)

    def list_enabled_subscribed_to(self, event: str) -> list[WebhookEndpoint]:
        return [
            e for e in self._endpoints.values()
            if e.is_enabled and e.url and e.subscribes_to(event)
        ]

    # -- Delivery logs ----------------------------------------------------

    async def append_log(self, log: WebhookDeliveryLog) -> None:
        async with self._lock:
            self._logs[log.id] = log
            if len(self._logs) > self._log_limit:
                # Stable ascending sort: equal timestamps keep insertion order
                oldest_first = sorted(self._logs.values(), key=lambda entry: entry.timestamp)
                self._logs = {
                    entry.id: entry for entry in oldest_first[-self._log_limit:]
                }
            await self._persist()

    def logs_for(self, endpoint_id: str, limit: int | None = None) -> list[WebhookDeliveryLog]:
        logs = [entry for entry in self._logs.values() if entry.webhook_id == endpoint_id]
        return _newest_first(logs, limit)

    def list_logs(
        self,
        event: str | None = None,
        success: bool | None = None,
        limit: int | None = None,
    ) -> list[WebhookDeliveryLog]:
        logs = list(self._logs.values())
        if event:
            logs = [entry for entry in logs if entry.event == event]
        if success is not None:
            logs = [entry for entry in logs if entry.success == success]
        return _newest_first(logs, limit)

    async def clear_logs(self, endpoint_id: str | None = None) -> int:
        async with self._lock:
            before = len(self._logs)
            if endpoint_id:
                self._logs = {
                    k: v for k, v in self._logs.items() if v.webhook_id != endpoint_id
                }
            else:
                self._logs = {}
            await self._persist()
        return before - len(self._logs)


def _newest_first(logs: list[WebhookDeliveryLog], limit: int | None) -> list[WebhookDeliveryLog]:
    logs = sorted(logs, key=lambda entry: entry.timestamp)[::-1]
    return logs[:limit] if limit else logs
