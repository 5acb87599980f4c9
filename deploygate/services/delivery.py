"""Webhook delivery engine: one signed HTTP attempt plus backoff retries.

Features:
- HMAC-SHA256 payload signing (X-Webhook-Signature: sha256=<hex>)
- Bearer / basic / custom-header endpoint authentication
- Hard per-attempt deadline from the endpoint's ``timeout`` (ms)
- Exponential backoff: retry k waits ``retry_delay * backoff_multiplier ** k`` ms
- Every attempt, including intermediate retries, is written to the registry log
- Retries are delayed tasks keyed by endpoint id so disabling or deleting an
  endpoint cancels the ones that have not fired yet
"""

import asyncio
import base64
import logging
import time
from functools import partial
from typing import Awaitable, Callable

import httpx

from deploygate.errors import (
    DeliveryHTTPError,
    DeliveryTransportError,
    EndpointDisabled,
    NotFound,
)
from deploygate.metrics import (
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DURATION,
    WEBHOOK_RETRIES_SCHEDULED_TOTAL,
)
from deploygate.models.domain import (
    WebhookAuth,
    WebhookDeliveryLog,
    WebhookEndpoint,
    WebhookPayload,
)
from deploygate.services import signing
from deploygate.services.webhook_registry import WebhookRegistry

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "DeployGate-Webhook/1.0"
MAX_LOGGED_RESPONSE = 2000  # characters of response body kept per log entry

SleepFn = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Retry scheduling
# ---------------------------------------------------------------------------

class RetryScheduler:
    """Delayed tasks on the running event loop, grouped by endpoint id.

    A task is cancellable while it is waiting out its delay. Once the delay
    has elapsed the retry is considered fired and runs to completion even if
    its endpoint is cancelled meanwhile.
    """

    def __init__(self, sleep: SleepFn = asyncio.sleep) -> None:
        self._sleep = sleep
        self._waiting: dict[str, set[asyncio.Task]] = {}
        self._tasks: set[asyncio.Task] = set()

    def schedule(
        self,
        key: str,
        delay_ms: float,
        factory: Callable[[], Awaitable[object]],
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run(key, delay_ms, factory))
        self._waiting.setdefault(key, set()).add(task)
        self._tasks.add(task)
        task.add_done_callback(partial(self._on_done, key))
        return task

    async def _run(self, key: str, delay_ms: float, factory) -> None:
        await self._sleep(delay_ms / 1000)
        self._release(key, asyncio.current_task())
        await factory()

    def _release(self, key: str, task: asyncio.Task) -> None:
        waiting = self._waiting.get(key)
        if waiting is None:
            return
        waiting.discard(task)
        if not waiting:
            del self._waiting[key]

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._release(key, task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scheduled webhook retry crashed", exc_info=task.exception())

    def cancel(self, key: str) -> int:
        """Cancel retries for ``key`` that are still waiting. Returns the count."""
        waiting = self._waiting.pop(key, set())
        for task in waiting:
            task.cancel()
        if waiting:
            logger.info(
                "Cancelled scheduled webhook retries",
                extra={"webhook_id": key, "cancelled": len(waiting)},
            )
        return len(waiting)

    def pending(self, key: str | None = None) -> int:
        if key is not None:
            return len(self._waiting.get(key, ()))
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until no retries remain, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._waiting.clear()


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

def auth_headers(auth: WebhookAuth) -> dict[str, str]:
    """Return the extra headers an endpoint's authentication requires."""
    if auth.type == "bearer" and auth.token:
        return {"Authorization": f"Bearer {auth.token}"}
    if auth.type == "basic" and auth.username and auth.password:
        credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}
    if auth.type == "custom":
        return dict(auth.headers)
    return {}


def _redact(headers: dict[str, str]) -> dict[str, str]:
    return {
        k: ("***" if k.lower() == "authorization" else v)
        for k, v in headers.items()
    }


# ---------------------------------------------------------------------------
# Delivery engine
# ---------------------------------------------------------------------------

class DeliveryEngine:
    def __init__(
        self,
        registry: WebhookRegistry,
        http_client: httpx.AsyncClient,
        scheduler: RetryScheduler | None = None,
        secret: str | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.registry = registry
        self.scheduler = scheduler or RetryScheduler()
        self._client = http_client
        self._secret = secret or None
        self._user_agent = user_agent
        # Process-scoped guard against sending the same event to the same
        # endpoint twice at once. Not persisted.
        self._in_flight: set[tuple[str, str]] = set()

    # -- Entry points -----------------------------------------------------

    async def send(self, webhook_id: str, payload: WebhookPayload) -> WebhookDeliveryLog | None:
        """Deliver ``payload`` to a registered endpoint by id."""
        endpoint = self.registry.get(webhook_id)
        if endpoint is None:
            raise NotFound(f"Webhook {webhook_id} not found")
        if not endpoint.is_enabled or not endpoint.url:
            raise EndpointDisabled()
        return await self.dispatch(endpoint, payload)

    async def dispatch(
        self, endpoint: WebhookEndpoint, payload: WebhookPayload
    ) -> WebhookDeliveryLog | None:
        """First attempt for one (endpoint, event) pair. Duplicates are skipped."""
        delivery_key = (endpoint.id, payload.id)
        if delivery_key in self._in_flight:
            logger.info(
                "Skipping duplicate in-flight delivery",
                extra={"webhook_id": endpoint.id, "event_id": payload.id},
            )
            return None
        self._in_flight.add(delivery_key)
        try:
            return await self.deliver(endpoint, payload, 0)
        finally:
            self._in_flight.discard(delivery_key)

    # -- Single attempt ---------------------------------------------------

    async def deliver(
        self, endpoint: WebhookEndpoint, payload: WebhookPayload, attempt: int = 0
    ) -> WebhookDeliveryLog:
        """POST ``payload`` once. Logs the attempt and schedules a retry on failure."""
        signed = self._sign(payload, endpoint)
        body = signed.body()
        headers = self._build_headers(endpoint, signed, attempt)

        start = time.monotonic()
        status_code: int | None = None
        response_text: str | None = None
        error_message: str | None = None
        success = False

        try:
            status_code, response_text = await self._post(endpoint, body, headers)
            success = True
        except DeliveryHTTPError as exc:
            status_code = exc.response_status
            response_text = exc.body
            error_message = exc.message
        except DeliveryTransportError as exc:
            error_message = exc.message

        duration_ms = int((time.monotonic() - start) * 1000)

        WEBHOOK_DELIVERIES_TOTAL.labels(
            event_type=payload.event, success=str(success).lower()
        ).inc()
        WEBHOOK_DURATION.labels(event_type=payload.event).observe(duration_ms / 1000)

        log = WebhookDeliveryLog(
            webhook_id=endpoint.id,
            event=payload.event,
            url=endpoint.url,
            headers=_redact(headers),
            payload=body,
            status_code=status_code,
            response=response_text[:MAX_LOGGED_RESPONSE] if response_text else response_text,
            error=error_message,
            success=success,
            duration_ms=duration_ms,
            retry_count=attempt,
        )

        if success:
            logger.info(
                "Webhook OK: %s attempt=%d -> %s (%d) %dms",
                payload.event, attempt + 1, endpoint.url, status_code, duration_ms,
                extra={"webhook_id": endpoint.id},
            )
        else:
            logger.warning(
                "Webhook FAIL: %s attempt=%d -> %s status=%s err=%s",
                payload.event, attempt + 1, endpoint.url, status_code, error_message,
                extra={"webhook_id": endpoint.id},
            )

        await self.registry.append_log(log)
        if not success:
            self._maybe_schedule_retry(endpoint, payload, attempt)
        return log

    def _maybe_schedule_retry(
        self, endpoint: WebhookEndpoint, payload: WebhookPayload, attempt: int
    ) -> None:
        policy = endpoint.retry
        if attempt >= policy.max_retries:
            logger.warning(
                "Webhook exhausted %d attempts: %s -> %s",
                attempt + 1, payload.event, endpoint.url,
                extra={"webhook_id": endpoint.id},
            )
            return
        delay_ms = policy.delay_for(attempt)
        WEBHOOK_RETRIES_SCHEDULED_TOTAL.labels(event_type=payload.event).inc()
        self.scheduler.schedule(
            endpoint.id,
            delay_ms,
            lambda: self.deliver(endpoint, payload, attempt + 1),
        )

    async def _post(
        self, endpoint: WebhookEndpoint, body: dict, headers: dict[str, str]
    ) -> tuple[int, str]:
        timeout_s = endpoint.timeout / 1000
        try:
            response = await asyncio.wait_for(
                self._client.post(endpoint.url, json=body, headers=headers, timeout=timeout_s),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            raise DeliveryTransportError(f"Request timed out after {endpoint.timeout}ms")
        except httpx.HTTPError as exc:
            raise DeliveryTransportError(str(exc) or type(exc).__name__)

        text = response.text
        if not 200 <= response.status_code < 300:
            raise DeliveryHTTPError(response.status_code, text)
        return response.status_code, text

    # -- Helpers ----------------------------------------------------------

    def _sign(self, payload: WebhookPayload, endpoint: WebhookEndpoint) -> WebhookPayload:
        secret = endpoint.secret or self._secret
        if not secret:
            return payload.model_copy(update={"signature": None})
        signature = signing.sign(payload.body(), secret)
        return payload.model_copy(update={"signature": signature})

    def _build_headers(
        self, endpoint: WebhookEndpoint, payload: WebhookPayload, attempt: int
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-Event": payload.event,
            "X-Webhook-Timestamp": payload.timestamp.isoformat(),
            "X-Webhook-Attempt": str(attempt + 1),
        }
        headers.update(auth_headers(endpoint.authentication))
        if payload.signature:
            headers["X-Webhook-Signature"] = payload.signature
        return headers
