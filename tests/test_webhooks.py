"""Tests for event fan-out and endpoint lifecycle helpers."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from conftest import make_response
from deploygate.models.domain import RetryPolicy, WebhookEndpoint, WebhookEndpointPatch
from deploygate.services.delivery import DeliveryEngine, RetryScheduler
from deploygate.services.webhook_registry import WebhookRegistry
from deploygate.services.webhooks import (
    EventBroadcaster,
    remove_endpoint,
    send_test_webhook,
    update_endpoint,
)


@pytest.fixture
def registry(persistence):
    return WebhookRegistry(persistence)


@pytest.fixture
def engine(registry, mock_client, fake_sleep):
    return DeliveryEngine(registry, mock_client, scheduler=RetryScheduler(sleep=fake_sleep))


@pytest.fixture
def broadcaster(engine):
    return EventBroadcaster(engine)


async def add_endpoint(
    registry, url, events=("approval.approved",), retry=None, **overrides
) -> WebhookEndpoint:
    return await registry.add(WebhookEndpoint(
        name=url, url=url, events=list(events),
        retry=retry or RetryPolicy(max_retries=0), **overrides,
    ))


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_only_enabled_subscribers_receive(self, broadcaster, registry, mock_client):
        a = await add_endpoint(registry, "https://a.example.com/hook")
        b = await add_endpoint(registry, "https://b.example.com/hook")
        await add_endpoint(registry, "https://c.example.com/hook", events=["deployment.failed"])
        await add_endpoint(registry, "https://d.example.com/hook", is_enabled=False)

        result = await broadcaster.broadcast("approval.approved", {"request_id": "dep-1"})

        assert result.endpoints == 2
        assert result.delivered == 2
        assert sorted(result.webhook_ids) == sorted([a.id, b.id])
        urls = sorted(c.args[0] for c in mock_client.post.call_args_list)
        assert urls == ["https://a.example.com/hook", "https://b.example.com/hook"]

    @pytest.mark.asyncio
    async def test_same_event_id_for_every_endpoint(self, broadcaster, registry, mock_client):
        await add_endpoint(registry, "https://a.example.com/hook")
        await add_endpoint(registry, "https://b.example.com/hook")

        result = await broadcaster.broadcast("approval.approved", {})

        ids = {c.kwargs["json"]["id"] for c in mock_client.post.call_args_list}
        assert ids == {result.event_id}

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, broadcaster, registry, mock_client):
        await add_endpoint(registry, "https://ok.example.com/hook")
        await add_endpoint(registry, "https://down.example.com/hook")

        async def post(url, **kwargs):
            return make_response(500 if "down" in url else 200)

        mock_client.post = AsyncMock(side_effect=post)

        result = await broadcaster.broadcast("approval.approved", {})

        assert result.delivered == 1
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_never_raises(self, broadcaster, registry, engine):
        await add_endpoint(registry, "https://a.example.com/hook")
        engine.dispatch = AsyncMock(side_effect=RuntimeError("boom"))

        result = await broadcaster.broadcast("approval.approved", {})

        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_no_subscribers(self, broadcaster, mock_client):
        result = await broadcaster.broadcast("approval.expired", {})
        assert result.endpoints == 0
        mock_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_runs_in_background(self, broadcaster, registry, mock_client):
        await add_endpoint(registry, "https://a.example.com/hook")

        task = broadcaster.publish("approval.approved", {"request_id": "dep-1"})
        assert isinstance(task, asyncio.Task)
        await broadcaster.join()

        mock_client.post.assert_called_once()
        assert mock_client.post.call_args.kwargs["json"]["data"] == {"request_id": "dep-1"}

    @pytest.mark.asyncio
    async def test_join_waits_for_retries(self, broadcaster, registry, mock_client, fake_sleep):
        mock_client.post = AsyncMock(return_value=make_response(500))
        await add_endpoint(
            registry, "https://a.example.com/hook",
            retry=RetryPolicy(max_retries=2, retry_delay=10),
        )

        broadcaster.publish("approval.approved", {})
        await broadcaster.join()

        assert mock_client.post.call_count == 3
        assert fake_sleep.delays == [0.01, 0.02]


class TestEndpointLifecycle:
    @pytest.fixture
    def blocked_engine(self, registry, mock_client):
        async def never_wakes(seconds):
            await asyncio.Event().wait()

        mock_client.post = AsyncMock(return_value=make_response(500))
        return DeliveryEngine(registry, mock_client, scheduler=RetryScheduler(sleep=never_wakes))

    @pytest.mark.asyncio
    async def test_disable_cancels_waiting_retries(self, blocked_engine, registry, mock_client):
        endpoint = await registry.add(WebhookEndpoint(
            name="a", url="https://a.example.com/hook", events=["approval.approved"],
        ))
        await EventBroadcaster(blocked_engine).broadcast("approval.approved", {})
        assert blocked_engine.scheduler.pending(endpoint.id) == 1

        updated = await update_endpoint(
            blocked_engine, endpoint.id, WebhookEndpointPatch(is_enabled=False),
        )
        await blocked_engine.scheduler.join()

        assert updated.is_enabled is False
        assert blocked_engine.scheduler.pending() == 0
        assert mock_client.post.call_count == 1

    @pytest.mark.asyncio
    async def test_rename_keeps_waiting_retries(self, blocked_engine, registry):
        endpoint = await registry.add(WebhookEndpoint(
            name="a", url="https://a.example.com/hook", events=["approval.approved"],
        ))
        await EventBroadcaster(blocked_engine).broadcast("approval.approved", {})

        await update_endpoint(blocked_engine, endpoint.id, WebhookEndpointPatch(name="b"))

        assert blocked_engine.scheduler.pending(endpoint.id) == 1
        await blocked_engine.scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_remove_cancels_retries_and_keeps_logs(self, blocked_engine, registry):
        endpoint = await registry.add(WebhookEndpoint(
            name="a", url="https://a.example.com/hook", events=["approval.approved"],
        ))
        await EventBroadcaster(blocked_engine).broadcast("approval.approved", {})

        assert await remove_endpoint(blocked_engine, endpoint.id) is True
        await blocked_engine.scheduler.join()

        assert blocked_engine.scheduler.pending() == 0
        assert len(registry.logs_for(endpoint.id)) == 1

    @pytest.mark.asyncio
    async def test_send_test_webhook(self, engine, registry, mock_client):
        endpoint = await add_endpoint(registry, "https://a.example.com/hook", events=["deployment.failed"])

        log = await send_test_webhook(engine, endpoint.id)

        assert log.success is True
        body = mock_client.post.call_args.kwargs["json"]
        assert body["event"] == "webhook.test"
        assert body["data"]["webhook_id"] == endpoint.id
