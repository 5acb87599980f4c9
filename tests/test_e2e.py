"""End-to-end API tests through the ASGI app with in-memory services."""

import json

import pytest
from httpx import AsyncClient, ASGITransport

from deploygate.config import Settings
from deploygate.dependencies import build_services, get_services
from deploygate.main import app
from deploygate.services import signing
from deploygate.services.inbound import InboundWebhookRouter


@pytest.fixture
async def services(persistence, mock_client, fake_sleep):
    settings = Settings(persistence_backend="memory", inbound_webhook_secret="", webhook_secret="")
    services = await build_services(
        settings, persistence=persistence, http_client=mock_client, sleep=fake_sleep,
    )
    app.dependency_overrides[get_services] = lambda: services
    yield services
    app.dependency_overrides.clear()
    await services.engine.scheduler.shutdown()


@pytest.fixture
async def client(services):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_webhook(client, **overrides) -> dict:
    data = {
        "name": "Slack",
        "url": "https://hooks.example.com/slack",
        "events": ["approval.requested", "approval.approved"],
        "secret": "hook-secret",
    }
    data.update(overrides)
    r = await client.post("/api/webhooks", json=data)
    assert r.status_code == 201, r.text
    return r.json()


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_health(self, client):
        r = await client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"
        assert r.json()["checks"]["persistence"] == "ok"

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        r = await client.get("/metrics")
        assert r.status_code == 200
        assert "deploygate_http_requests_total" in r.text


class TestWebhookApi:
    @pytest.mark.asyncio
    async def test_crud(self, client):
        hook = await create_webhook(client)
        assert hook["has_secret"] is True
        assert "secret" not in hook

        r = await client.get(f"/api/webhooks/{hook['id']}")
        assert r.status_code == 200

        r = await client.patch(f"/api/webhooks/{hook['id']}", json={"is_enabled": False})
        assert r.status_code == 200
        assert r.json()["is_enabled"] is False
        assert r.json()["name"] == "Slack"

        r = await client.get("/api/webhooks")
        assert [h["id"] for h in r.json()] == [hook["id"]]

        r = await client.delete(f"/api/webhooks/{hook['id']}")
        assert r.status_code == 200
        r = await client.get(f"/api/webhooks/{hook['id']}")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_url_and_event(self, client):
        r = await client.post("/api/webhooks", json={"name": "x", "url": "nope", "events": []})
        assert r.status_code == 400
        r = await client.post("/api/webhooks", json={
            "name": "x", "url": "https://a.example.com", "events": ["build.done"],
        })
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_patch_missing(self, client):
        r = await client.patch("/api/webhooks/missing", json={"name": "x"})
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_test_delivery(self, client, mock_client):
        hook = await create_webhook(client)

        r = await client.post(f"/api/webhooks/{hook['id']}/test")

        assert r.status_code == 200
        assert r.json()["success"] is True
        headers = mock_client.post.call_args.kwargs["headers"]
        assert headers["X-Webhook-Event"] == "webhook.test"

        r = await client.get(f"/api/webhooks/{hook['id']}/logs")
        assert len(r.json()) == 1
        r = await client.get("/api/webhooks/logs", params={"success": "true"})
        assert len(r.json()) == 1

    @pytest.mark.asyncio
    async def test_test_delivery_disabled_or_missing(self, client):
        hook = await create_webhook(client, is_enabled=False)
        r = await client.post(f"/api/webhooks/{hook['id']}/test")
        assert r.status_code == 409
        r = await client.post("/api/webhooks/missing/test")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_manual_broadcast(self, client, mock_client):
        await create_webhook(client)

        r = await client.post("/api/webhooks/broadcast", json={
            "event": "approval.approved", "data": {"request_id": "dep-1"},
        })

        assert r.status_code == 200
        assert r.json()["delivered"] == 1
        r = await client.post("/api/webhooks/broadcast", json={"event": "nope"})
        assert r.status_code == 400


class TestApprovalFlow:
    @pytest.mark.asyncio
    async def test_gate_approve_and_notify(self, client, services, mock_client):
        await create_webhook(client)
        r = await client.post("/api/approvals/rules", json={
            "name": "Production", "environment_type": "production", "required_approvers": 2,
        })
        assert r.status_code == 201

        r = await client.post("/api/approvals/evaluate", json={
            "deployment_id": "dep-1", "environment_id": "env-prod", "environment_type": "production",
        })
        assert r.json()["requires_approval"] is True
        assert r.json()["request"]["status"] == "pending"

        for user in ("alice", "bob"):
            r = await client.post("/api/approvals/requests/dep-1/actions", json={
                "user_id": user, "action": "approve",
            })
            assert r.status_code == 200
        assert r.json()["status"] == "approved"

        r = await client.post("/api/approvals/requests/dep-1/actions", json={
            "user_id": "carol", "action": "approve",
        })
        assert r.status_code == 409

        await services.broadcaster.join()
        events = [c.kwargs["json"]["event"] for c in mock_client.post.call_args_list]
        assert events == ["approval.requested", "approval.approved"]
        for c in mock_client.post.call_args_list:
            assert signing.verify(c.kwargs["json"], c.kwargs["headers"]["X-Webhook-Signature"], "hook-secret")

        r = await client.get("/api/approvals/notifications")
        assert [n["type"] for n in r.json()] == ["approval_approved", "approval_required"]

    @pytest.mark.asyncio
    async def test_ungated_environment(self, client):
        r = await client.post("/api/approvals/evaluate", json={
            "deployment_id": "dep-2", "environment_id": "env-dev", "environment_type": "development",
        })
        assert r.json() == {"requires_approval": False, "request": None}

    @pytest.mark.asyncio
    async def test_rule_crud_and_missing_request(self, client):
        r = await client.post("/api/approvals/rules", json={"name": "Staging", "environment_type": "staging"})
        rule_id = r.json()["id"]

        r = await client.patch(f"/api/approvals/rules/{rule_id}", json={"timeout_hours": 12})
        assert r.json()["timeout_hours"] == 12
        r = await client.get("/api/approvals/rules", params={"environment_type": "staging"})
        assert len(r.json()) == 1
        r = await client.delete(f"/api/approvals/rules/{rule_id}")
        assert r.status_code == 200
        r = await client.get(f"/api/approvals/rules/{rule_id}")
        assert r.status_code == 404

        r = await client.get("/api/approvals/requests/missing")
        assert r.status_code == 404
        r = await client.post("/api/approvals/requests/missing/actions", json={
            "user_id": "alice", "action": "approve",
        })
        assert r.status_code == 404


class TestInboundWebhooks:
    async def _gate(self, client):
        await client.post("/api/approvals/rules", json={
            "name": "Production", "environment_type": "production",
        })
        await client.post("/api/approvals/evaluate", json={
            "deployment_id": "dep-1", "environment_id": "env-prod", "environment_type": "production",
        })

    @pytest.mark.asyncio
    async def test_approval_response(self, client):
        await self._gate(client)

        r = await client.post("/webhooks/approval-response", json={
            "event": "approval.response",
            "data": {"requestId": "dep-1", "action": "reject", "userId": "ext-1"},
        })

        assert r.status_code == 200
        assert r.json() == {"success": True, "message": "Approval response processed"}
        r = await client.get("/api/approvals/requests/dep-1")
        assert r.json()["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_deployment_status_relayed(self, client, services, mock_client):
        await create_webhook(client, events=["deployment.completed"])

        r = await client.post("/webhooks/deployment-status", json={
            "event": "deployment.status",
            "data": {"deploymentId": "dep-1", "status": "completed"},
        })
        assert r.status_code == 200

        await services.broadcaster.join()
        assert mock_client.post.call_args.kwargs["json"]["event"] == "deployment.completed"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        r = await client.post(
            "/webhooks/approval-response",
            content=b"{oops",
            headers={"Content-Type": "application/json"},
        )
        assert r.status_code == 400
        assert r.json()["success"] is False

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, client):
        r = await client.get("/webhooks/approval-response")
        assert r.status_code == 405
        assert r.json() == {"success": False, "message": "Method not allowed"}

    @pytest.mark.asyncio
    async def test_signature_enforced_when_configured(self, client, services):
        await self._gate(client)
        services.inbound = InboundWebhookRouter(services.approvals, secret="inbound-secret")
        raw = json.dumps({
            "event": "approval.response",
            "data": {"requestId": "dep-1", "action": "approve", "userId": "ext-1"},
        }).encode()

        r = await client.post("/webhooks/approval-response", content=raw)
        assert r.status_code == 400

        r = await client.post(
            "/webhooks/approval-response",
            content=raw,
            headers={"X-Webhook-Signature": signing.sign(raw, "inbound-secret")},
        )
        assert r.status_code == 200
