"""Tests for the approval gate state machine."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from deploygate.errors import NotFound, RequestNotPending
from deploygate.models.domain import (
    ApprovalAction,
    ApprovalCondition,
    ApprovalRule,
    ApprovalRulePatch,
    ApprovalStatus,
    ApprovalType,
)
from deploygate.services.approval_registry import ApprovalRegistry
from deploygate.services.approvals import ApprovalStateMachine, decide_status, tally


@pytest.fixture
def registry(persistence):
    return ApprovalRegistry(persistence, state_key="approvals")


@pytest.fixture
def broadcaster():
    return MagicMock()


@pytest.fixture
def machine(registry, broadcaster, clock):
    return ApprovalStateMachine(registry, broadcaster=broadcaster, clock=clock)


def approve(user_id: str) -> ApprovalAction:
    return ApprovalAction(user_id=user_id, action="approve")


def reject(user_id: str) -> ApprovalAction:
    return ApprovalAction(user_id=user_id, action="reject", comment="not today")


def published(broadcaster) -> list[str]:
    return [c.args[0] for c in broadcaster.publish.call_args_list]


async def add_rule(registry, **overrides) -> ApprovalRule:
    fields = {
        "name": "Production",
        "environment_type": "production",
        "required_approvers": 2,
        "timeout_hours": 24,
    }
    fields.update(overrides)
    return await registry.add_rule(ApprovalRule(**fields))


async def gate(machine, deployment_id="dep-1", deployment=None):
    return await machine.ensure_request(deployment_id, "env-prod", "production", deployment)


class TestRuleApplicability:
    @pytest.mark.asyncio
    async def test_no_rules_no_gate(self, machine):
        assert machine.requires_approval("env-prod", "production") is False
        assert await gate(machine) is None

    @pytest.mark.asyncio
    async def test_other_environment_type_ignored(self, machine, registry):
        await add_rule(registry, environment_type="staging")
        assert await gate(machine) is None

    @pytest.mark.asyncio
    async def test_specific_environment_id(self, machine, registry):
        await add_rule(registry, environment_id="env-other")
        assert await gate(machine) is None
        await add_rule(registry, environment_id="env-prod")
        assert await gate(machine) is not None

    @pytest.mark.asyncio
    async def test_disabled_and_automatic_rules_never_gate(self, machine, registry):
        await add_rule(registry, is_enabled=False)
        await add_rule(registry, approval_type=ApprovalType.automatic)
        assert await gate(machine) is None

    @pytest.mark.asyncio
    async def test_conditional_rule_gates_only_when_conditions_hold(self, machine, registry):
        await add_rule(
            registry,
            approval_type=ApprovalType.conditional,
            conditions=[ApprovalCondition(type="branch", operator="equals", value="main")],
        )
        assert await gate(machine, "dep-feature", {"branch": "feature/x"}) is None
        request = await gate(machine, "dep-main", {"branch": "main"})
        assert request.status == ApprovalStatus.pending


class TestRequestCreation:
    @pytest.mark.asyncio
    async def test_creates_pending_request(self, machine, registry, broadcaster, clock):
        rule = await add_rule(registry)

        request = await gate(machine)

        assert request.id == "dep-1"
        assert request.status == ApprovalStatus.pending
        assert request.required_approvals == 2
        assert request.rules == [rule.id]
        assert request.expires_at == clock.now + timedelta(hours=24)
        assert published(broadcaster) == ["approval.requested"]
        notification = registry.list_notifications()[0]
        assert notification.id == "approval-required-dep-1"
        assert notification.type == "approval_required"

    @pytest.mark.asyncio
    async def test_idempotent_per_deployment(self, machine, registry, broadcaster):
        await add_rule(registry)

        first = await gate(machine)
        second = await gate(machine)

        assert first == second
        assert len(registry.list_requests()) == 1
        assert published(broadcaster) == ["approval.requested"]

    @pytest.mark.asyncio
    async def test_strictest_rules_combined(self, machine, registry, clock):
        await add_rule(registry, required_approvers=1, timeout_hours=48, auto_approve_on_timeout=True)
        await add_rule(registry, required_approvers=3, timeout_hours=2)

        request = await gate(machine)

        assert request.required_approvals == 3
        assert request.expires_at == clock.now + timedelta(hours=2)
        assert request.auto_approve_on_timeout is False

    @pytest.mark.asyncio
    async def test_later_rule_changes_do_not_touch_request(self, machine, registry):
        rule = await add_rule(registry)
        await gate(machine)

        await registry.update_rule(rule.id, ApprovalRulePatch(required_approvers=5))

        request = await machine.get_request("dep-1")
        assert request.required_approvals == 2


class TestActions:
    @pytest.mark.asyncio
    async def test_quorum_approves(self, machine, registry, broadcaster):
        await add_rule(registry)
        await gate(machine)

        request = await machine.record_action("dep-1", approve("alice"))
        assert request.status == ApprovalStatus.pending

        request = await machine.record_action("dep-1", approve("bob"))
        assert request.status == ApprovalStatus.approved
        assert request.resolved_at is not None
        assert published(broadcaster) == ["approval.requested", "approval.approved"]
        data = broadcaster.publish.call_args.args[1]
        assert data["approved_count"] == 2
        assert registry.list_notifications()[0].id == "approval-approved-dep-1"

    @pytest.mark.asyncio
    async def test_single_reject_vetoes(self, machine, registry, broadcaster):
        await add_rule(registry)
        await gate(machine)

        await machine.record_action("dep-1", approve("alice"))
        request = await machine.record_action("dep-1", reject("bob"))

        assert request.status == ApprovalStatus.rejected
        assert published(broadcaster)[-1] == "approval.rejected"

    @pytest.mark.asyncio
    async def test_reject_first_is_final(self, machine, registry):
        await add_rule(registry)
        await gate(machine)

        request = await machine.record_action("dep-1", reject("bob"))
        assert request.status == ApprovalStatus.rejected
        with pytest.raises(RequestNotPending):
            await machine.record_action("dep-1", approve("alice"))

    @pytest.mark.asyncio
    async def test_same_user_counted_once(self, machine, registry):
        await add_rule(registry)
        await gate(machine)

        await machine.record_action("dep-1", approve("alice"))
        request = await machine.record_action("dep-1", approve("alice"))

        assert request.status == ApprovalStatus.pending
        assert len(request.approvals) == 2

    @pytest.mark.asyncio
    async def test_repeat_approvals_count_when_not_distinct(self, registry, clock):
        machine = ApprovalStateMachine(registry, count_distinct_approvers=False, clock=clock)
        await add_rule(registry)
        await gate(machine)

        await machine.record_action("dep-1", approve("alice"))
        request = await machine.record_action("dep-1", approve("alice"))

        assert request.status == ApprovalStatus.approved

    @pytest.mark.asyncio
    async def test_terminal_request_refuses_actions(self, machine, registry):
        await add_rule(registry, required_approvers=1)
        await gate(machine)
        await machine.record_action("dep-1", approve("alice"))

        with pytest.raises(RequestNotPending):
            await machine.record_action("dep-1", approve("bob"))

        request = await machine.get_request("dep-1")
        assert request.status == ApprovalStatus.approved
        assert len(request.approvals) == 1

    @pytest.mark.asyncio
    async def test_unknown_request(self, machine):
        with pytest.raises(NotFound):
            await machine.record_action("nope", approve("alice"))


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expires_on_read(self, machine, registry, broadcaster, clock):
        await add_rule(registry)
        await gate(machine)

        clock.now += timedelta(hours=25)
        request = await machine.get_request("dep-1")

        assert request.status == ApprovalStatus.expired
        assert published(broadcaster)[-1] == "approval.expired"
        assert broadcaster.publish.call_args.args[1]["reason"] == "timeout"
        assert registry.get_request("dep-1").status == ApprovalStatus.expired

    @pytest.mark.asyncio
    async def test_not_expired_before_deadline(self, machine, registry, clock):
        await add_rule(registry)
        await gate(machine)

        clock.now += timedelta(hours=24)
        assert (await machine.get_request("dep-1")).status == ApprovalStatus.pending

    @pytest.mark.asyncio
    async def test_action_after_deadline_refused(self, machine, registry, clock):
        await add_rule(registry)
        await gate(machine)

        clock.now += timedelta(days=2)
        with pytest.raises(RequestNotPending):
            await machine.record_action("dep-1", approve("alice"))

    @pytest.mark.asyncio
    async def test_auto_approve_on_timeout(self, machine, registry, broadcaster, clock):
        await add_rule(registry, auto_approve_on_timeout=True)
        await gate(machine)

        clock.now += timedelta(hours=25)
        request = await machine.get_request("dep-1")

        assert request.status == ApprovalStatus.approved
        assert published(broadcaster)[-1] == "approval.approved"

    @pytest.mark.asyncio
    async def test_sweep_resolves_only_overdue(self, machine, registry, clock):
        await add_rule(registry, timeout_hours=1)
        await gate(machine, "dep-old")
        clock.now += timedelta(minutes=90)
        await gate(machine, "dep-new")

        resolved = await machine.sweep_expired()

        assert [r.id for r in resolved] == ["dep-old"]
        pending = await machine.list_requests(ApprovalStatus.pending)
        assert [r.id for r in pending] == ["dep-new"]


class TestTally:
    @pytest.mark.asyncio
    async def test_decide_status(self, machine, registry):
        await add_rule(registry)
        request = await gate(machine)

        both = request.model_copy(update={"approvals": [approve("a"), approve("b"), reject("c")]})
        assert tally(both) == (2, 1)
        assert decide_status(both) == ApprovalStatus.rejected


class TestPersistence:
    @pytest.mark.asyncio
    async def test_requests_survive_reload(self, machine, registry, persistence):
        await add_rule(registry)
        await gate(machine)
        await machine.record_action("dep-1", approve("alice"))

        restored = ApprovalRegistry(persistence, state_key="approvals")
        await restored.load()

        request = restored.get_request("dep-1")
        assert request.status == ApprovalStatus.pending
        assert [a.user_id for a in request.approvals] == ["alice"]
        assert len(restored.list_rules()) == 1
        assert len(restored.list_notifications()) == 1

    @pytest.mark.asyncio
    async def test_notifications_read_and_filtered(self, machine, registry):
        await add_rule(registry)
        await gate(machine)

        await registry.mark_notification_read("approval-required-dep-1")

        assert registry.list_notifications(unread_only=True) == []
        assert len(registry.list_notifications(user_id="alice")) == 1
        assert await registry.mark_notification_read("missing") is None
