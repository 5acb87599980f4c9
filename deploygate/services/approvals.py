"""Approval gate state machine.

A deployment into a gated environment gets one ApprovalRequest, keyed by the
deployment id and created the first time the deployment is evaluated:

    pending --(any reject)-------------------> rejected
    pending --(approvals >= required)--------> approved
    pending --(deadline passed)--------------> expired, or approved when every
                                               originating rule auto-approves

Terminal states never change again and refuse further actions. Expiry is
resolved lazily whenever a request is read, and in bulk by
:meth:`ApprovalStateMachine.sweep_expired`; either way the transition is
persisted, notified and broadcast like any other.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from deploygate.errors import NotFound, RequestNotPending
from deploygate.metrics import APPROVAL_ACTIONS_TOTAL, APPROVAL_TRANSITIONS_TOTAL
from deploygate.models.domain import (
    ApprovalAction,
    ApprovalNotification,
    ApprovalRequest,
    ApprovalRule,
    ApprovalStatus,
    ApprovalType,
    utcnow,
)
from deploygate.services.approval_registry import ApprovalRegistry
from deploygate.services.conditions import evaluate_conditions
from deploygate.services.webhooks import EventBroadcaster

logger = logging.getLogger(__name__)

STATUS_EVENTS = {
    ApprovalStatus.approved: "approval.approved",
    ApprovalStatus.rejected: "approval.rejected",
    ApprovalStatus.expired: "approval.expired",
}


def tally(request: ApprovalRequest, distinct_approvers: bool = True) -> tuple[int, int]:
    """Return ``(approved_count, rejected_count)`` over the full action list."""
    approvals = [a for a in request.approvals if a.action == "approve"]
    rejected = sum(1 for a in request.approvals if a.action == "reject")
    if distinct_approvers:
        return len({a.user_id for a in approvals}), rejected
    return len(approvals), rejected


def decide_status(
    request: ApprovalRequest, distinct_approvers: bool = True
) -> ApprovalStatus:
    """Status implied by the recorded actions. Any rejection is a veto."""
    approved, rejected = tally(request, distinct_approvers)
    if rejected > 0:
        return ApprovalStatus.rejected
    if approved >= request.required_approvals:
        return ApprovalStatus.approved
    return ApprovalStatus.pending


class ApprovalStateMachine:
    def __init__(
        self,
        registry: ApprovalRegistry,
        broadcaster: EventBroadcaster | None = None,
        count_distinct_approvers: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self._broadcaster = broadcaster
        self._distinct = count_distinct_approvers
        self._clock = clock
        self._lock = asyncio.Lock()

    # -- Rule applicability -----------------------------------------------

    def applicable_rules(
        self, environment_id: str, environment_type: str, deployment: dict | None = None
    ) -> list[ApprovalRule]:
        """Rules that gate this deployment.

        Automatic rules never gate. Conditional rules gate only when every
        condition holds for the deployment metadata.
        """
        now = self._clock()
        applicable = []
        for rule in self.registry.rules_for_environment(environment_id, environment_type):
            if rule.approval_type == ApprovalType.automatic:
                continue
            if rule.approval_type == ApprovalType.conditional:
                verdict = evaluate_conditions(rule.conditions, deployment, now)
                if not verdict.passed:
                    logger.info(
                        "Rule %s skipped: %d condition(s) not met",
                        rule.id, len(verdict.failed),
                        extra={"environment_type": environment_type},
                    )
                    continue
            applicable.append(rule)
        return applicable

    def requires_approval(
        self, environment_id: str, environment_type: str, deployment: dict | None = None
    ) -> bool:
        return bool(self.applicable_rules(environment_id, environment_type, deployment))

    # -- Requests ---------------------------------------------------------

    async def ensure_request(
        self,
        deployment_id: str,
        environment_id: str,
        environment_type: str,
        deployment: dict | None = None,
    ) -> ApprovalRequest | None:
        """Return the deployment's request, creating it if rules apply.

        None means no rule gates the deployment and it may proceed.
        """
        async with self._lock:
            existing = self.registry.get_request(deployment_id)
            if existing is not None:
                return await self._resolve_expiry(existing)

            rules = self.applicable_rules(environment_id, environment_type, deployment)
            if not rules:
                return None

            now = self._clock()
            request = ApprovalRequest(
                id=deployment_id,
                deployment_id=deployment_id,
                environment_id=environment_id,
                environment_type=environment_type,
                required_approvals=max(r.required_approvers for r in rules),
                rules=[r.id for r in rules],
                auto_approve_on_timeout=all(r.auto_approve_on_timeout for r in rules),
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(hours=min(r.timeout_hours for r in rules)),
            )
            request = await self.registry.create_request(request)

        APPROVAL_TRANSITIONS_TOTAL.labels(status=ApprovalStatus.pending.value).inc()
        logger.info(
            "Approval request created for deployment %s (%d approval(s) required)",
            deployment_id, request.required_approvals,
            extra={"environment_type": environment_type, "rules": request.rules},
        )
        await self.registry.add_notification(ApprovalNotification(
            id=f"approval-required-{request.id}",
            type="approval_required",
            title="Approval Required",
            message=f"Deployment to {environment_type} requires your approval",
            request_id=request.id,
            created_at=now,
        ))
        self._publish("approval.requested", request)
        return request

    async def get_request(self, request_id: str) -> ApprovalRequest | None:
        async with self._lock:
            request = self.registry.get_request(request_id)
            if request is None:
                return None
            return await self._resolve_expiry(request)

    async def list_requests(self, status: ApprovalStatus | None = None) -> list[ApprovalRequest]:
        await self.sweep_expired()
        return self.registry.list_requests(status)

    async def record_action(self, request_id: str, action: ApprovalAction) -> ApprovalRequest:
        """Append ``action`` and apply the veto / quorum rules.

        Raises NotFound for an unknown request and RequestNotPending once the
        request is terminal, including when it has just expired.
        """
        async with self._lock:
            request = self.registry.get_request(request_id)
            if request is None:
                raise NotFound(f"Approval request {request_id} not found")
            request = await self._resolve_expiry(request)
            if request.is_terminal:
                raise RequestNotPending(
                    f"Approval request {request_id} is already {request.status.value}"
                )

            request = request.model_copy(update={
                "approvals": [*request.approvals, action],
                "updated_at": self._clock(),
            })
            APPROVAL_ACTIONS_TOTAL.labels(action=action.action).inc()
            logger.info(
                "Approval action %s by %s on %s", action.action, action.user_id, request_id,
            )

            new_status = decide_status(request, self._distinct)
            if new_status == ApprovalStatus.pending:
                return await self.registry.save_request(request)
            return await self._transition(request, new_status)

    async def sweep_expired(self) -> list[ApprovalRequest]:
        """Resolve every pending request whose deadline has passed."""
        resolved = []
        async with self._lock:
            now = self._clock()
            for request in self.registry.list_requests(ApprovalStatus.pending):
                if request.is_past_deadline(now):
                    resolved.append(await self._resolve_expiry(request))
        if resolved:
            logger.info("Resolved %d expired approval request(s)", len(resolved))
        return resolved

    # -- Internal ---------------------------------------------------------

    async def _resolve_expiry(self, request: ApprovalRequest) -> ApprovalRequest:
        if request.status != ApprovalStatus.pending or not request.is_past_deadline(self._clock()):
            return request
        if request.auto_approve_on_timeout:
            return await self._transition(request, ApprovalStatus.approved, reason="timeout")
        return await self._transition(request, ApprovalStatus.expired, reason="timeout")

    async def _transition(
        self, request: ApprovalRequest, status: ApprovalStatus, reason: str | None = None
    ) -> ApprovalRequest:
        now = self._clock()
        request = request.model_copy(update={
            "status": status,
            "updated_at": now,
            "resolved_at": now,
        })
        await self.registry.save_request(request)

        APPROVAL_TRANSITIONS_TOTAL.labels(status=status.value).inc()
        logger.info(
            "Approval request %s -> %s", request.id, status.value,
            extra={"reason": reason or "actions"},
        )
        await self.registry.add_notification(ApprovalNotification(
            id=f"approval-{status.value}-{request.id}",
            type=f"approval_{status.value}",
            title=f"Approval {status.value.capitalize()}",
            message=f"Deployment approval has been {status.value}",
            request_id=request.id,
            created_at=now,
        ))
        self._publish(STATUS_EVENTS[status], request, reason=reason)
        return request

    def _publish(self, event: str, request: ApprovalRequest, reason: str | None = None) -> None:
        if self._broadcaster is None:
            return
        approved, rejected = tally(request, self._distinct)
        data = {
            "request_id": request.id,
            "deployment_id": request.deployment_id,
            "environment_id": request.environment_id,
            "environment_type": request.environment_type,
            "status": request.status.value,
            "required_approvals": request.required_approvals,
            "approved_count": approved,
            "rejected_count": rejected,
            "expires_at": request.expires_at.isoformat(),
        }
        if reason:
            data["reason"] = reason
        self._broadcaster.publish(event, data)
