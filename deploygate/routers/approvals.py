"""Approval rules, gated deployment requests, actions, and notifications."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from deploygate.dependencies import Services, get_services
from deploygate.errors import DeployGateError
from deploygate.models.domain import (
    ApprovalAction,
    ApprovalCondition,
    ApprovalRule,
    ApprovalRulePatch,
    ApprovalStatus,
    ApprovalType,
    ApprovalUser,
)

router = APIRouter(prefix="/api/approvals", tags=["approvals"])
logger = logging.getLogger(__name__)


class CreateRuleRequest(BaseModel):
    name: str
    environment_id: str = ""
    environment_type: str
    is_enabled: bool = True
    approval_type: ApprovalType = ApprovalType.manual
    required_approvers: int = Field(default=1, ge=1)
    approvers: list[ApprovalUser] = Field(default_factory=list)
    conditions: list[ApprovalCondition] = Field(default_factory=list)
    timeout_hours: float = Field(default=24, gt=0)
    auto_approve_on_timeout: bool = False


class EvaluateRequest(BaseModel):
    deployment_id: str
    environment_id: str
    environment_type: str
    # branch, author, size (bytes), test_results
    deployment: dict | None = None


class ActionRequest(BaseModel):
    user_id: str
    user_name: str = ""
    user_email: str = ""
    action: Literal["approve", "reject"]
    comment: str = ""


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@router.get("/rules")
async def list_rules(
    environment_type: str | None = Query(default=None),
    services: Services = Depends(get_services),
):
    rules = services.approval_registry.list_rules(environment_type)
    return [r.model_dump(mode="json") for r in rules]


@router.post("/rules", status_code=201)
async def create_rule(req: CreateRuleRequest, services: Services = Depends(get_services)):
    rule = await services.approval_registry.add_rule(ApprovalRule(**req.model_dump()))
    logger.info(
        "Approval rule %s created for %s", rule.id, rule.environment_type,
        extra={"approval_type": rule.approval_type.value},
    )
    return rule.model_dump(mode="json")


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: str, services: Services = Depends(get_services)):
    rule = services.approval_registry.get_rule(rule_id)
    if not rule:
        raise HTTPException(404, "Approval rule not found")
    return rule.model_dump(mode="json")


@router.patch("/rules/{rule_id}")
async def patch_rule(
    rule_id: str,
    patch: ApprovalRulePatch,
    services: Services = Depends(get_services),
):
    """Partially update a rule. Existing requests keep the values they were created with."""
    rule = await services.approval_registry.update_rule(rule_id, patch)
    if not rule:
        raise HTTPException(404, "Approval rule not found")
    return rule.model_dump(mode="json")


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, services: Services = Depends(get_services)):
    if not await services.approval_registry.remove_rule(rule_id):
        raise HTTPException(404, "Approval rule not found")
    return {"deleted": rule_id}


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@router.post("/evaluate")
async def evaluate_deployment(req: EvaluateRequest, services: Services = Depends(get_services)):
    """Gate a deployment: return its approval request, creating it on first call.

    ``requires_approval`` is false when no rule applies to the environment.
    """
    request = await services.approvals.ensure_request(
        req.deployment_id, req.environment_id, req.environment_type, req.deployment,
    )
    if request is None:
        return {"requires_approval": False, "request": None}
    return {"requires_approval": True, "request": request.model_dump(mode="json")}


@router.get("/requests")
async def list_requests(
    status: ApprovalStatus | None = Query(default=None),
    services: Services = Depends(get_services),
):
    requests = await services.approvals.list_requests(status)
    return [r.model_dump(mode="json") for r in requests]


@router.get("/requests/{request_id}")
async def get_request(request_id: str, services: Services = Depends(get_services)):
    request = await services.approvals.get_request(request_id)
    if not request:
        raise HTTPException(404, "Approval request not found")
    return request.model_dump(mode="json")


@router.post("/requests/{request_id}/actions")
async def record_action(
    request_id: str,
    req: ActionRequest,
    services: Services = Depends(get_services),
):
    """Approve or reject. 409 once the request is no longer pending."""
    try:
        request = await services.approvals.record_action(
            request_id, ApprovalAction(**req.model_dump()),
        )
    except DeployGateError as e:
        raise HTTPException(e.status_code, e.message)
    return request.model_dump(mode="json")


@router.post("/sweep")
async def sweep_expired(services: Services = Depends(get_services)):
    """Resolve every pending request whose deadline has passed."""
    resolved = await services.approvals.sweep_expired()
    return {
        "resolved": len(resolved),
        "requests": [{"id": r.id, "status": r.status.value} for r in resolved],
    }


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@router.get("/notifications")
async def list_notifications(
    unread_only: bool = Query(default=False),
    user_id: str | None = Query(default=None),
    services: Services = Depends(get_services),
):
    notifications = services.approval_registry.list_notifications(unread_only, user_id)
    return [n.model_dump(mode="json") for n in notifications]


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, services: Services = Depends(get_services)):
    notification = await services.approval_registry.mark_notification_read(notification_id)
    if not notification:
        raise HTTPException(404, "Notification not found")
    return notification.model_dump(mode="json")
