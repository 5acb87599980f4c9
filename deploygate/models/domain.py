"""Domain entities for webhooks and approval gates.

Entities are pydantic models so registries can snapshot them with
``model_dump(mode="json")`` and restore them with ``model_validate``.
Partial updates go through the ``*Patch`` models and :func:`apply_patch`.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class WebhookAuth(BaseModel):
    type: Literal["none", "bearer", "basic", "custom"] = "none"
    token: str | None = None
    username: str | None = None
    password: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=1000, ge=0)  # milliseconds
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    def delay_for(self, attempt: int) -> float:
        """Milliseconds to wait before the retry that follows ``attempt``."""
        return self.retry_delay * self.backoff_multiplier ** attempt


class WebhookEndpoint(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    url: str
    is_enabled: bool = True
    events: list[str] = Field(default_factory=list)
    authentication: WebhookAuth = Field(default_factory=WebhookAuth)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout: int = Field(default=30000, gt=0)  # milliseconds
    secret: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("events")
    @classmethod
    def _dedupe_events(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    def subscribes_to(self, event: str) -> bool:
        return event in self.events

    def public_view(self) -> dict:
        """JSON view with credentials stripped."""
        data = self.model_dump(mode="json", exclude={"secret"})
        auth = data["authentication"]
        for key in ("token", "password"):
            if auth.get(key):
                auth[key] = "***"
        data["has_secret"] = bool(self.secret)
        return data


class WebhookEndpointPatch(BaseModel):
    name: str | None = None
    url: str | None = None
    is_enabled: bool | None = None
    events: list[str] | None = None
    authentication: WebhookAuth | None = None
    retry: RetryPolicy | None = None
    timeout: int | None = Field(default=None, gt=0)
    secret: str | None = None


class WebhookPayload(BaseModel):
    id: str = Field(default_factory=new_id)
    event: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: Any = None
    signature: str | None = None

    def body(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class WebhookDeliveryLog(BaseModel):
    id: str = Field(default_factory=new_id)
    webhook_id: str
    event: str
    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict = Field(default_factory=dict)
    status_code: int | None = None
    response: str | None = None
    error: str | None = None
    success: bool = False
    duration_ms: int = 0
    retry_count: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

class ApprovalType(str, enum.Enum):
    manual = "manual"
    automatic = "automatic"
    conditional = "conditional"


class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"


TERMINAL_STATUSES = frozenset({
    ApprovalStatus.approved,
    ApprovalStatus.rejected,
    ApprovalStatus.expired,
})


class ApprovalUser(BaseModel):
    id: str
    name: str
    email: str
    role: Literal["admin", "developer", "reviewer"] = "reviewer"


class ApprovalCondition(BaseModel):
    id: str = Field(default_factory=new_id)
    type: Literal["branch", "time", "tests", "size", "author"]
    operator: Literal["equals", "contains", "greater_than", "less_than", "in_range"]
    value: str
    description: str = ""


class ApprovalRule(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    environment_id: str = ""  # "" matches every environment of the type
    environment_type: str
    is_enabled: bool = True
    approval_type: ApprovalType = ApprovalType.manual
    required_approvers: int = Field(default=1, ge=1)
    approvers: list[ApprovalUser] = Field(default_factory=list)
    conditions: list[ApprovalCondition] = Field(default_factory=list)
    timeout_hours: float = Field(default=24, gt=0)
    auto_approve_on_timeout: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def matches_environment(self, environment_id: str, environment_type: str) -> bool:
        return (
            self.is_enabled
            and self.environment_type == environment_type
            and self.environment_id in ("", environment_id)
        )


class ApprovalRulePatch(BaseModel):
    name: str | None = None
    environment_id: str | None = None
    environment_type: str | None = None
    is_enabled: bool | None = None
    approval_type: ApprovalType | None = None
    required_approvers: int | None = Field(default=None, ge=1)
    approvers: list[ApprovalUser] | None = None
    conditions: list[ApprovalCondition] | None = None
    timeout_hours: float | None = Field(default=None, gt=0)
    auto_approve_on_timeout: bool | None = None


class ApprovalAction(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    user_name: str = ""
    user_email: str = ""
    action: Literal["approve", "reject"]
    comment: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class ApprovalRequest(BaseModel):
    id: str
    deployment_id: str
    environment_id: str
    environment_type: str
    status: ApprovalStatus = ApprovalStatus.pending
    required_approvals: int = 1
    approvals: list[ApprovalAction] = Field(default_factory=list)
    rules: list[str] = Field(default_factory=list)
    auto_approve_on_timeout: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    resolved_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_past_deadline(self, now: datetime) -> bool:
        return now > self.expires_at


class ApprovalNotification(BaseModel):
    id: str
    type: Literal[
        "approval_required", "approval_approved", "approval_rejected", "approval_expired"
    ]
    title: str
    message: str
    request_id: str
    user_id: str = "all"
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Patching
# ---------------------------------------------------------------------------

def apply_patch(entity: BaseModel, patch: BaseModel, now: datetime | None = None):
    """Return a copy of ``entity`` with the fields set on ``patch`` applied.

    Only fields explicitly present on the patch are merged. Scalars replace
    the old value; nested models and lists replace the whole old value,
    they are never merged key by key. An explicit null clears fields that are
    nullable on the entity (``secret``) and is ignored elsewhere, so sending
    ``authentication: {"type": "none"}`` is how stored credentials are dropped.
    ``updated_at`` is always refreshed.
    """
    fields = type(entity).model_fields
    changes = {
        name: getattr(patch, name)
        for name in patch.model_fields_set
        if getattr(patch, name) is not None or fields[name].default is None
    }
    changes["updated_at"] = now or utcnow()
    # Round-trip through validation so validators (event dedupe) still run
    merged = entity.model_dump()
    merged.update({
        k: v.model_dump() if isinstance(v, BaseModel) else v
        for k, v in changes.items()
    })
    return type(entity).model_validate(merged)
