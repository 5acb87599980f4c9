"""In-memory approval registry: rules, live requests, and notifications.

Mutations run under one ``asyncio.Lock`` and persist the full snapshot
afterwards. Status decisions live in :mod:`deploygate.services.approvals`;
this module only stores.
"""

import asyncio
import logging

from deploygate.models.domain import (
    ApprovalNotification,
    ApprovalRequest,
    ApprovalRule,
    ApprovalRulePatch,
    ApprovalStatus,
    apply_patch,
)
from deploygate.services.persistence import PersistencePort, save_snapshot

logger = logging.getLogger(__name__)


class ApprovalRegistry:
    def __init__(self, persistence: PersistencePort, state_key: str = "deploygate_approvals") -> None:
        self._persistence = persistence
        self._state_key = state_key
        self._lock = asyncio.Lock()
        self._rules: dict[str, ApprovalRule] = {}
        self._requests: dict[str, ApprovalRequest] = {}
        self._notifications: dict[str, ApprovalNotification] = {}

    # -- Snapshot ---------------------------------------------------------

    async def load(self) -> None:
        blob = await self._persistence.load(self._state_key)
        if not blob:
            return
        async with self._lock:
            self._rules = {
                k: ApprovalRule.model_validate(v) for k, v in blob.get("rules", {}).items()
            }
            self._requests = {
                k: ApprovalRequest.model_validate(v) for k, v in blob.get("requests", {}).items()
            }
            self._notifications = {
                k: ApprovalNotification.model_validate(v)
                for k, v in blob.get("notifications", {}).items()
            }
        logger.info(
            "Loaded approval state",
            extra={"rules": len(self._rules), "requests": len(self._requests)},
        )

    def snapshot(self) -> dict:
        return {
            "rules": {k: v.model_dump(mode="json") for k, v in self._rules.items()},
            "requests": {k: v.model_dump(mode="json") for k, v in self._requests.items()},
            "notifications": {
                k: v.model_dump(mode="json") for k, v in self._notifications.items()
            },
        }

    async def _persist(self) -> None:
        await save_snapshot(self._persistence, self._state_key, self.snapshot())

    # -- Rules ------------------------------------------------------------

    async def add_rule(self, rule: ApprovalRule) -> ApprovalRule:
        async with self._lock:
            self._rules[rule.id] = rule
            await self._persist()
        return rule

    async def update_rule(self, rule_id: str, patch: ApprovalRulePatch) -> ApprovalRule | None:
        """Apply ``patch``. A missing id is a no-op and returns None."""
        async with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                return None
            updated = apply_patch(current, patch)
            self._rules[rule_id] = updated
            await self._persist()
        return updated

    async def remove_rule(self, rule_id: str) -> bool:
        async with self._lock:
            removed = self._rules.pop(rule_id, None)
            if removed is not None:
                await self._persist()
        return removed is not None

    def get_rule(self, rule_id: str) -> ApprovalRule | None:
        return self._rules.get(rule_id)

    def list_rules(self, environment_type: str | None = None) -> list[ApprovalRule]:
        rules = sorted(self._rules.values(), key=lambda r: r.created_at)
        if environment_type:
            rules = [r for r in rules if r.environment_type == environment_type]
        return rules

    def rules_for_environment(self, environment_id: str, environment_type: str) -> list[ApprovalRule]:
        """Enabled rules of the type that target this environment or all of them."""
        return [
            r for r in self.list_rules()
            if r.matches_environment(environment_id, environment_type)
        ]

    # -- Requests ---------------------------------------------------------

    async def create_request(self, request: ApprovalRequest) -> ApprovalRequest:
        """Store a new request. An existing request with the same id wins."""
        async with self._lock:
            existing = self._requests.get(request.id)
            if existing is not None:
                return existing
            self._requests[request.id] = request
            await self._persist()
        return request

    async def save_request(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            self._requests[request.id] = request
            await self._persist()
        return request

    def get_request(self, request_id: str) -> ApprovalRequest | None:
        return self._requests.get(request_id)

    def list_requests(self, status: ApprovalStatus | None = None) -> list[ApprovalRequest]:
        # Newest first; ties keep the most recently stored first
        requests = sorted(self._requests.values(), key=lambda r: r.created_at)[::-1]
        if status is not None:
            requests = [r for r in requests if r.status == status]
        return requests

    # -- Notifications ----------------------------------------------------

    async def add_notification(self, notification: ApprovalNotification) -> ApprovalNotification:
        async with self._lock:
            self._notifications[notification.id] = notification
            await self._persist()
        return notification

    async def mark_notification_read(self, notification_id: str) -> ApprovalNotification | None:
        async with self._lock:
            current = self._notifications.get(notification_id)
            if current is None:
                return None
            updated = current.model_copy(update={"is_read": True})
            self._notifications[notification_id] = updated
            await self._persist()
        return updated

    def list_notifications(
        self, unread_only: bool = False, user_id: str | None = None
    ) -> list[ApprovalNotification]:
        notifications = sorted(self._notifications.values(), key=lambda n: n.created_at)[::-1]
        if unread_only:
            notifications = [n for n in notifications if not n.is_read]
        if user_id:
            notifications = [n for n in notifications if n.user_id in ("all", user_id)]
        return notifications
