"""Seed script: register the default webhooks and approval rules."""

import httpx

BASE = "http://localhost:8000/api"

DEFAULT_WEBHOOKS = [
    {
        "name": "Slack Notifications",
        "url": "https://hooks.slack.com/services/YOUR/SLACK/WEBHOOK",
        "is_enabled": False,
        "events": ["approval.requested", "approval.approved", "approval.rejected"],
        "authentication": {"type": "none"},
        "retry": {"max_retries": 3, "retry_delay": 1000, "backoff_multiplier": 2},
        "timeout": 30000,
    },
    {
        "name": "Jira Integration",
        "url": "https://your-domain.atlassian.net/rest/api/3/webhook",
        "is_enabled": False,
        "events": ["deployment.started", "deployment.completed", "deployment.failed"],
        "authentication": {"type": "bearer", "token": "your-jira-api-token"},
        "retry": {"max_retries": 5, "retry_delay": 2000, "backoff_multiplier": 1.5},
        "timeout": 45000,
    },
]

SENIOR_REVIEWER = {
    "id": "reviewer-1",
    "name": "Senior Developer",
    "email": "senior@example.com",
    "role": "reviewer",
}

DEFAULT_RULES = [
    {
        "name": "Production Deployment Approval",
        "environment_type": "production",
        "approval_type": "manual",
        "required_approvers": 2,
        "approvers": [
            {"id": "admin-1", "name": "Admin User", "email": "admin@example.com", "role": "admin"},
            SENIOR_REVIEWER,
        ],
        "timeout_hours": 24,
        "auto_approve_on_timeout": False,
    },
    {
        "name": "Staging Deployment Approval",
        "environment_type": "staging",
        "approval_type": "conditional",
        "required_approvers": 1,
        "approvers": [SENIOR_REVIEWER],
        "conditions": [
            {
                "id": "branch-condition",
                "type": "branch",
                "operator": "equals",
                "value": "main",
                "description": "Only main branch deployments require approval",
            },
        ],
        "timeout_hours": 12,
        "auto_approve_on_timeout": True,
    },
]


def main():
    print("Seeding DeployGate with default webhooks and approval rules...\n")

    for hook in DEFAULT_WEBHOOKS:
        r = httpx.post(f"{BASE}/webhooks", json=hook)
        if r.status_code != 201:
            print(f"  Failed to register webhook {hook['name']}: {r.text}")
            continue
        created = r.json()
        print(f"Webhook: ID={created['id']}, name={created['name']} (disabled)")

    for rule in DEFAULT_RULES:
        r = httpx.post(f"{BASE}/approvals/rules", json=rule)
        if r.status_code != 201:
            print(f"  Failed to create rule {rule['name']}: {r.text}")
            continue
        created = r.json()
        print(
            f"Rule: ID={created['id']}, {created['environment_type']} "
            f"needs {created['required_approvers']} approval(s)"
        )

    print("\nSeed complete! Enable the webhooks once their URLs point somewhere real.")


if __name__ == "__main__":
    main()
