"""DeployGate CLI - webhook and approval gate management tool."""

import json
import os

import click
import httpx

BASE_URL = os.environ.get("DEPLOYGATE_API", "http://localhost:8000/api")


def api_get(path: str, params: dict | None = None):
    r = httpx.get(f"{BASE_URL}{path}", params={k: v for k, v in (params or {}).items() if v is not None})
    r.raise_for_status()
    return r.json()


def api_post(path: str, data: dict | None = None):
    r = httpx.post(f"{BASE_URL}{path}", json=data or {})
    r.raise_for_status()
    return r.json()


def api_patch(path: str, data: dict):
    r = httpx.patch(f"{BASE_URL}{path}", json=data)
    r.raise_for_status()
    return r.json()


def api_delete(path: str, params: dict | None = None):
    r = httpx.delete(f"{BASE_URL}{path}", params=params)
    r.raise_for_status()
    return r.json()


@click.group()
def cli():
    """DeployGate - webhook delivery and deployment approval gates CLI"""
    pass


# --- Webhook commands ---


@cli.group()
def webhook():
    """Manage outbound webhooks."""
    pass


@webhook.command("add")
@click.option("--name", required=True)
@click.option("--url", required=True, help="Absolute http(s) URL")
@click.option("--event", "events", multiple=True, required=True, help="Event type (repeatable)")
@click.option("--secret", default=None, help="HMAC signing secret")
@click.option("--bearer-token", default=None)
@click.option("--max-retries", type=int, default=3)
@click.option("--timeout-ms", type=int, default=30000)
def webhook_add(name, url, events, secret, bearer_token, max_retries, timeout_ms):
    """Register a webhook endpoint."""
    auth = {"type": "bearer", "token": bearer_token} if bearer_token else {"type": "none"}
    result = api_post("/webhooks", {
        "name": name,
        "url": url,
        "events": list(events),
        "secret": secret,
        "authentication": auth,
        "retry": {"max_retries": max_retries},
        "timeout": timeout_ms,
    })
    click.echo(f"Webhook registered: ID={result['id']}")


@webhook.command("list")
def webhook_list():
    """List webhook endpoints."""
    hooks = api_get("/webhooks")
    if not hooks:
        click.echo("No webhooks registered.")
        return
    for h in hooks:
        state = "enabled" if h["is_enabled"] else "disabled"
        click.echo(f"  {h['id']}  {h['name']}  {state}  events={','.join(h['events'])}")


@webhook.command("enable")
@click.argument("webhook_id")
def webhook_enable(webhook_id: str):
    api_patch(f"/webhooks/{webhook_id}", {"is_enabled": True})
    click.echo(f"Webhook {webhook_id} enabled")


@webhook.command("disable")
@click.argument("webhook_id")
def webhook_disable(webhook_id: str):
    """Disable a webhook and cancel its waiting retries."""
    api_patch(f"/webhooks/{webhook_id}", {"is_enabled": False})
    click.echo(f"Webhook {webhook_id} disabled")


@webhook.command("remove")
@click.argument("webhook_id")
def webhook_remove(webhook_id: str):
    api_delete(f"/webhooks/{webhook_id}")
    click.echo(f"Webhook {webhook_id} removed")


@webhook.command("test")
@click.argument("webhook_id")
def webhook_test(webhook_id: str):
    """Send a webhook.test event to one endpoint."""
    log = api_post(f"/webhooks/{webhook_id}/test")
    outcome = "OK" if log["success"] else f"FAIL ({log.get('error')})"
    click.echo(f"Test delivery: {outcome} status={log.get('status_code')} {log['duration_ms']}ms")


@webhook.command("logs")
@click.option("--webhook-id", default=None)
@click.option("--event", default=None)
@click.option("--failed", is_flag=True, help="Only failed attempts")
@click.option("--limit", type=int, default=20)
def webhook_logs(webhook_id, event, failed, limit):
    """Show delivery attempts, newest first."""
    if webhook_id:
        logs = api_get(f"/webhooks/{webhook_id}/logs", {"limit": limit})
    else:
        logs = api_get("/webhooks/logs", {
            "event_type": event,
            "success": "false" if failed else None,
            "limit": limit,
        })
    for log in logs:
        mark = "ok " if log["success"] else "ERR"
        click.echo(
            f"  {log['timestamp']}  {mark}  {log['event']}  attempt={log['retry_count'] + 1}  "
            f"status={log.get('status_code')}  {log['url']}"
        )


@webhook.command("broadcast")
@click.argument("event")
@click.option("--data", default="{}", help="JSON event data")
def webhook_broadcast(event: str, data: str):
    """Broadcast an event to every subscribed endpoint."""
    result = api_post("/webhooks/broadcast", {"event": event, "data": json.loads(data)})
    click.echo(
        f"{event}: {result['endpoints']} endpoint(s), "
        f"{result['delivered']} delivered, {result['failed']} failed"
    )


# --- Approval rule commands ---


@cli.group()
def rule():
    """Manage approval rules."""
    pass


@rule.command("add")
@click.option("--name", required=True)
@click.option("--environment-type", required=True)
@click.option("--environment-id", default="")
@click.option("--required-approvers", type=int, default=1)
@click.option("--timeout-hours", type=float, default=24)
@click.option("--auto-approve-on-timeout", is_flag=True)
@click.option("--conditions-file", type=click.Path(exists=True), default=None, help="JSON list of conditions")
def rule_add(name, environment_type, environment_id, required_approvers, timeout_hours,
             auto_approve_on_timeout, conditions_file):
    """Create an approval rule (conditional when a conditions file is given)."""
    conditions = []
    if conditions_file:
        with open(conditions_file) as f:
            conditions = json.load(f)
    result = api_post("/approvals/rules", {
        "name": name,
        "environment_type": environment_type,
        "environment_id": environment_id,
        "approval_type": "conditional" if conditions else "manual",
        "required_approvers": required_approvers,
        "conditions": conditions,
        "timeout_hours": timeout_hours,
        "auto_approve_on_timeout": auto_approve_on_timeout,
    })
    click.echo(f"Rule created: ID={result['id']}")


@rule.command("list")
@click.option("--environment-type", default=None)
def rule_list(environment_type):
    rules = api_get("/approvals/rules", {"environment_type": environment_type})
    for r in rules:
        state = "enabled" if r["is_enabled"] else "disabled"
        click.echo(
            f"  {r['id']}  {r['name']}  {r['environment_type']}  {r['approval_type']}  "
            f"approvers={r['required_approvers']}  timeout={r['timeout_hours']}h  {state}"
        )


@rule.command("remove")
@click.argument("rule_id")
def rule_remove(rule_id: str):
    api_delete(f"/approvals/rules/{rule_id}")
    click.echo(f"Rule {rule_id} removed")


# --- Approval request commands ---


@cli.group()
def request():
    """Inspect and act on approval requests."""
    pass


@request.command("evaluate")
@click.argument("deployment_id")
@click.option("--environment-id", required=True)
@click.option("--environment-type", required=True)
@click.option("--branch", default=None)
@click.option("--author", default=None)
def request_evaluate(deployment_id, environment_id, environment_type, branch, author):
    """Gate a deployment, creating its approval request if rules apply."""
    deployment = {k: v for k, v in {"branch": branch, "author": author}.items() if v}
    result = api_post("/approvals/evaluate", {
        "deployment_id": deployment_id,
        "environment_id": environment_id,
        "environment_type": environment_type,
        "deployment": deployment or None,
    })
    if not result["requires_approval"]:
        click.echo("No approval required.")
        return
    req = result["request"]
    click.echo(f"Approval required: {req['required_approvals']} approval(s), status={req['status']}")
    click.echo(f"  Expires: {req['expires_at']}")


@request.command("list")
@click.option("--status", type=click.Choice(["pending", "approved", "rejected", "expired"]), default=None)
def request_list(status):
    requests = api_get("/approvals/requests", {"status": status})
    if not requests:
        click.echo("No approval requests.")
        return
    for r in requests:
        approvals = sum(1 for a in r["approvals"] if a["action"] == "approve")
        click.echo(
            f"  {r['id']}  {r['environment_type']}  {r['status']}  "
            f"{approvals}/{r['required_approvals']}  expires={r['expires_at']}"
        )


@request.command("info")
@click.argument("request_id")
def request_info(request_id: str):
    result = api_get(f"/approvals/requests/{request_id}")
    click.echo(json.dumps(result, indent=2))


def _act(request_id: str, action: str, user_id: str, name: str, email: str, comment: str):
    result = api_post(f"/approvals/requests/{request_id}/actions", {
        "user_id": user_id,
        "user_name": name,
        "user_email": email,
        "action": action,
        "comment": comment,
    })
    click.echo(f"Request {request_id}: {result['status']}")


@request.command("approve")
@click.argument("request_id")
@click.option("--user-id", required=True)
@click.option("--name", default="")
@click.option("--email", default="")
@click.option("--comment", default="")
def request_approve(request_id, user_id, name, email, comment):
    _act(request_id, "approve", user_id, name, email, comment)


@request.command("reject")
@click.argument("request_id")
@click.option("--user-id", required=True)
@click.option("--name", default="")
@click.option("--email", default="")
@click.option("--comment", default="")
def request_reject(request_id, user_id, name, email, comment):
    """Reject a request. A single rejection vetoes the deployment."""
    _act(request_id, "reject", user_id, name, email, comment)


@request.command("sweep")
def request_sweep():
    """Resolve every pending request past its deadline."""
    result = api_post("/approvals/sweep")
    click.echo(f"Resolved {result['resolved']} expired request(s)")
    for r in result["requests"]:
        click.echo(f"  {r['id']} -> {r['status']}")


# --- Notifications ---


@cli.command("notifications")
@click.option("--unread", is_flag=True)
@click.option("--user-id", default=None)
def notifications(unread, user_id):
    """List approval notifications, newest first."""
    items = api_get("/approvals/notifications", {
        "unread_only": "true" if unread else None,
        "user_id": user_id,
    })
    for n in items:
        mark = " " if n["is_read"] else "*"
        click.echo(f" {mark} {n['created_at']}  {n['title']}: {n['message']}")


if __name__ == "__main__":
    cli()
