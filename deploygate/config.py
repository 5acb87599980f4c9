from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///deploygate.db"
    persistence_backend: str = "sql"  # "sql" | "memory"

    # Outbound signing secret, used when an endpoint has none of its own
    webhook_secret: str = ""
    # Shared secret for inbound webhooks; empty disables verification
    inbound_webhook_secret: str = ""

    webhook_user_agent: str = "DeployGate-Webhook/1.0"
    webhook_log_limit: int = 1000
    webhook_default_timeout_ms: int = 30000

    webhooks_state_key: str = "deploygate_webhooks"
    approvals_state_key: str = "deploygate_approvals"

    # Count each user at most once toward an approval quorum
    approval_count_distinct_approvers: bool = True

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
