"""billing-sync configuration."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the reconciliation engine."""

    # Webhook ingress
    webhook_secret: str = ""
    signature_tolerance_seconds: int = 300

    # Provider
    provider_api_key: str = ""

    # Persistence / queue backends
    redis_url: str = "redis://localhost:6379/0"
    database_url: str = ""  # empty -> in-memory ledger
    queue_backend: str = "memory"  # memory | redis

    # Webhook processing
    webhook_job_type: str = "billing-webhook"
    webhook_concurrency: int = 5
    webhook_lock_seconds: int = 60
    webhook_attempts: int = 3
    webhook_backoff_seconds: float = 1.0

    # Notifications
    notification_job_type: str = "billing-notification"
    notification_attempts: int = 3
    notification_backoff_seconds: float = 5.0
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""

    # Sweep
    stale_pending_seconds: int = 900

    log_level: str = "INFO"

    model_config = {"env_prefix": "BILLING_SYNC_", "env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once from the environment."""
    return Settings()
