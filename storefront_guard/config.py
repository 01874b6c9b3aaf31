"""Storefront guard configuration."""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the webhook and outbound guards."""

    # Square webhook signing
    square_webhook_secret: str = ""
    square_webhook_secret_sandbox: str = ""
    square_webhook_notification_url: str = ""

    # Shippo carrier webhooks
    shippo_webhook_secret: str = ""

    # Durable replay ledger (in-memory when unset)
    redis_url: str | None = None
    webhook_ledger_timeout_seconds: float = 2.0

    # Inbound webhook limits
    webhook_max_event_age_seconds: float = 300.0
    webhook_clock_skew_seconds: float = 60.0
    webhook_max_body_bytes: int = 1024 * 1024
    square_ip_ranges: list[str] = []
    webhook_debug_enabled: bool = False

    # Per-IP fixed window rate limits (production is stricter)
    rate_limit_window_seconds: float = 60.0
    rate_limit_sandbox_max: int = 200
    rate_limit_production_max: int = 100
    rate_limit_sweep_interval_seconds: float = 60.0

    # Outbound guards
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 60.0
    breaker_half_open_requests: int = 3
    dedup_ttl_seconds: float = 5.0
    outbound_timeout_seconds: float = 10.0
    outbound_max_retries: int = 3
    outbound_retry_delay_seconds: float = 1.0

    model_config = {"env_file": ".env", "extra": "ignore"}

    @field_validator(
        "square_webhook_secret",
        "square_webhook_secret_sandbox",
        "shippo_webhook_secret",
        mode="before",
    )
    @classmethod
    def _strip_secret(cls, value: object) -> object:
        # Signing keys never carry surrounding whitespace
        if isinstance(value, str):
            return value.strip()
        return value


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
