"""
Configuration management with pydantic-settings.

All environment variables are validated at startup. A missing required
variable (``DATABASE_URL``) fails immediately with a clear message.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Database ──────────────────────────────────────────────────────
    database_url: str = Field(
        description="Async connection string (postgresql+asyncpg://...)",
    )
    database_url_sync: str = Field(
        default="",
        description="Sync connection string for Alembic (postgresql://...)",
    )

    # ── Redis / ARQ ───────────────────────────────────────────────────
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection string for ARQ workers.",
    )

    # ── Notifications ─────────────────────────────────────────────────
    slack_webhook_url: str = Field(
        default="",
        description="Slack incoming webhook URL for health alerts.",
    )

    # ── Logging ───────────────────────────────────────────────────────
    log_level: str = Field(default="INFO")

    # ── Redirect tracer ───────────────────────────────────────────────
    tracer_max_hops: int = Field(default=10, ge=1, description="Hard cap on followed redirects.")
    tracer_soft_hop_cap: int = Field(default=3, ge=0, description="Longer chains lower confidence to medium.")
    tracer_request_timeout: float = Field(default=10.0, gt=0, description="Per-request timeout (s).")
    tracer_max_retries: int = Field(default=2, ge=0, description="Retries per hop on transient errors.")
    tracer_backoff_base: float = Field(default=0.5, ge=0)
    tracer_backoff_max: float = Field(default=8.0, ge=0)
    tracer_rate_limit_retries: int = Field(default=2, ge=0, description="Backoffs on HTTP 429 before giving up.")
    tracer_user_agent: str = Field(default="LinkGuard/1.0 (Link Health Monitor)")

    # ── Audit runs ────────────────────────────────────────────────────
    audit_concurrency: int = Field(default=5, ge=1, description="Links traced in parallel per run.")
    audit_trace_timeout: float = Field(default=30.0, gt=0, description="Budget for one whole trace (s).")
    audit_min_interval_minutes: int = Field(default=60, ge=0)
    audit_schedule_interval_hours: int = Field(default=24, ge=1)
    audit_stale_run_minutes: int = Field(default=60, ge=1)
    audit_incremental_max_age_hours: int = Field(default=24, ge=1)
    stock_probe_enabled: bool = Field(default=False, description="Fetch landing pages to guess stock status.")

    # ── Commission optimizer ──────────────────────────────────────────
    commission_conversion_rate: float = Field(default=0.03, ge=0, le=1)
    commission_average_order_value: float = Field(default=50.0, ge=0)
    commission_min_monthly_clicks: int = Field(default=10, ge=0)
    commission_min_monthly_gain: float = Field(default=10.0, ge=0)


# Singleton instance — import this everywhere
settings = Settings()  # type: ignore[call-arg]
