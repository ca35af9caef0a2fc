"""Service settings, read from the environment and ``.env``."""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Every knob of the reservation engine.

    Money is in pesewas and durations carry their unit in the name.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "HostelHub Reservations"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    api_prefix: str = "/api/v1"
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 4
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8080"]
    rate_limit_per_minute: int = 100

    # Storage
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "hostelhub"
    postgres_password: str = Field(default="hostelhub_secret")
    postgres_db: str = "hostelhub"
    db_pool_size: int = 20
    db_max_overflow: int = 10
    # e.g. "sqlite+aiosqlite:///./hostelhub.db"; wins over the postgres_* fields
    database_url_override: Optional[str] = None
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.2

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @computed_field
    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def redis_url(self) -> str:
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Identity (tokens are issued by the auth service)
    jwt_secret_key: str = Field(default="change-me-in-production")
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15

    # Holds
    hold_ttl_hours: int = 24
    hold_max_total_hours: int = 72
    hold_sweep_interval_seconds: int = 15
    hold_timers_enabled: bool = True

    # Pricing
    currency: str = "GHS"
    deposit_percent: int = 30
    academic_year_multiplier: int = 2

    # Live availability feed
    feed_backend: Literal["memory", "redis"] = "memory"
    feed_channel_prefix: str = "hostelhub:units"
    feed_queue_size: int = 100

    # Payments
    payment_gateway: Literal["stripe", "manual"] = "stripe"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    checkout_success_url: str = "http://localhost:3000/payment-success?booking={booking_id}"
    checkout_cancel_url: str = "http://localhost:3000/payment-cancelled?booking={booking_id}"
    stale_payment_minutes: int = 30
    # Receives refund-required and disputed-payment alerts
    ops_alert_webhook_url: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
