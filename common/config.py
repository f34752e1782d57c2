"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./fleet_scheduling.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    db_lock_timeout_seconds: float = Field(
        default=5.0,
        description="Upper bound for lock waits and statements against the store.",
    )
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="30/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    log_dir: str = Field(default="logs", description="Directory for per-service audit logs")

    availability_cache_enabled: bool = Field(
        default=False,
        description="Cache computed busy sets per process. Only coherent for single-instance deployments.",
    )
    availability_cache_ttl: int = Field(default=30, description="TTL (s) for cached busy sets")

    reserve_max_attempts: int = Field(default=3, ge=1, description="Commit attempts before reporting a conflict")
    reserve_retry_backoff_seconds: float = Field(default=0.05, ge=0, description="Base sleep between commit attempts")
    pending_hold_minutes: int = Field(default=30, ge=1, description="How long a pending booking holds the calendar")
    max_blackout_days: int = Field(default=365, ge=1, description="Longest blackout period an owner may declare")

    events_enabled: bool = Field(default=True, description="Publish booking/blackout events to RabbitMQ")
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ broker host")
    rabbitmq_queue: str = Field(default="scheduling-events", description="Durable queue for outbound events")

    vehicles_service_port: int = 8002
    bookings_service_port: int = 8003


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
