"""Application configuration via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Rentflow"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 2
    slow_request_seconds: float = 1.0

    # Local durable storage (resumption records, inconsistency flags)
    database_url: str = "sqlite+aiosqlite:///./rentflow.db"

    # Booking backend
    backend_base_url: str = "http://localhost:5000/api"
    backend_api_token: Optional[str] = Field(default=None)
    backend_timeout_seconds: float = 15.0

    # Hosted checkout return page (booking/gate/checkout params are appended)
    checkout_return_url: str = "http://localhost:3000/admin/reservations"

    # Resumption record lifetimes
    intent_ttl_minutes: int = 24 * 60  # hosted checkout sessions expire after 24h
    identity_snapshot_ttl_minutes: int = 30

    # Progress polling defaults
    poll_interval_ms: int = 2000
    poll_max_consecutive_errors: int = 5
    poll_max_consecutive_empty_responses: int = 5
    poll_max_duration_ms: Optional[int] = None
    poll_result_retention_seconds: int = 300  # finished watches stay readable this long

    # Redis (Celery broker)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @computed_field
    @property
    def redis_url(self) -> str:
        """Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
