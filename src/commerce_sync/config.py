"""Application configuration management."""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from sqlalchemy.engine import make_url


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_name: str = "commerce-sync"
    app_env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # API Settings
    # -------------------------------------------------------------------------
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_workers: int = 4
    cors_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["http://localhost:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # -------------------------------------------------------------------------
    # Shopify Admin API
    # -------------------------------------------------------------------------
    shopify_api_version: str = "2025-07"
    shopify_webhook_secret: str = ""
    upstream_timeout_seconds: float = 15.0
    upstream_page_limit: int = 250
    upstream_requests_per_second: float = 4.0
    upstream_burst: int = 1
    upstream_retry_after_seconds: float = 2.0

    # -------------------------------------------------------------------------
    # PostgreSQL Database
    # -------------------------------------------------------------------------
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "commerce"
    postgres_password: str = ""
    postgres_db: str = "commerce_sync"
    database_url_override: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct PostgreSQL connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        """Construct synchronous connection URL (for Alembic).

        Follows ``database_url_override`` with its async driver swapped for the
        dialect default, so migrations target the same database as the app.
        """
        if self.database_url_override:
            url = make_url(self.database_url_override)
            return url.set(drivername=url.get_backend_name()).render_as_string(hide_password=False)
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # -------------------------------------------------------------------------
    # Redis
    # -------------------------------------------------------------------------
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL, defaulting to Redis URL."""
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL, defaulting to Redis URL."""
        return self.celery_result_backend or self.redis_url

    # -------------------------------------------------------------------------
    # Sync Coordinator
    # -------------------------------------------------------------------------
    sync_interval_minutes: int = 10
    sync_lock_key: int = 987654321
    sync_lock_backend: Literal["postgres", "redis", "local"] = "postgres"
    sync_lock_ttl_seconds: int = 900
    sync_entities: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["products", "customers", "orders"]
    )

    @field_validator("sync_entities", mode="before")
    @classmethod
    def parse_sync_entities(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [entity.strip() for entity in v.split(",") if entity.strip()]
        return v

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------
    webhook_dedup_ttl_seconds: int = 86400


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
