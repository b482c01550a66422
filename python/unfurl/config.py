"""Application settings loaded from environment variables.

Environment Configuration:
    UNFURL_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: PostgreSQL connection string (required)
    UNFURL_INTERNAL_SECRET: Internal API secret (required in staging/prod)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (required for worker)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Storage Configuration:
    SUPABASE_URL / SUPABASE_SERVICE_KEY: Blob store for re-hosted images.
    Without them an in-memory store is used (local dev and tests).

Logging:
    LOG_LEVEL: Root log level (default INFO)
    LOG_FORMAT: json (default) or console

Provider Configuration:
    META_APP_ID / META_CLIENT_TOKEN: Credentials for the Meta oEmbed endpoints
    (instagram, facebook, threads). Provider embeds fail with a configuration
    error when unset.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - DATABASE_URL is always required
    - UNFURL_INTERNAL_SECRET is required in staging and prod only
    """

    unfurl_env: Environment = Field(default=Environment.LOCAL, alias="UNFURL_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    unfurl_internal_secret: str | None = Field(default=None, alias="UNFURL_INTERNAL_SECRET")

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Supabase Storage settings
    supabase_url: str | None = Field(default=None, alias="SUPABASE_URL")
    supabase_service_key: str | None = Field(default=None, alias="SUPABASE_SERVICE_KEY")
    storage_bucket: str = Field(default="link-previews", alias="STORAGE_BUCKET")

    # Meta oEmbed credentials
    meta_app_id: str | None = Field(default=None, alias="META_APP_ID")
    meta_client_token: str | None = Field(default=None, alias="META_CLIENT_TOKEN")

    # Remote image transform endpoint (in-process transformer when unset)
    image_transform_url: str | None = Field(default=None, alias="IMAGE_TRANSFORM_URL")

    # Base URL used when resolving re-hosted image refs into fetchable URLs
    public_api_base_url: str = Field(default="", alias="PUBLIC_API_BASE_URL")

    # Cache lifetimes
    link_preview_ttl_s: int = Field(default=7 * 24 * 60 * 60, alias="LINK_PREVIEW_TTL_S")
    oembed_ttl_s: int = Field(default=24 * 60 * 60, alias="OEMBED_TTL_S")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", alias="LOG_FORMAT")

    # Expiry sweep
    sweep_batch_size: int = Field(default=100, alias="SWEEP_BATCH_SIZE")
    sweep_interval_s: int = Field(default=300, alias="SWEEP_INTERVAL_S")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure environment-specific settings are present."""
        if self.unfurl_env in (Environment.STAGING, Environment.PROD):
            if not self.unfurl_internal_secret:
                raise ValueError(
                    f"UNFURL_INTERNAL_SECRET is required for UNFURL_ENV={self.unfurl_env.value}"
                )

        if self.sweep_batch_size < 1:
            raise ValueError("SWEEP_BATCH_SIZE must be at least 1")

        return self

    @property
    def requires_internal_header(self) -> bool:
        """Whether internal endpoints must include the internal secret header."""
        return self.unfurl_env in (Environment.STAGING, Environment.PROD)

    @property
    def has_meta_credentials(self) -> bool:
        return bool(self.meta_app_id and self.meta_client_token)

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
