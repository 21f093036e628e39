"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="RecordSync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    discogs_api_url: HttpUrl = Field(
        default="https://api.discogs.com", alias="DISCOGS_API_URL"
    )
    discogs_request_token_url: str = Field(
        default="https://api.discogs.com/oauth/request_token",
        alias="DISCOGS_REQUEST_TOKEN_URL",
    )
    discogs_access_token_url: str = Field(
        default="https://api.discogs.com/oauth/access_token",
        alias="DISCOGS_ACCESS_TOKEN_URL",
    )
    discogs_authorize_url: str = Field(
        default="https://www.discogs.com/oauth/authorize",
        alias="DISCOGS_AUTHORIZE_URL",
    )
    discogs_user_agent: str = Field(
        default="RecordSync/1.0 +https://github.com/recordsync/recordsync",
        alias="DISCOGS_USER_AGENT",
    )

    discogs_consumer_key: str | None = Field(
        default=None, alias="DISCOGS_CONSUMER_KEY"
    )
    discogs_consumer_secret: str | None = Field(
        default=None, alias="DISCOGS_CONSUMER_SECRET"
    )
    discogs_access_token: str | None = Field(
        default=None, alias="DISCOGS_ACCESS_TOKEN"
    )
    discogs_oauth_token: str | None = Field(default=None, alias="DISCOGS_OAUTH_TOKEN")
    discogs_access_token_secret: str | None = Field(
        default=None, alias="DISCOGS_ACCESS_TOKEN_SECRET"
    )
    token_encryption_key: str | None = Field(
        default=None, alias="TOKEN_ENCRYPTION_KEY"
    )

    collection_ttl_seconds: int = Field(
        default=28_800, alias="COLLECTION_TTL_SECONDS", ge=60
    )
    master_ttl_seconds: int = Field(
        default=7_776_000, alias="MASTER_TTL_SECONDS", ge=3_600
    )
    progress_ttl_seconds: int = Field(
        default=86_400, alias="PROGRESS_TTL_SECONDS", ge=60
    )
    sync_cooldown_seconds: int = Field(
        default=14_400, alias="SYNC_COOLDOWN_SECONDS", ge=0
    )
    lease_ttl_seconds: int = Field(default=900, alias="LEASE_TTL_SECONDS", ge=30)
    max_rate_limit_retries: int = Field(
        default=10, alias="MAX_RATE_LIMIT_RETRIES", ge=0, le=100
    )
    enrichment_batch_size: int = Field(
        default=50, alias="ENRICHMENT_BATCH_SIZE", ge=1, le=500
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./recordsync.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "discogs_consumer_key",
        "discogs_consumer_secret",
        "discogs_access_token",
        "discogs_oauth_token",
        "discogs_access_token_secret",
        "token_encryption_key",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        """Treat blank credential values as unset."""

        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @property
    def oauth_configured(self) -> bool:
        """Return whether consumer credentials for the OAuth flow are present."""

        return bool(self.discogs_consumer_key and self.discogs_consumer_secret)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
