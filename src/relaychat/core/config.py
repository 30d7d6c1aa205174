"""
Application configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application Settings
    # ==========================================================================
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    app_name: str = Field(default="RelayChat", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    api_v1_prefix: str = Field(default="/api/v1", description="API v1 prefix")

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # ==========================================================================
    # Backend Configuration
    # ==========================================================================
    backend: Literal["supabase", "memory"] = Field(
        default="supabase",
        description="Backing store/change-feed implementation",
    )
    supabase_url: str | None = Field(default=None, description="Supabase project URL")
    supabase_anon_key: str | None = Field(default=None, description="Supabase anon (public) key")
    supabase_access_token: str | None = Field(
        default=None, description="Access token of the signed-in user session"
    )
    supabase_refresh_token: str | None = Field(
        default=None, description="Refresh token of the signed-in user session"
    )
    memory_user_id: str | None = Field(
        default=None, description="User signed in on the memory backend at startup"
    )

    @field_validator("supabase_url", mode="before")
    @classmethod
    def validate_supabase_url(cls, v: str | None, info) -> str | None:
        """Strip trailing slashes and require a URL in production."""
        if isinstance(v, str):
            v = v.strip().rstrip("/") or None
        environment = info.data.get("environment", "development")
        if environment == "production" and info.data.get("backend", "supabase") == "supabase":
            if not v or "localhost" in v or "placeholder" in v:
                raise ValueError(
                    "SUPABASE_URL must be set to the project URL in production. "
                    "Set SUPABASE_URL environment variable."
                )
        return v

    @property
    def supabase_enabled(self) -> bool:
        """Check if the Supabase backend is fully configured."""
        return bool(self.supabase_url and self.supabase_anon_key)

    # ==========================================================================
    # Realtime Subscriptions
    # ==========================================================================
    realtime_max_retries: int = Field(
        default=3, ge=0, description="Resubscribe attempts before a channel is dropped"
    )
    realtime_base_delay_ms: int = Field(
        default=1000, ge=0, description="Base backoff delay in milliseconds"
    )

    # ==========================================================================
    # Presence & Typing
    # ==========================================================================
    presence_table: str = Field(default="presence", description="Presence table name")
    typing_table: str = Field(default="typing_indicators", description="Typing status table name")
    typing_idle_timeout_ms: int = Field(
        default=2000, ge=0, description="Inactivity before typing status is cleared"
    )

    # ==========================================================================
    # Feature Flags
    # ==========================================================================
    enable_websockets: bool = Field(default=True, description="Enable WebSocket gateway")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Global settings instance
settings = get_settings()
