"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE
    # ===================
    supabase_url: str = Field(
        ...,
        description="Supabase project URL"
    )
    supabase_key: str = Field(
        ...,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key (for admin operations)"
    )

    # ===================
    # API SECURITY
    # ===================
    api_key: Optional[str] = Field(
        None,
        description="API key for authentication"
    )

    # ===================
    # LINKING THRESHOLDS
    # ===================
    auto_link_threshold: int = Field(
        default=85,
        ge=1,
        le=100,
        description="Score at or above which a message is linked without review"
    )
    suggestion_threshold: int = Field(
        default=60,
        ge=0,
        le=100,
        description="Score at or above which a reviewable suggestion is created"
    )
    backfill_orphan_confidence: int = Field(
        default=90,
        ge=0,
        le=100,
        description="Fixed score for pending documents linked during backfill"
    )
    conflict_policy: str = Field(
        default="first_match",
        pattern="^(first_match|highest_priority|skip)$",
        description="How a message matching several shipments is linked"
    )
    internal_domains: str = Field(
        default="intoglo.com",
        description="Comma-separated sender domains treated as internal"
    )

    # ===================
    # BATCH JOBS
    # ===================
    linking_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Messages fetched per page by batch linking"
    )
    linking_max_messages: int = Field(
        default=5000,
        ge=1,
        description="Upper bound on messages processed by one batch run"
    )
    linking_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Worker pool size for batch linking and backfill"
    )
    linking_timeout_seconds: Optional[float] = Field(
        None,
        gt=0,
        description="Stop scheduling new batch work after this many seconds"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )

    @model_validator(mode="after")
    def check_threshold_order(self) -> "Settings":
        """Suggestion band must sit below the auto-link band."""
        if self.suggestion_threshold >= self.auto_link_threshold:
            raise ValueError(
                "suggestion_threshold must be lower than auto_link_threshold"
            )
        return self

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def internal_domain_list(self) -> list[str]:
        """Internal domains as a normalized list."""
        return [
            d.strip().lower()
            for d in self.internal_domains.split(",")
            if d.strip()
        ]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If required env vars are missing or invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
