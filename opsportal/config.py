"""
Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

import logging
import secrets
from functools import lru_cache

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # ==========================================================================
    # Environment
    # ==========================================================================

    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # ==========================================================================
    # API Server
    # ==========================================================================

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # ==========================================================================
    # Authentication
    # ==========================================================================

    # Empty means "not configured": a per-process secret is generated instead
    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60 * 24
    min_password_length: int = 8

    # Optional bootstrap admin (created with must_change_password=True)
    default_admin_email: str = ""
    default_admin_name: str = "Administrator"
    default_admin_password: str = ""

    # ==========================================================================
    # Caches & Limits
    # ==========================================================================

    user_cache_ttl_seconds: float = 5.0
    slug_cache_ttl_seconds: float = 30.0
    activity_log_max_entries: int = 2000
    max_concurrent_uploads: int = 5
    upload_queue_timeout_seconds: float = 5.0
    max_upload_bytes: int = 10 * 1024 * 1024

    # Unwhitelisted fields on mutation bodies: dropped silently unless True
    reject_unknown_fields: bool = False

    # ==========================================================================
    # External Collaborators
    # ==========================================================================

    crm_api_base_url: str = ""
    crm_api_token: str = ""
    crm_webhook_secret: str = ""
    external_call_timeout_seconds: float = 10.0

    # ==========================================================================
    # Optional Services
    # ==========================================================================

    sentry_dsn: str = ""
    data_dir: str = "./data"

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def crm_configured(self) -> bool:
        return bool(self.crm_api_base_url and self.crm_api_token)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def ensure_signing_secret(settings: Settings) -> Settings:
    """Fill in a random per-process signing secret when none is configured."""
    if not settings.jwt_secret_key:
        logger.warning(
            "JWT_SECRET_KEY is not set - using a random per-process signing secret; "
            "issued tokens will not survive a restart"
        )
        settings.jwt_secret_key = secrets.token_urlsafe(48)
    return settings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return ensure_signing_secret(Settings())
