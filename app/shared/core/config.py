from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

STORAGE_BACKEND_SQL = "sql"
STORAGE_BACKEND_MEMORY = "memory"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the SCIM provisioning service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "SCIM Provisioning Service"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./scim.db"
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # SCIM
    # sql: SQLAlchemy-backed tables; memory: process-local maps (dev/test only)
    SCIM_STORAGE_BACKEND: str = STORAGE_BACKEND_SQL
    # When unset any non-empty bearer token is accepted.
    SCIM_BEARER_TOKEN: Optional[str] = None
    SCIM_DEFAULT_PAGE_SIZE: int = 100
    SCIM_MAX_PATCH_OPERATIONS: int = 1000

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        backend = self.SCIM_STORAGE_BACKEND.strip().lower()
        if backend not in {STORAGE_BACKEND_SQL, STORAGE_BACKEND_MEMORY}:
            raise ValueError(
                f"Invalid SCIM_STORAGE_BACKEND: {self.SCIM_STORAGE_BACKEND}. Use: sql, memory"
            )
        self.SCIM_STORAGE_BACKEND = backend

        if self.SCIM_DEFAULT_PAGE_SIZE < 0:
            raise ValueError("SCIM_DEFAULT_PAGE_SIZE must be >= 0")
        if self.SCIM_MAX_PATCH_OPERATIONS < 1:
            raise ValueError("SCIM_MAX_PATCH_OPERATIONS must be >= 1")

        if self.is_production:
            if not self.SCIM_BEARER_TOKEN or len(self.SCIM_BEARER_TOKEN) < 32:
                raise ValueError(
                    "SCIM_BEARER_TOKEN must be set to a secure value (>= 32 chars) in production."
                )
            if backend == STORAGE_BACKEND_MEMORY:
                raise ValueError("In-memory SCIM storage is not allowed in production.")
        return self

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
