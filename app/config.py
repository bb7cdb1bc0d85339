"""
Mio Backend — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hard per-commit operation ceiling of the document store.
STORE_MAX_BATCH_OPS = 500


class Settings(BaseSettings):
    """Central configuration for the Mio backend."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Document store
    # ------------------------------------------------------------------ #
    STORE_BACKEND: str = "sql"  # "sql" | "memory"

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or private IP
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "mio_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "mio"

    # ------------------------------------------------------------------ #
    # Redis – Memorystore for Redis (archive leases)
    # ------------------------------------------------------------------ #
    REDIS_URL: str

    # ------------------------------------------------------------------ #
    # Matching
    # ------------------------------------------------------------------ #
    MATCH_THRESHOLD: int = 3
    SUPER_MATCH_THRESHOLD: int = 7
    PROFILE_FETCH_CHUNK_SIZE: int = 10
    COOLDOWN_SCHEDULE_MINUTES: List[float] = [1, 2, 5]
    SEARCH_CONFLICT_RETRIES: int = 1

    # ------------------------------------------------------------------ #
    # Favorites
    # ------------------------------------------------------------------ #
    MAX_FAVORITES: int = 10
    MAX_FAVORITE_REMOVALS: int = 5
    FAVORITE_REMOVAL_COOLDOWN_MINUTES: float = 5

    # ------------------------------------------------------------------ #
    # Message archival
    # ------------------------------------------------------------------ #
    MESSAGE_BATCH_SIZE: int = 20
    KEEP_RECENT: int = 40
    ARCHIVE_THRESHOLD: int = 60
    ARCHIVE_COMMIT_BUDGET: int = 400
    ARCHIVE_LEASE_SECONDS: int = 300
    ARCHIVE_PREFIX: str = "archives"

    # ------------------------------------------------------------------ #
    # Push notifications (Expo)
    # ------------------------------------------------------------------ #
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    EXPO_ACCESS_TOKEN: str = ""
    EXPO_CHUNK_SIZE: int = 100
    PUSH_TIMEOUT_SECONDS: float = 10.0
    PUSH_MAX_ATTEMPTS: int = 3
    PUSH_RETRY_BASE_SECONDS: float = 1.0

    # ------------------------------------------------------------------ #
    # Request identity / scheduler
    # ------------------------------------------------------------------ #
    CALLER_ID_HEADER: str = "X-User-Id"
    SCHEDULER_TOKEN: str = ""

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------ #
    # Google Cloud Platform
    # ------------------------------------------------------------------ #
    GCP_PROJECT_ID: str = ""
    GCP_REGION: str = "europe-west2"
    GCS_BUCKET_NAME: str = ""
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("COOLDOWN_SCHEDULE_MINUTES")
    @classmethod
    def _schedule_must_be_positive(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("COOLDOWN_SCHEDULE_MINUTES must not be empty")
        if any(m < 0 for m in v):
            raise ValueError(f"Cooldown delays must be non-negative, got {v}")
        return v

    @field_validator(
        "MATCH_THRESHOLD",
        "PROFILE_FETCH_CHUNK_SIZE",
        "MESSAGE_BATCH_SIZE",
        "ARCHIVE_COMMIT_BUDGET",
        "EXPO_CHUNK_SIZE",
        "PUSH_MAX_ATTEMPTS",
    )
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be >= 1, got {v}")
        return v

    @field_validator("ARCHIVE_COMMIT_BUDGET")
    @classmethod
    def _budget_within_store_limit(cls, v: int) -> int:
        if v > STORE_MAX_BATCH_OPS:
            raise ValueError(
                f"ARCHIVE_COMMIT_BUDGET must be <= {STORE_MAX_BATCH_OPS}, got {v}"
            )
        return v

    @model_validator(mode="after")
    def _thresholds_consistent(self) -> "Settings":
        if self.SUPER_MATCH_THRESHOLD < self.MATCH_THRESHOLD:
            raise ValueError("SUPER_MATCH_THRESHOLD must be >= MATCH_THRESHOLD")
        if self.KEEP_RECENT < 0 or self.ARCHIVE_THRESHOLD <= self.KEEP_RECENT:
            raise ValueError("ARCHIVE_THRESHOLD must be greater than KEEP_RECENT")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
