"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

_BACKEND_ENV = (_THIS_FILE.parent.parent.parent / ".env").as_posix()
if os.path.exists(_BACKEND_ENV) and _BACKEND_ENV not in _candidate_envs:
    _candidate_envs.append(_BACKEND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    PROJECT_NAME: str = "Itemize Receipt Ingestion"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Dev DB fallback (fail fast by default)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Redis / dramatiq.  A broker URL of "stub" uses dramatiq's in-memory
    # StubBroker (tests, local runs without Redis).
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")
    STORAGE_KEY_PREFIX: str = Field(default="receipts")
    SIGNED_URL_EXPIRY_SECONDS: int = Field(default=3600)

    # Auth
    # Disable auth bypass by default.  Override in .env only when running
    # locally.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    DEV_TENANT_ID: int = Field(default=1)
    DEV_ACTOR_ID: str = Field(default="dev-user")
    SECRET_KEY: str = Field(default="changeme")
    JWT_ALGORITHM: str = Field(default="HS256")
    # Shared secret for internal calls (extraction worker handoff, reaper).
    INTERNAL_API_SECRET: Optional[str] = Field(default=None)

    # File Upload
    MAX_UPLOAD_SIZE: int = 20 * 1024 * 1024  # 20MB

    # Extraction handoff
    # "http" posts to EXTRACTION_WORKER_URL; "queue" enqueues a dramatiq
    # message consumed by the extraction worker.
    EXTRACTION_HANDOFF: str = Field(default="http")
    EXTRACTION_WORKER_URL: str = Field(default="http://localhost:8001/internal/process-receipt")
    EXTRACTION_TIMEOUT_SECONDS: float = Field(default=10.0)
    EXTRACTION_QUEUE_NAME: str = Field(default="extraction")
    EXTRACTION_ACTOR_NAME: str = Field(default="process_receipt")

    # Stuck-job reaper
    REAPER_DEFAULT_THRESHOLD_MINUTES: int = Field(default=15)
    REAPER_MAX_THRESHOLD_MINUTES: int = Field(default=1440)
    REAPER_DEFAULT_LIMIT: int = Field(default=10)
    REAPER_MAX_LIMIT: int = Field(default=50)
    REAPER_CRON_ENABLED: bool = Field(default=False)
    REAPER_CRON_INTERVAL_SECONDS: int = Field(default=300)

    # Warranty enrichment
    PERPLEXITY_API_KEY: Optional[str] = Field(default=None)
    PERPLEXITY_BASE_URL: str = Field(default="https://api.perplexity.ai")
    PERPLEXITY_MODEL: str = Field(default="sonar")
    WARRANTY_AI_TIMEOUT_SECONDS: float = Field(default=15.0)
    WARRANTY_CACHE_TTL_DAYS: int = Field(default=30)
    WARRANTY_DEFAULT_MONTHS: int = Field(default=12)
    WARRANTY_CLAIM_TTL_SECONDS: int = Field(default=300)
    WARRANTY_PENDING_ITEMS_LIMIT: int = Field(default=200)

    # Rate limiting ("memory" for a single instance, "redis" when shared)
    RATE_LIMIT_BACKEND: str = Field(default="memory")
    UPLOAD_RATE_LIMIT_PER_MIN: int = Field(default=30)
    WARRANTY_CHECK_RATE_LIMIT_PER_MIN: int = Field(default=10)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()
