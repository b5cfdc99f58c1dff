# vidgate/core/config.py
from __future__ import annotations

"""
# Vidgate — Centralized Configuration (Pydantic v2)

One `Settings` object with strongly-typed, environment-driven config. It is
built **once** at startup (`get_settings()`) or explicitly in tests and then
handed to every service constructor; services never read the environment.

## Goals
- Safe defaults for local/dev; explicit where prod needs secrets.
- Key material is optional at construction so dev boots without it; the call
  site that needs it raises `NotConfigured`.
- Malformed thresholds fail construction, not the first request.

## Usage
    from vidgate.core.config import get_settings
    settings = get_settings()
"""

import logging
from functools import lru_cache
from typing import Annotated, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

log = logging.getLogger(__name__)

MiB = 1024 * 1024
GiB = 1024 * MiB
MAX_GRANT_TTL_SECONDS = 7 * 24 * 60 * 60


# ─────────────────────────────────────────────────────────────
# Small helpers
# ─────────────────────────────────────────────────────────────
def _split_csv(v: str | None) -> list[str]:
    """Split a comma-separated string into a trimmed list (empty-safe)."""
    if not v:
        return []
    return [s.strip() for s in str(v).split(",") if s and s.strip()]


def _normalize_url_like(v: str | None, *, require_scheme: bool = True) -> str:
    """Normalize to a string URL without trailing slash."""
    s = (v or "").strip()
    if not s:
        return ""
    if require_scheme and not (s.startswith("http://") or s.startswith("https://")):
        s = "https://" + s
    return s.rstrip("/")


def normalize_pem(raw: str | None) -> str:
    """
    Cloud-friendly normalization for PEM stored in env:
    - Allows \\n-escaped single-line strings.
    - Strips surrounding whitespace.
    """
    s = (raw or "").strip()
    if "-----BEGIN" in s and "\\n" in s:
        s = s.replace("\\n", "\n")
    return s


# ─────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────
class Settings(BaseSettings):
    """
    Application settings sourced from environment (or passed explicitly).

    Backends:
        - `stream`: hosted-video API (direct upload URLs, TUS, signed tokens).
        - `s3`: S3 bucket + CloudFront canned-policy signed URLs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── App meta ──────────────────────────────────────────────
    PROJECT_NAME: str = "Vidgate API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENV: Literal["development", "staging", "production"] = "development"

    # ── Logging (loguru) ──────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    LOG_TO_FILE: bool = False
    LOG_DIR: str = "logs"
    LOG_FILE: str = "app.log"
    LOG_ROTATION: str = "10 MB"
    APP_DEBUG: bool = False

    # ── Request auth (JWT) ────────────────────────────────────
    JWT_SECRET_KEY: SecretStr = SecretStr("dev-secret-change-me")
    JWT_ALGORITHM: Literal["HS256", "HS384", "HS512"] = "HS256"

    # ── Backend selection ─────────────────────────────────────
    STORAGE_BACKEND: Literal["stream", "s3"] = "stream"

    # ── Hosted-video API ──────────────────────────────────────
    STREAM_API_BASE_URL: str = "https://api.cloudflare.com/client/v4"
    STREAM_API_TOKEN: Optional[SecretStr] = None
    STREAM_ACCOUNT_ID: Optional[str] = None
    STREAM_CUSTOMER_DOMAIN: Optional[str] = None  # e.g. customer-abc123.cloudflarestream.com
    STREAM_SIGNING_KEY_ID: Optional[str] = None
    STREAM_SIGNING_KEY_PEM: Optional[SecretStr] = None
    STREAM_HTTP_TIMEOUT_SECONDS: float = Field(30.0, gt=0)

    # ── S3 / CloudFront ───────────────────────────────────────
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[SecretStr] = None
    AWS_SESSION_TOKEN: Optional[SecretStr] = None
    AWS_REGION: str = "us-east-1"
    AWS_BUCKET_NAME: Optional[str] = None
    AWS_S3_ENDPOINT_URL: Optional[str] = None
    S3_KEY_PREFIX: str = "videos"
    CLOUDFRONT_DOMAIN: Optional[str] = None
    CLOUDFRONT_KEY_PAIR_ID: Optional[str] = None
    CLOUDFRONT_PRIVATE_KEY_PEM: Optional[SecretStr] = None

    # ── Upload sizing ─────────────────────────────────────────
    DIRECT_UPLOAD_THRESHOLD_BYTES: int = Field(200 * MiB, gt=0)
    MAX_UPLOAD_BYTES: int = Field(5 * GiB, gt=0)
    CHUNK_SIZE_BYTES: int = Field(50 * MiB, gt=0)
    MAX_DURATION_SECONDS: int = Field(21600, gt=0)
    UPLOAD_SESSION_DEADLINE_SECONDS: int = Field(3600, ge=60)

    # ── Retry / backoff ───────────────────────────────────────
    RETRY_MAX_ATTEMPTS: int = Field(3, ge=1, le=10)
    RETRY_CHUNK_MAX_ATTEMPTS: int = Field(5, ge=1, le=10)
    RETRY_BASE_DELAY_SECONDS: float = Field(1.0, gt=0)
    RETRY_MULTIPLIER: float = Field(2.0, ge=1.0)
    RETRY_MAX_DELAY_SECONDS: float = Field(30.0, gt=0)
    RETRY_JITTER_RATIO: float = Field(0.1, ge=0.0, le=1.0)

    # ── Confirmation polling ──────────────────────────────────
    # "5,10,15,15,15" from env; NoDecode keeps pydantic-settings from JSON-parsing it
    CONFIRM_POLL_DELAYS_SECONDS: Annotated[List[float], NoDecode] = Field(default_factory=lambda: [5, 10, 15, 15, 15])
    CONFIRM_RECHECK_INTERVAL_SECONDS: int = Field(60, ge=0)

    # ── Retention / maintenance ───────────────────────────────
    RETENTION_DAYS: int = Field(0, ge=0)  # 0 disables retention deletes
    REAPER_BATCH_SIZE: int = Field(200, ge=1)
    REAPER_SCHEDULER_ENABLED: bool = True
    REAPER_INTERVAL_MINUTES: int = Field(15, ge=1)
    REAPER_JITTER_SECONDS: int = Field(15, ge=0)

    # ── Rate limits (per user per rolling hour bucket) ────────
    UPLOAD_RATE_LIMIT_PER_HOUR: int = Field(10, ge=1)
    PLAYBACK_RATE_LIMIT_PER_HOUR: int = Field(100, ge=1)

    # ── Playback grants ───────────────────────────────────────
    PLAYBACK_TTL_SECONDS: int = Field(86400, ge=1, le=MAX_GRANT_TTL_SECONDS)

    # ── Redis ─────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CONNECT_MAX_RETRIES: int = Field(5, ge=1)
    REDIS_CONNECT_BASE_DELAY: float = Field(0.3, ge=0)
    REDIS_SOCKET_TIMEOUT: float = Field(3.0, gt=0)
    REDIS_POOL_MAX_CONNECTIONS: int = Field(64, ge=1)

    # ── Database (PostgreSQL) ─────────────────────────────────
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: SecretStr = SecretStr("postgres")
    POSTGRES_DB: str = "vidgate"
    DATABASE_URL_OVERRIDE: Optional[str] = None

    # ── Validators / normalizers ──────────────────────────────
    @field_validator("CONFIRM_POLL_DELAYS_SECONDS", mode="before")
    @classmethod
    def _assemble_poll_delays(cls, v):
        if isinstance(v, str):
            return [float(x) for x in _split_csv(v)]
        return v

    @field_validator("CONFIRM_POLL_DELAYS_SECONDS")
    @classmethod
    def _check_poll_delays(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("CONFIRM_POLL_DELAYS_SECONDS must not be empty")
        if any(d < 0 for d in v):
            raise ValueError("CONFIRM_POLL_DELAYS_SECONDS must be non-negative")
        return v

    @field_validator("CLOUDFRONT_DOMAIN", "STREAM_CUSTOMER_DOMAIN", mode="before")
    @classmethod
    def _normalize_domain(cls, v: str | None) -> str | None:
        """Accept 'cdn.example.com' or 'https://cdn.example.com'; store the bare host."""
        s = (v or "").strip()
        if not s:
            return None
        for scheme in ("https://", "http://"):
            if s.startswith(scheme):
                s = s[len(scheme):]
        return s.rstrip("/")

    @field_validator("CLOUDFRONT_PRIVATE_KEY_PEM", "STREAM_SIGNING_KEY_PEM", mode="before")
    @classmethod
    def _normalize_pem_field(cls, v):
        if v is None:
            return None
        raw = v.get_secret_value() if hasattr(v, "get_secret_value") else str(v)
        return normalize_pem(raw) or None

    @field_validator("STREAM_API_BASE_URL", mode="before")
    @classmethod
    def _normalize_api_base(cls, v) -> str:
        return _normalize_url_like(str(v or "https://api.cloudflare.com/client/v4"))

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.DIRECT_UPLOAD_THRESHOLD_BYTES > self.MAX_UPLOAD_BYTES:
            raise ValueError("DIRECT_UPLOAD_THRESHOLD_BYTES must not exceed MAX_UPLOAD_BYTES")
        if self.RETRY_BASE_DELAY_SECONDS > self.RETRY_MAX_DELAY_SECONDS:
            raise ValueError("RETRY_BASE_DELAY_SECONDS must not exceed RETRY_MAX_DELAY_SECONDS")
        return self

    # ── Derived / convenience properties ─────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def DATABASE_URL(self) -> str:
        """Sync DSN."""
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD.get_secret_value()}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def ASYNC_DATABASE_URL(self) -> str:
        """Async SQLAlchemy DSN."""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

    @property
    def cdn_base_url(self) -> str:
        """CloudFront base URL as `https://host` (empty when unset)."""
        return f"https://{self.CLOUDFRONT_DOMAIN}" if self.CLOUDFRONT_DOMAIN else ""

    @property
    def stream_configured(self) -> bool:
        return bool(self.STREAM_API_TOKEN and self.STREAM_ACCOUNT_ID)

    @property
    def cloudfront_configured(self) -> bool:
        return bool(self.CLOUDFRONT_DOMAIN and self.CLOUDFRONT_KEY_PAIR_ID and self.CLOUDFRONT_PRIVATE_KEY_PEM)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build the process-wide settings once (FastAPI dependency friendly)."""
    load_dotenv()  # harmless in prod; convenient in dev
    return Settings()


__all__ = ["Settings", "get_settings", "normalize_pem", "MiB", "GiB", "MAX_GRANT_TTL_SECONDS"]
