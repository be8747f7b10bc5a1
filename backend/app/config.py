"""
Application configuration loaded from environment variables.

Uses pydantic-settings for typed, validated configuration with .env file support.
Accepts both the short env var names used by the edge deployment (PB_URL,
PB_TOKEN) and descriptive aliases (RECORD_STORE_URL, RECORD_STORE_TOKEN)
via AliasChoices.
"""

from enum import Enum
from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class AuthMode(str, Enum):
    """How the record store credential is attached to outgoing reads."""
    NONE = "none"
    BEARER = "bearer"
    RETRY_ON_401 = "retry_on_401"


class DayBoundary(str, Enum):
    """Which clock defines midnight for the "today" window."""
    UTC = "utc"
    LOCAL = "local"


class Settings(BaseSettings):
    """Application settings — loaded from environment variables or .env file."""

    # ── App ──────────────────────────────────────────
    app_env: str = "development"
    log_level: str = "INFO"
    cors_origins: str = "*"

    # ── Record store ─────────────────────────────────
    pb_url: str = Field(
        default="",
        validation_alias=AliasChoices("pb_url", "record_store_url"),
    )
    pb_token: str = Field(
        default="",
        validation_alias=AliasChoices("pb_token", "record_store_token"),
    )
    auth_mode: AuthMode = AuthMode.RETRY_ON_401
    request_timeout_seconds: float = 10.0

    # ── Collections ──────────────────────────────────
    ingestion_collection: str = "news_raw"
    triage_collection: str = "directed_items"
    events_collection: str = "events"
    generation_collection: str = "publish_ready"
    publication_collection: str = "published_posts"

    # ── Field aliases ────────────────────────────────
    brand_field: str = "vertical"
    event_brand_field: str = "vertical"
    dup_field: str = "source_url"
    source_field: str = "source_domain"
    verticals: str = "news,expat,dias,sport,business,finance,tech"

    # ── Aggregation ──────────────────────────────────
    day_boundary: DayBoundary = DayBoundary.UTC
    duplicate_sample_size: int = 100
    scan_page_size: int = 500
    scan_max_pages: int = 10
    token_cost_per_token: float = 0.000008
    cache_max_age_seconds: int = 15

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def verticals_list(self) -> list[str]:
        """Parse the per-vertical breakdown keys from comma-separated string."""
        return [v.strip() for v in self.verticals.split(",") if v.strip()]

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def store_url(self) -> str:
        """Record store base URL without trailing slashes."""
        return self.pb_url.strip().rstrip("/")

    @property
    def store_configured(self) -> bool:
        return bool(self.store_url)

    @property
    def token_configured(self) -> bool:
        return bool(self.pb_token)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
