"""
LevelRisk Configuration.

Pydantic Settings v2 — loads from .env, environment variables.

Rule thresholds are NOT configured here; they live in the rule catalog
file (RULE_CATALOG_PATH) and its per-site overrides.
"""

from datetime import datetime
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ──────────────────────────────────────────────────────
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # ── API ───────────────────────────────────────────────────────────────
    allowed_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        alias="CORS_ORIGINS",
    )

    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = Field(
        default="sqlite+aiosqlite:///./levelrisk.db",
        alias="DATABASE_URL",
    )
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")
    db_pool_recycle: int = Field(default=3600, alias="DB_POOL_RECYCLE")
    auto_create_tables: bool = Field(default=True, alias="AUTO_CREATE_TABLES")

    # ── Site & Rules ─────────────────────────────────────────────────────
    site_config_path: str = Field(default="config/site.json", alias="SITE_CONFIG_PATH")
    rule_catalog_path: str = Field(default="config/rules.json", alias="RULE_CATALOG_PATH")
    catalog_seed_effective_from: datetime = Field(
        default=datetime(2000, 1, 1),
        alias="CATALOG_SEED_EFFECTIVE_FROM",
        description="effective_from of the catalog version seeded from file on first start",
    )

    # ── Ingestion ─────────────────────────────────────────────────────────
    max_future_skew_seconds: int = Field(default=120, alias="MAX_FUTURE_SKEW_SECONDS")

    # ── Retention (days) ───────────────────────────────────────────────────
    retention_events_days: int = Field(default=180, alias="RETENTION_EVENTS_DAYS")
    retention_measurements_days: int = Field(default=180, alias="RETENTION_MEASUREMENTS_DAYS")
    retention_snapshots_days: int = Field(default=90, alias="RETENTION_SNAPSHOTS_DAYS")

    # ── Evaluation ────────────────────────────────────────────────────────
    evaluation_concurrency: int = Field(default=8, alias="EVALUATION_CONCURRENCY")
    snapshot_interval_minutes: int = Field(default=15, alias="SNAPSHOT_INTERVAL_MINUTES")
    retention_purge_hour: int = Field(default=3, alias="RETENTION_PURGE_HOUR")
    enable_scheduler: bool = Field(default=True, alias="ENABLE_SCHEDULER")

    # ── History queries ───────────────────────────────────────────────────
    history_timeout_seconds: float = Field(default=1.0, alias="HISTORY_TIMEOUT_SECONDS")
    history_page_size: int = Field(default=50, alias="HISTORY_PAGE_SIZE")
    history_max_page_size: int = Field(default=500, alias="HISTORY_MAX_PAGE_SIZE")

    # ── Operational ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="console", alias="LOG_FORMAT")
    slow_request_ms: float = Field(default=500.0, alias="SLOW_REQUEST_MS")

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses an async driver."""
        url = self.database_url
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


settings = Settings()
