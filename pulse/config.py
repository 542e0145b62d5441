"""Pulse — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── Fetch Provider (ingestion service) ──
    fetch_provider_url: str = "http://localhost:8081"
    fetch_provider_token: Optional[str] = None
    fetch_provider_timeout: float = 60.0
    fetch_provider_max_retries: int = 3
    fetch_provider_retry_delay: float = 2.0  # seconds, doubled per attempt

    # ── App ──
    log_level: str = "INFO"

    # ── Freshness ──
    period_window_months: int = 15
    daily_recent_months: int = 3  # Most recent months kept at daily granularity
    fetch_concurrency: int = 1  # Upstream rate limit: one fetch at a time

    # ── Dashboard Queries ──
    query_batch_size: int = 8
    query_batch_threshold: int = 10  # Periods above which reads are batched
    query_timeout_seconds: float = 15.0
    query_timeout_extended_seconds: float = 30.0
    max_time_series_buckets: int = 5

    # ── Cache ──
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 500

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/pulse.db"
        return "sqlite:///./pulse.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
