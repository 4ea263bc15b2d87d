"""Configuration handling for the market ingest project."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables or .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Alpha Vantage configuration
    alpha_vantage_api_key: str | None = Field(default=None, validation_alias="ALPHA_VANTAGE_API_KEY")
    alpha_vantage_base_url: AnyHttpUrl = Field(
        default="https://www.alphavantage.co", validation_alias="ALPHA_VANTAGE_BASE_URL"
    )
    provider_timeout_seconds: float = Field(
        default=20.0,
        validation_alias="PROVIDER_TIMEOUT_SECONDS",
        ge=1.0,
        le=120.0,
        description="Timeout in seconds for provider requests.",
    )
    provider_max_retries: int = Field(
        default=3,
        validation_alias="PROVIDER_MAX_RETRIES",
        ge=0,
        le=8,
        description="Number of retries for transient provider failures before giving up.",
    )
    provider_backoff_base_seconds: float = Field(
        default=1.0,
        validation_alias="PROVIDER_BACKOFF_BASE_SECONDS",
        ge=0.0,
        le=60.0,
        description="Base delay in seconds for exponential backoff between retries.",
    )
    provider_backoff_cap_seconds: float = Field(
        default=30.0,
        validation_alias="PROVIDER_BACKOFF_CAP_SECONDS",
        ge=0.5,
        le=300.0,
        description="Maximum backoff delay in seconds between retries.",
    )
    provider_calls_per_minute: float = Field(
        default=75.0,
        validation_alias="PROVIDER_CALLS_PER_MINUTE",
        gt=0.0,
        le=1200.0,
        description="Sustained request quota shared by every worker in the process.",
    )
    provider_burst: int = Field(default=5, validation_alias="PROVIDER_BURST", ge=1, le=100)

    # Storage
    sqlite_path: str = Field(default="data/market.db", validation_alias="SQLITE_PATH")
    database_url: str | None = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Full SQLAlchemy URL; overrides SQLITE_PATH when set.",
    )

    # Job behaviour
    worker_count: int = Field(default=4, validation_alias="WORKER_COUNT", ge=1, le=64)
    stale_job_minutes: int = Field(
        default=180,
        validation_alias="STALE_JOB_MINUTES",
        ge=1,
        description="Running jobs older than this are considered abandoned.",
    )
    max_transient_failures: int = Field(
        default=50,
        validation_alias="MAX_TRANSIENT_FAILURES",
        ge=0,
        description="Symbols allowed to come back empty after retries before a job fails.",
    )
    intraday_open_session_policy: Literal["skip", "update"] = Field(
        default="skip", validation_alias="INTRADAY_OPEN_SESSION_POLICY"
    )
    symbol_region: str = Field(default="USA", validation_alias="SYMBOL_REGION")
    symbol_sec_type: str = Field(default="Eqty", validation_alias="SYMBOL_SEC_TYPE")
    symbol_files: str = Field(
        default="data/nasdaqlisted.txt,data/otherlisted.txt",
        validation_alias="SYMBOL_FILES",
        description="Comma separated exchange listing files read by load_symbols.",
    )
    missed_symbols_path: str = Field(
        default="data/missed_symbols.txt",
        validation_alias="MISSED_SYMBOLS_PATH",
        description="Tickers the symbol search could not resolve; replayed by load_missed.",
    )
    news_limit: int = Field(default=50, validation_alias="NEWS_LIMIT", ge=1, le=1000)

    # Scheduler
    intraday_interval_minutes: int = Field(
        default=60, validation_alias="INTRADAY_INTERVAL_MINUTES", ge=5, le=1440
    )
    open_close_interval_minutes: int = Field(
        default=1440, validation_alias="OPEN_CLOSE_INTERVAL_MINUTES", ge=5, le=10080
    )
    tops_interval_minutes: int = Field(
        default=60, validation_alias="TOPS_INTERVAL_MINUTES", ge=5, le=1440
    )
    news_interval_minutes: int = Field(
        default=240, validation_alias="NEWS_INTERVAL_MINUTES", ge=5, le=10080
    )

    @property
    def stale_after_seconds(self) -> int:
        return self.stale_job_minutes * 60

    def symbol_files_list(self) -> list[str]:
        return [path.strip() for path in self.symbol_files.split(",") if path.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
