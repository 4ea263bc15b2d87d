"""Pytest fixtures for the market ingest project."""

from __future__ import annotations

from datetime import datetime, time
from typing import Iterator

import pytest

from market_ingest.config import get_settings
from market_ingest.db import init_db, reset_engine, session_scope
from market_ingest.models import Symbol
from market_ingest.rate_limit import reset_rate_limiter


@pytest.fixture(autouse=True)
def configure_environment(tmp_path, monkeypatch) -> Iterator[None]:
    env_vars = {
        "ALPHA_VANTAGE_API_KEY": "test-key",
        "SQLITE_PATH": str(tmp_path / "test.db"),
        "SYMBOL_FILES": str(tmp_path / "listed.txt"),
        "MISSED_SYMBOLS_PATH": str(tmp_path / "missed.txt"),
        "PROVIDER_BACKOFF_BASE_SECONDS": "0",
        "PROVIDER_CALLS_PER_MINUTE": "1200",
        "PROVIDER_BURST": "100",
        "WORKER_COUNT": "2",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    get_settings.cache_clear()
    reset_engine()
    reset_rate_limiter()
    init_db()
    yield
    get_settings.cache_clear()
    reset_engine()
    reset_rate_limiter()


@pytest.fixture
def add_symbol():
    def _add(
        sid: int,
        ticker: str,
        *,
        region: str = "USA",
        sec_type: str = "Eqty",
        timezone: str = "UTC-04",
        market_close: time = time(16, 0),
        overview: bool = False,
    ) -> int:
        now = datetime(2024, 1, 2, 9, 0)
        with session_scope() as session:
            session.add(
                Symbol(
                    sid=sid,
                    symbol=ticker,
                    name=f"{ticker} Inc",
                    sec_type=sec_type,
                    region=region,
                    marketopen=time(9, 30),
                    marketclose=market_close,
                    timezone=timezone,
                    currency="USD",
                    overview=overview,
                    intraday=False,
                    summary=False,
                    c_time=now,
                    m_time=now,
                )
            )
        return sid

    return _add
