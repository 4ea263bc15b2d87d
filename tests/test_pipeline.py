from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from market_ingest.config import get_settings
from market_ingest.db import session_scope
from market_ingest.errors import FetchError, IngestError, JobCancelled, SystemicStorageError, TransientFetchError
from market_ingest.jobs import NOTE_CANCELLED, CancellationToken, JobOrchestrator, JobOutcome
from market_ingest.models import IntradayPrice, Overview, Symbol, TopStat
from market_ingest.pipeline import PipelineStats, run_job

SEARCH_RESULTS = {
    "AAPL": "symbol,name,type,region,marketOpen,marketClose,timezone,currency,matchScore\n"
    "AAPL,Apple Inc,Equity,United States,09:30,16:00,UTC-04,USD,1.0000\n"
    "AAPL.LON,Apple Inc,Equity,United Kingdom,08:00,16:30,UTC+01,GBP,0.8000\n",
    "ZZZZ": "symbol,name,type,region,marketOpen,marketClose,timezone,currency,matchScore\n"
    "ZZZZ,Zed Corp,Equity,United States,09:30,16:00,UTC-04,USD,1.0000\n",
    "EMPTY": "symbol,name,type,region,marketOpen,marketClose,timezone,currency,matchScore\n",
}

INTRADAY_CSV = """timestamp,open,high,low,close,volume
2024-01-02 10:01:00,10.0,11.0,9.5,10.5,100
2024-01-02 10:00:00,10.1,11.2,9.7,10.4,80
"""


def _patch_client(monkeypatch, name, replacement):
    monkeypatch.setattr(f"market_ingest.alphavantage_client.AlphaVantageClient.{name}", replacement)


def _count(model) -> int:
    with session_scope() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def _last_job(proc_type: str):
    (job,) = JobOrchestrator().list_recent(limit=1, proc_type=proc_type)
    return job


@pytest.fixture
def search(monkeypatch):
    calls: list[str] = []

    def fake_search(self, keywords):
        calls.append(keywords)
        return SEARCH_RESULTS.get(keywords, SEARCH_RESULTS["EMPTY"])

    _patch_client(monkeypatch, "symbol_search", fake_search)
    return calls


def test_load_symbols_stores_listings_and_logs_misses(search):
    stats = run_job("load_symbols", symbols=["AAPL", "QQQQ"])

    assert stats["targets"] == 2
    assert stats["inserted"] == 2
    with session_scope() as session:
        rows = session.execute(select(Symbol.sid, Symbol.symbol, Symbol.region).order_by(Symbol.sid)).all()
    assert [(symbol, region) for _sid, symbol, region in rows] == [("AAPL", "USA"), ("AAPL.LON", "UK")]
    assert [sid for sid, _symbol, _region in rows] == [1, 2]

    missed = Path(get_settings().missed_symbols_path).read_text(encoding="utf-8")
    assert missed.splitlines() == ["QQQQ"]
    assert _last_job("load_symbols").state is JobOutcome.SUCCESS


def test_load_symbols_skips_known_tickers(search, add_symbol):
    add_symbol(5, "AAPL")
    stats = run_job("load_symbols", symbols=["AAPL"])
    assert stats["inserted"] == 1
    with session_scope() as session:
        assert session.execute(select(Symbol.sid).where(Symbol.symbol == "AAPL.LON")).scalar_one() == 6
    assert not Path(get_settings().missed_symbols_path).exists()


def test_load_symbols_reads_listing_files(search):
    Path(get_settings().symbol_files_list()[0]).write_text(
        "Symbol|Security Name\nAAPL|Apple Inc.\nFile Creation Time: 0102202419:01|\n", encoding="utf-8"
    )
    stats = run_job("load_symbols")
    assert search == ["AAPL"]
    assert stats["inserted"] == 2


def test_load_missed_replays_and_rewrites_file(search):
    missed = Path(get_settings().missed_symbols_path)
    missed.write_text("ZZZZ\nQQQQ\nZZZZ\n", encoding="utf-8")

    stats = run_job("load_missed")

    assert sorted(search) == ["QQQQ", "ZZZZ"]
    assert stats["inserted"] == 1
    assert missed.read_text(encoding="utf-8").splitlines() == ["QQQQ"]


def test_load_missed_overviews(monkeypatch, add_symbol):
    add_symbol(1, "AAPL")
    add_symbol(2, "VOD", region="UK")
    _patch_client(
        monkeypatch,
        "overview",
        lambda self, symbol: {"Symbol": symbol, "Name": f"{symbol} Inc", "LatestQuarter": "2023-12-31"},
    )

    stats = run_job("load_missed_overviews")

    assert stats["targets"] == 1
    assert stats["inserted"] == 1
    with session_scope() as session:
        assert session.get(Overview, 1).name == "AAPL Inc"
        assert session.get(Symbol, 1).overview is True
        assert session.get(Overview, 2) is None


def test_load_intraday_targets_symbols_with_overview(monkeypatch, add_symbol):
    add_symbol(1, "AAPL", overview=True)
    add_symbol(2, "MSFT")
    requested: list[str] = []

    def fake_intraday(self, symbol, interval="1min", outputsize="compact"):
        requested.append(symbol)
        return INTRADAY_CSV

    _patch_client(monkeypatch, "intraday", fake_intraday)

    first = run_job("load_intraday")
    second = run_job("load_intraday")

    assert requested == ["AAPL", "AAPL"]
    assert (first["inserted"], first["skipped"]) == (2, 0)
    assert (second["inserted"], second["skipped"]) == (0, 2)
    assert _count(IntradayPrice) == 2
    job = _last_job("load_intraday")
    assert (job.state, job.skipped) == (JobOutcome.SUCCESS, 2)


def test_load_tops(monkeypatch, add_symbol):
    add_symbol(1, "AAPL")
    payload = {
        "last_updated": "2024-01-02 16:15:59 US/Eastern",
        "top_gainers": [
            {"ticker": "AAPL", "price": "190.1", "change_amount": "4.2", "change_percentage": "2.26%", "volume": "1000"},
            {"ticker": "NOPE", "price": "1.0", "change_amount": "0.5", "change_percentage": "50%", "volume": "10"},
        ],
        "top_losers": [],
        "most_actively_traded": [
            {"ticker": "AAPL", "price": "190.1", "change_amount": "4.2", "change_percentage": "2.26%", "volume": "1000"}
        ],
    }
    _patch_client(monkeypatch, "top_gainers_losers", lambda self: payload)

    stats = run_job("load_tops")

    assert (stats["inserted"], stats["failed"]) == (2, 1)
    assert type(stats) is dict
    assert set(stats) == PipelineStats.__required_keys__
    assert _count(TopStat) == 2


def test_transient_failures_within_budget_still_succeed(monkeypatch, add_symbol):
    monkeypatch.setenv("MAX_TRANSIENT_FAILURES", "5")
    get_settings.cache_clear()
    for sid, ticker in ((1, "AAPL"), (2, "MSFT"), (3, "IBM")):
        add_symbol(sid, ticker, overview=True)

    def flaky(self, symbol, interval="1min", outputsize="compact"):
        if symbol == "MSFT":
            raise TransientFetchError("throttled")
        return INTRADAY_CSV

    _patch_client(monkeypatch, "intraday", flaky)
    stats = run_job("load_intraday")
    assert stats["transient_failures"] == 1
    assert _last_job("load_intraday").state is JobOutcome.SUCCESS


def test_transient_failures_past_budget_fail_the_job(monkeypatch, add_symbol):
    monkeypatch.setenv("MAX_TRANSIENT_FAILURES", "1")
    get_settings.cache_clear()
    for sid, ticker in ((1, "AAPL"), (2, "MSFT"), (3, "IBM")):
        add_symbol(sid, ticker, overview=True)

    def always_throttled(self, symbol, interval="1min", outputsize="compact"):
        raise TransientFetchError("throttled")

    _patch_client(monkeypatch, "intraday", always_throttled)
    with pytest.raises(FetchError):
        run_job("load_intraday", workers=1)

    job = _last_job("load_intraday")
    assert job.state is JobOutcome.FAILED
    assert "transient" in job.note


def test_storage_failure_fails_the_job(monkeypatch, add_symbol):
    add_symbol(1, "AAPL", overview=True)
    _patch_client(monkeypatch, "intraday", lambda self, symbol, interval="1min", outputsize="compact": INTRADAY_CSV)

    def broken(self, record):
        raise OperationalError("INSERT", {}, Exception("database disk image is malformed"))

    monkeypatch.setattr("market_ingest.reconciler.Reconciler._reconcile_intraday", broken)

    with pytest.raises(SystemicStorageError):
        run_job("load_intraday")
    job = _last_job("load_intraday")
    assert job.state is JobOutcome.FAILED
    assert job.note.startswith("SystemicStorageError")


def test_skip_when_already_running():
    JobOrchestrator().begin("load_tops")
    assert run_job("load_tops", on_conflict="skip") is None


def test_cancelled_job_is_recorded(monkeypatch, add_symbol):
    add_symbol(1, "AAPL", overview=True)
    _patch_client(monkeypatch, "news_sentiment", lambda self, tickers, limit=50: {"feed": []})
    token = CancellationToken()
    token.cancel()

    with pytest.raises(JobCancelled):
        run_job("load_news", token=token)
    job = _last_job("load_news")
    assert (job.state, job.note) == (JobOutcome.FAILED, NOTE_CANCELLED)


def test_unknown_proc_type():
    with pytest.raises(IngestError):
        run_job("load_everything")
