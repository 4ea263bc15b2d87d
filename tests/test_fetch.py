from __future__ import annotations

import math
from datetime import date, datetime, time
from itertools import count

import pytest

from market_ingest.errors import MalformedRecord
from market_ingest.fetch import (
    FetchAdapter,
    log_missed_symbol,
    overview_values,
    parse_last_updated,
    parse_published,
    read_missed_symbols,
    read_symbol_file,
)
from market_ingest.records import TopType

SEARCH_CSV = """symbol,name,type,region,marketOpen,marketClose,timezone,currency,matchScore
AAPL,Apple Inc,Equity,United States,09:30,16:00,UTC-04,USD,1.0000
AAPL.LON,Apple Inc,Equity,United Kingdom,08:00,16:30,UTC+01,GBP,0.8000
MSFT,Microsoft Corporation,Equity,United States,09:30,16:00,UTC-04,USD,0.5000
BAD,Broken Hours,Equity,United States,later,16:00,UTC-04,USD,0.1000
"""

INTRADAY_CSV = """timestamp,open,high,low,close,volume
2024-01-02 10:01:00,10.0,11.0,9.5,10.5,100
2024-01-02 10:00:00,10.1,11.2,9.7,10.4,not-a-number
2024-01-02 09:59:00,9.9,10.5,9.0,10.0,50
"""


class FakeClient:
    def __init__(self, **payloads) -> None:
        self.payloads = payloads
        self.calls: list[tuple] = []

    def _reply(self, name, *args):
        self.calls.append((name, *args))
        return self.payloads[name]

    def symbol_search(self, keywords):
        return self._reply("symbol_search", keywords)

    def overview(self, symbol):
        return self._reply("overview", symbol)

    def intraday(self, symbol):
        return self._reply("intraday", symbol)

    def daily(self, symbol):
        return self._reply("daily", symbol)

    def top_gainers_losers(self):
        return self._reply("top_gainers_losers")

    def news_sentiment(self, tickers, limit=50):
        return self._reply("news_sentiment", tickers, limit)


def test_symbols_normalise_region_and_type():
    sids = count(10)
    adapter = FetchAdapter(FakeClient(symbol_search=SEARCH_CSV), sid_allocator=lambda: next(sids))

    records = list(adapter.symbols("AAPL", exclude={"MSFT"}))
    assert [(r.sid, r.symbol, r.region, r.sec_type) for r in records] == [
        (10, "AAPL", "USA", "Eqty"),
        (11, "AAPL.LON", "UK", "Eqty"),
    ]
    assert records[0].market_close == time(16, 0)
    assert records[0].timezone == "UTC-04"


def test_symbols_filter_by_region():
    adapter = FetchAdapter(FakeClient(symbol_search=SEARCH_CSV), sid_allocator=count(1).__next__)
    assert [r.symbol for r in adapter.symbols("AAPL", region="UK")] == ["AAPL.LON"]


def test_symbols_need_an_allocator():
    adapter = FetchAdapter(FakeClient(symbol_search=SEARCH_CSV))
    with pytest.raises(RuntimeError):
        list(adapter.symbols("AAPL"))


def test_overview_fills_missing_values():
    payload = {"Symbol": "AAPL", "Name": "Apple Inc", "PERatio": "None", "DividendYield": "0.55%"}
    adapter = FetchAdapter(FakeClient(overview=payload))

    (record,) = list(adapter.overview(1, "AAPL"))
    record.validate()
    assert record.values["name"] == "Apple Inc"
    assert record.values["peratio"] == -9.99
    assert record.values["dividendyield"] == pytest.approx(0.55)
    assert record.values["marketcapitalization"] == -999
    assert record.values["latestquarter"] == date(1900, 1, 1)


def test_overview_without_symbol_yields_nothing():
    adapter = FetchAdapter(FakeClient(overview={}))
    assert list(adapter.overview(1, "NOPE")) == []


def test_intraday_skips_unreadable_rows():
    adapter = FetchAdapter(FakeClient(intraday=INTRADAY_CSV))
    bars = list(adapter.intraday(3, "AAPL"))
    assert [bar.tstamp for bar in bars] == [datetime(2024, 1, 2, 10, 1), datetime(2024, 1, 2, 9, 59)]
    assert bars[0].sid == 3
    assert bars[0].volume == 100


def test_intraday_without_header_yields_nothing():
    adapter = FetchAdapter(FakeClient(intraday="symbol,unexpected\n"))
    assert list(adapter.intraday(3, "AAPL")) == []


def test_daily_bars():
    payload = {
        "Meta Data": {},
        "Time Series (Daily)": {
            "2024-01-02": {"1. open": "1.0", "2. high": "2.0", "3. low": "0.5", "4. close": "1.5", "5. volume": "10"},
            "2024-01-01": {"1. open": "1.0"},
        },
    }
    adapter = FetchAdapter(FakeClient(daily=payload))
    bars = list(adapter.daily(3, "AAPL"))
    assert [(bar.date, bar.close, bar.volume) for bar in bars] == [(date(2024, 1, 2), 1.5, 10)]


def test_top_stats_sections_and_bad_values():
    payload = {
        "last_updated": "2024-01-02 16:15:59 US/Eastern",
        "top_gainers": [
            {"ticker": "AAPL", "price": "190.1", "change_amount": "4.2", "change_percentage": "2.26%", "volume": "1000"}
        ],
        "top_losers": [
            {"ticker": "MSFT", "price": "n/a", "change_amount": "-1", "change_percentage": "-0.3%", "volume": "5"}
        ],
        "most_actively_traded": [],
    }
    adapter = FetchAdapter(FakeClient(top_gainers_losers=payload))
    records = list(adapter.top_stats())

    assert [(r.ticker, r.event_type) for r in records] == [("AAPL", TopType.GAINER), ("MSFT", TopType.LOSER)]
    assert records[0].date == datetime(2024, 1, 2, 16, 15, 59)
    assert records[0].change_pct == pytest.approx(2.26)
    records[0].validate()
    assert math.isnan(records[1].price)
    with pytest.raises(MalformedRecord):
        records[1].validate()


def test_news_batch_parses_feed():
    payload = {
        "sentiment_score_definition": "x <= -0.35: Bearish",
        "feed": [
            {
                "title": "Apple beats",
                "url": "https://example.com/a",
                "time_published": "20240102T143000",
                "authors": ["Jane Doe"],
                "summary": "Strong quarter",
                "source": "Example Wire",
                "category_within_source": "Markets",
                "source_domain": "example.com",
                "topics": [{"topic": "Earnings", "relevance_score": "0.9"}],
                "overall_sentiment_score": 0.31,
                "overall_sentiment_label": "Somewhat-Bullish",
                "ticker_sentiment": [
                    {
                        "ticker": "AAPL",
                        "relevance_score": "0.8",
                        "ticker_sentiment_score": "0.4",
                        "ticker_sentiment_label": "Bullish",
                    }
                ],
            },
            {"title": "No timestamp", "url": "https://example.com/b"},
        ],
    }
    client = FakeClient(news_sentiment=payload)
    adapter = FetchAdapter(client, news_limit=20)

    (batch,) = list(adapter.news(1, "AAPL"))
    assert (batch.sid, batch.ticker) == (1, "AAPL")
    assert client.calls == [("news_sentiment", "AAPL", 20)]
    (item,) = batch.items
    assert item.time_published == datetime(2024, 1, 2, 14, 30)
    assert item.topics[0].name == "Earnings"
    assert item.ticker_sentiments[0].score == pytest.approx(0.4)
    assert item.category == "Markets"


def test_timestamp_parsers():
    assert parse_published("20240102T1430") == datetime(2024, 1, 2, 14, 30)
    assert parse_last_updated("2024-01-02 16:15:59") == datetime(2024, 1, 2, 16, 15, 59)
    with pytest.raises(ValueError):
        parse_published("yesterday")


def test_overview_values_reads_provider_names():
    values = overview_values({"52WeekHigh": "199.62", "ExDividendDate": "2023-11-10"})
    assert values["annweekhigh"] == pytest.approx(199.62)
    assert values["exdividenddate"] == date(2023, 11, 10)


def test_symbol_listing_files(tmp_path):
    listing = tmp_path / "nasdaqlisted.txt"
    listing.write_text(
        "Symbol|Security Name|Market Category\n"
        "AAPL|Apple Inc. - Common Stock|Q\n"
        "MSFT|Microsoft Corporation - Common Stock|Q\n"
        "File Creation Time: 0102202419:01|||\n",
        encoding="utf-8",
    )
    assert read_symbol_file(listing) == ["AAPL", "MSFT"]

    missed = tmp_path / "logs" / "missed.txt"
    assert read_missed_symbols(missed) == []
    log_missed_symbol(missed, "ZZZZ")
    log_missed_symbol(missed, "ZZZZ")
    log_missed_symbol(missed, "QQQQ")
    assert read_missed_symbols(missed) == ["ZZZZ", "QQQQ"]
