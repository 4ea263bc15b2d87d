"""Turns Alpha Vantage responses into typed records."""

from __future__ import annotations

import csv
import io
import logging
import math
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Callable, Collection, Iterator, Mapping

from .alphavantage_client import AlphaVantageClient
from .records import (
    OVERVIEW_COLUMNS,
    IntradayBarRecord,
    NewsBatchRecord,
    NewsItemRecord,
    OverviewRecord,
    SummaryBarRecord,
    SymbolRecord,
    TickerScore,
    TopicScore,
    TopStatRecord,
    TopType,
)


logger = logging.getLogger(__name__)

INTRADAY_HEADER = "timestamp,open,high,low,close,volume"
DAILY_SERIES_KEY = "Time Series (Daily)"

MISSING_FLOAT = -9.99
MISSING_INT = -999
MISSING_DATE = date(1900, 1, 1)

REGION_ALIASES = {
    "United States": "USA",
    "United Kingdom": "UK",
    "Frankfurt": "Frank",
    "Toronto Venture": "TOR",
    "India/Bombay": "Bomb",
    "Brazil/Sao Paolo": "SaoP",
}

SEC_TYPE_ALIASES = {
    "Equity": "Eqty",
    "ETF": "ETF",
    "Mutual Fund": "MutFund",
}

# Provider field name for every overview column.
OVERVIEW_FIELDS = {
    "name": "Name",
    "description": "Description",
    "cik": "CIK",
    "exch": "Exchange",
    "curr": "Currency",
    "country": "Country",
    "sector": "Sector",
    "industry": "Industry",
    "address": "Address",
    "fiscalyearend": "FiscalYearEnd",
    "latestquarter": "LatestQuarter",
    "marketcapitalization": "MarketCapitalization",
    "ebitda": "EBITDA",
    "peratio": "PERatio",
    "pegratio": "PEGRatio",
    "bookvalue": "BookValue",
    "dividendpershare": "DividendPerShare",
    "dividendyield": "DividendYield",
    "eps": "EPS",
    "revenuepersharettm": "RevenuePerShareTTM",
    "profitmargin": "ProfitMargin",
    "operatingmarginttm": "OperatingMarginTTM",
    "returnonassetsttm": "ReturnOnAssetsTTM",
    "returnonequityttm": "ReturnOnEquityTTM",
    "revenuettm": "RevenueTTM",
    "grossprofitttm": "GrossProfitTTM",
    "dilutedepsttm": "DilutedEPSTTM",
    "quarterlyearningsgrowthyoy": "QuarterlyEarningsGrowthYOY",
    "quarterlyrevenuegrowthyoy": "QuarterlyRevenueGrowthYOY",
    "analysttargetprice": "AnalystTargetPrice",
    "trailingpe": "TrailingPE",
    "forwardpe": "ForwardPE",
    "pricetosalesratiottm": "PriceToSalesRatioTTM",
    "pricetobookratio": "PriceToBookRatio",
    "evtorevenue": "EVToRevenue",
    "evtoebitda": "EVToEBITDA",
    "beta": "Beta",
    "annweekhigh": "52WeekHigh",
    "annweeklow": "52WeekLow",
    "fiftydaymovingaverage": "50DayMovingAverage",
    "twohdaymovingaverage": "200DayMovingAverage",
    "sharesoutstanding": "SharesOutstanding",
    "dividenddate": "DividendDate",
    "exdividenddate": "ExDividendDate",
}

_INT_COLUMNS = {"marketcapitalization", "ebitda", "revenuettm", "grossprofitttm"}
_DATE_COLUMNS = {"latestquarter", "dividenddate", "exdividenddate"}
_TEXT_COLUMNS = set(OVERVIEW_COLUMNS) - _INT_COLUMNS - _DATE_COLUMNS - {
    "peratio",
    "pegratio",
    "bookvalue",
    "dividendpershare",
    "dividendyield",
    "eps",
}

_TOP_SECTIONS = (
    ("top_gainers", TopType.GAINER),
    ("top_losers", TopType.LOSER),
    ("most_actively_traded", TopType.ACTIVE),
)


def _to_float(value: Any, default: float = MISSING_FLOAT) -> float:
    try:
        result = float(str(value).strip().rstrip("%"))
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def _to_int(value: Any, default: int = MISSING_INT) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _to_date(value: Any, default: date = MISSING_DATE) -> date:
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return default


def _to_time(value: str) -> time:
    return datetime.strptime(value.strip(), "%H:%M").time()


def parse_last_updated(value: str) -> datetime:
    """Parse ``2023-10-03 16:15:59 US/Eastern``; the zone label is dropped."""
    text = value.strip()
    try:
        return datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        stamp, _, _zone = text.rpartition(" ")
        return datetime.strptime(stamp, "%Y-%m-%d %H:%M:%S")


def parse_published(value: str) -> datetime:
    text = value.strip()
    for fmt in ("%Y%m%dT%H%M%S", "%Y%m%dT%H%M"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"unrecognised publication time {value!r}")


def overview_values(payload: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for column, provider_field in OVERVIEW_FIELDS.items():
        raw = payload.get(provider_field)
        if column in _INT_COLUMNS:
            values[column] = _to_int(raw)
        elif column in _DATE_COLUMNS:
            values[column] = _to_date(raw)
        elif column in _TEXT_COLUMNS:
            values[column] = "" if raw is None else str(raw)
        else:
            values[column] = _to_float(raw)
    return values


def read_symbol_file(path: str | Path) -> list[str]:
    """Tickers from an exchange listing file (pipe separated, ticker first)."""
    tickers: list[str] = []
    with Path(path).open(encoding="utf-8") as handle:
        reader = csv.reader(handle, delimiter="|")
        next(reader, None)
        for row in reader:
            if not row or not row[0].strip() or row[0].startswith("File Creation Time"):
                continue
            tickers.append(row[0].strip())
    return tickers


def read_missed_symbols(path: str | Path) -> list[str]:
    target = Path(path)
    if not target.exists():
        return []
    lines = target.read_text(encoding="utf-8").splitlines()
    return list(dict.fromkeys(line.strip() for line in lines if line.strip()))


def log_missed_symbol(path: str | Path, ticker: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(f"{ticker}\n")


class FetchAdapter:
    def __init__(
        self,
        client: AlphaVantageClient,
        *,
        sid_allocator: Callable[[], int] | None = None,
        news_limit: int = 50,
    ) -> None:
        self._client = client
        self._sid_allocator = sid_allocator
        self._news_limit = news_limit

    def symbols(
        self,
        keywords: str,
        *,
        exclude: Collection[str] = (),
        region: str | None = None,
    ) -> Iterator[SymbolRecord]:
        if self._sid_allocator is None:
            raise RuntimeError("symbol loading needs a sid allocator")
        text = self._client.symbol_search(keywords)
        seen: set[str] = set()
        for row in csv.DictReader(io.StringIO(text)):
            ticker = (row.get("symbol") or "").strip()
            if not ticker or ticker in exclude or ticker in seen:
                continue
            record_region = REGION_ALIASES.get(row.get("region", ""), row.get("region", ""))
            if region is not None and record_region != region:
                continue
            try:
                market_open = _to_time(row.get("marketOpen", ""))
                market_close = _to_time(row.get("marketClose", ""))
            except ValueError:
                logger.warning("Skipping %s: unreadable market hours %s", ticker, row)
                continue
            seen.add(ticker)
            raw_type = row.get("type", "")
            yield SymbolRecord(
                sid=self._sid_allocator(),
                symbol=ticker,
                name=row.get("name", ""),
                sec_type=SEC_TYPE_ALIASES.get(raw_type, raw_type),
                region=record_region,
                market_open=market_open,
                market_close=market_close,
                timezone=row.get("timezone", ""),
                currency=row.get("currency", ""),
            )

    def overview(self, sid: int, ticker: str) -> Iterator[OverviewRecord]:
        payload = self._client.overview(ticker)
        if "Symbol" not in payload:
            logger.info("No overview available for %s", ticker)
            return
        yield OverviewRecord(sid=sid, symbol=str(payload["Symbol"]), values=overview_values(payload))

    def intraday(self, sid: int, ticker: str) -> Iterator[IntradayBarRecord]:
        text = self._client.intraday(ticker)
        if INTRADAY_HEADER not in text:
            logger.info("No intraday prices for %s", ticker)
            return
        for row in csv.DictReader(io.StringIO(text)):
            try:
                tstamp = datetime.strptime(row["timestamp"], "%Y-%m-%d %H:%M:%S")
                volume = int(row["volume"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable intraday row for %s: %s", ticker, row)
                continue
            yield IntradayBarRecord(
                sid=sid,
                symbol=ticker,
                tstamp=tstamp,
                open=_to_float(row.get("open"), math.nan),
                high=_to_float(row.get("high"), math.nan),
                low=_to_float(row.get("low"), math.nan),
                close=_to_float(row.get("close"), math.nan),
                volume=volume,
            )

    def daily(self, sid: int, ticker: str) -> Iterator[SummaryBarRecord]:
        payload = self._client.daily(ticker)
        series = payload.get(DAILY_SERIES_KEY)
        if not isinstance(series, Mapping):
            logger.info("No daily prices for %s", ticker)
            return
        for day, values in series.items():
            try:
                bar_date = datetime.strptime(day, "%Y-%m-%d").date()
                volume = int(values["5. volume"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable daily bar for %s on %s", ticker, day)
                continue
            yield SummaryBarRecord(
                sid=sid,
                symbol=ticker,
                date=bar_date,
                open=_to_float(values.get("1. open"), math.nan),
                high=_to_float(values.get("2. high"), math.nan),
                low=_to_float(values.get("3. low"), math.nan),
                close=_to_float(values.get("4. close"), math.nan),
                volume=volume,
            )

    def top_stats(self) -> Iterator[TopStatRecord]:
        payload = self._client.top_gainers_losers()
        try:
            updated = parse_last_updated(str(payload["last_updated"]))
        except (KeyError, ValueError):
            logger.warning("Top movers response without a usable last_updated field")
            return
        for key, event_type in _TOP_SECTIONS:
            for entry in payload.get(key) or []:
                yield TopStatRecord(
                    date=updated,
                    event_type=event_type,
                    ticker=str(entry.get("ticker", "")).strip(),
                    price=_to_float(entry.get("price"), math.nan),
                    change_val=_to_float(entry.get("change_amount"), math.nan),
                    change_pct=_to_float(entry.get("change_percentage"), math.nan),
                    volume=_to_int(entry.get("volume"), -1),
                )

    def news(self, sid: int, ticker: str) -> Iterator[NewsBatchRecord]:
        payload = self._client.news_sentiment(ticker, limit=self._news_limit)
        feed = payload.get("feed")
        if not isinstance(feed, list):
            logger.info("No news feed for %s", ticker)
            return
        items: list[NewsItemRecord] = []
        for entry in feed:
            try:
                items.append(self._news_item(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable news item for %s: %s", ticker, exc)
        yield NewsBatchRecord(sid=sid, ticker=ticker, items=tuple(items))

    @staticmethod
    def _news_item(entry: Mapping[str, Any]) -> NewsItemRecord:
        return NewsItemRecord(
            title=str(entry.get("title") or ""),
            url=str(entry.get("url") or ""),
            time_published=parse_published(str(entry["time_published"])),
            source=str(entry.get("source") or ""),
            source_domain=str(entry.get("source_domain") or ""),
            category=str(entry.get("category_within_source") or ""),
            summary=str(entry.get("summary") or ""),
            banner_image=str(entry.get("banner_image") or ""),
            authors=tuple(str(name) for name in entry.get("authors") or ()),
            topics=tuple(
                TopicScore(name=str(topic["topic"]), relevance=_to_float(topic.get("relevance_score"), 0.0))
                for topic in entry.get("topics") or ()
            ),
            ticker_sentiments=tuple(
                TickerScore(
                    ticker=str(score["ticker"]),
                    relevance=_to_float(score.get("relevance_score"), 0.0),
                    score=_to_float(score.get("ticker_sentiment_score"), 0.0),
                    label=str(score.get("ticker_sentiment_label") or ""),
                )
                for score in entry.get("ticker_sentiment") or ()
            ),
            overall_sentiment_score=_to_float(entry.get("overall_sentiment_score"), 0.0),
            overall_sentiment_label=str(entry.get("overall_sentiment_label") or "Neutral"),
        )


__all__ = [
    "FetchAdapter",
    "OVERVIEW_FIELDS",
    "log_missed_symbol",
    "overview_values",
    "parse_last_updated",
    "parse_published",
    "read_missed_symbols",
    "read_symbol_file",
]
