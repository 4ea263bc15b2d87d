"""Typed records produced by the fetch adapter and consumed by the reconciler."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Mapping

from .errors import MalformedRecord


OVERVIEW_COLUMNS = (
    "name",
    "description",
    "cik",
    "exch",
    "curr",
    "country",
    "sector",
    "industry",
    "address",
    "fiscalyearend",
    "latestquarter",
    "marketcapitalization",
    "ebitda",
    "peratio",
    "pegratio",
    "bookvalue",
    "dividendpershare",
    "dividendyield",
    "eps",
)

OVERVIEW_EXT_COLUMNS = (
    "revenuepersharettm",
    "profitmargin",
    "operatingmarginttm",
    "returnonassetsttm",
    "returnonequityttm",
    "revenuettm",
    "grossprofitttm",
    "dilutedepsttm",
    "quarterlyearningsgrowthyoy",
    "quarterlyrevenuegrowthyoy",
    "analysttargetprice",
    "trailingpe",
    "forwardpe",
    "pricetosalesratiottm",
    "pricetobookratio",
    "evtorevenue",
    "evtoebitda",
    "beta",
    "annweekhigh",
    "annweeklow",
    "fiftydaymovingaverage",
    "twohdaymovingaverage",
    "sharesoutstanding",
    "dividenddate",
    "exdividenddate",
)


class TopType(str, Enum):
    GAINER = "GAIN"
    LOSER = "LOSE"
    ACTIVE = "ACTV"


class SymbolFlag(str, Enum):
    OVERVIEW = "overview"
    INTRADAY = "intraday"
    SUMMARY = "summary"


def _require(condition: bool, message: str, record: object) -> None:
    if not condition:
        raise MalformedRecord(message, record)


def _is_price(value: object) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value >= 0


def _check_bar(record: "IntradayBarRecord | SummaryBarRecord") -> None:
    _require(isinstance(record.sid, int) and record.sid > 0, "bar without a valid sid", record)
    _require(bool(record.symbol), "bar without a symbol", record)
    for name in ("open", "high", "low", "close"):
        _require(_is_price(getattr(record, name)), f"bar {name} is not a price", record)
    _require(record.high >= record.low, "bar high below low", record)
    _require(isinstance(record.volume, int) and record.volume >= 0, "bar volume invalid", record)


@dataclass(slots=True, frozen=True)
class SymbolRecord:
    sid: int
    symbol: str
    name: str
    sec_type: str
    region: str
    market_open: time
    market_close: time
    timezone: str
    currency: str

    def validate(self) -> None:
        _require(isinstance(self.sid, int) and self.sid > 0, "symbol without a valid sid", self)
        _require(bool(self.symbol and self.symbol.strip()), "symbol without a ticker", self)
        _require(isinstance(self.market_open, time), "market open is not a time", self)
        _require(isinstance(self.market_close, time), "market close is not a time", self)

    @property
    def natural_key(self) -> int:
        return self.sid


@dataclass(slots=True, frozen=True)
class OverviewRecord:
    sid: int
    symbol: str
    values: Mapping[str, Any]

    def validate(self) -> None:
        _require(isinstance(self.sid, int) and self.sid > 0, "overview without a valid sid", self)
        _require(bool(self.symbol), "overview without a symbol", self)
        missing = [
            column
            for column in OVERVIEW_COLUMNS + OVERVIEW_EXT_COLUMNS
            if self.values.get(column) is None
        ]
        _require(not missing, f"overview missing {', '.join(missing)}", self)
        for column in ("latestquarter",):
            _require(isinstance(self.values[column], date), f"{column} is not a date", self)

    @property
    def natural_key(self) -> int:
        return self.sid

    def overview_values(self) -> dict[str, Any]:
        return {column: self.values[column] for column in OVERVIEW_COLUMNS}

    def ext_values(self) -> dict[str, Any]:
        return {column: self.values[column] for column in OVERVIEW_EXT_COLUMNS}


@dataclass(slots=True, frozen=True)
class IntradayBarRecord:
    sid: int
    symbol: str
    tstamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int

    def validate(self) -> None:
        _check_bar(self)
        _require(isinstance(self.tstamp, datetime), "intraday bar without a timestamp", self)

    @property
    def natural_key(self) -> tuple[datetime, int]:
        return (self.tstamp, self.sid)


@dataclass(slots=True, frozen=True)
class SummaryBarRecord:
    sid: int
    symbol: str
    date: date
    open: float
    high: float
    low: float
    close: float
    volume: int

    def validate(self) -> None:
        _check_bar(self)
        _require(
            isinstance(self.date, date) and not isinstance(self.date, datetime),
            "summary bar without a date",
            self,
        )

    @property
    def natural_key(self) -> tuple[date, int]:
        return (self.date, self.sid)


@dataclass(slots=True, frozen=True)
class TopStatRecord:
    date: datetime
    event_type: TopType
    ticker: str
    price: float
    change_val: float
    change_pct: float
    volume: int
    sid: int | None = None

    def validate(self) -> None:
        _require(isinstance(self.date, datetime), "top stat without a timestamp", self)
        _require(isinstance(self.event_type, TopType), "unknown top stat category", self)
        _require(bool(self.ticker), "top stat without a ticker", self)
        _require(_is_price(self.price), "top stat price invalid", self)
        for name in ("change_val", "change_pct"):
            value = getattr(self, name)
            _require(isinstance(value, (int, float)) and math.isfinite(value), f"{name} invalid", self)
        _require(isinstance(self.volume, int) and self.volume >= 0, "top stat volume invalid", self)


@dataclass(slots=True, frozen=True)
class TopicScore:
    name: str
    relevance: float


@dataclass(slots=True, frozen=True)
class TickerScore:
    ticker: str
    relevance: float
    score: float
    label: str


@dataclass(slots=True, frozen=True)
class NewsItemRecord:
    title: str
    url: str
    time_published: datetime
    source: str
    source_domain: str = ""
    category: str = ""
    summary: str = ""
    banner_image: str = ""
    authors: tuple[str, ...] = ()
    topics: tuple[TopicScore, ...] = ()
    ticker_sentiments: tuple[TickerScore, ...] = ()
    overall_sentiment_score: float = 0.0
    overall_sentiment_label: str = "Neutral"

    def validate(self) -> None:
        _require(bool(self.source and self.source.strip()), "news item without a source", self)
        _require(bool(self.url or self.title), "news item without url or title", self)
        _require(isinstance(self.time_published, datetime), "news item without a timestamp", self)
        _require(
            isinstance(self.overall_sentiment_score, (int, float))
            and math.isfinite(self.overall_sentiment_score),
            "news item sentiment invalid",
            self,
        )
        for topic in self.topics:
            _require(bool(topic.name), "topic without a name", self)
        for score in self.ticker_sentiments:
            _require(bool(score.ticker), "ticker sentiment without a ticker", self)


@dataclass(slots=True, frozen=True)
class NewsBatchRecord:
    sid: int
    ticker: str
    items: tuple[NewsItemRecord, ...]
    fetched_at: datetime | None = None

    def validate(self) -> None:
        _require(isinstance(self.sid, int) and self.sid > 0, "news batch without a valid sid", self)
        _require(bool(self.ticker), "news batch without a ticker", self)


__all__ = [
    "IntradayBarRecord",
    "NewsBatchRecord",
    "NewsItemRecord",
    "OVERVIEW_COLUMNS",
    "OVERVIEW_EXT_COLUMNS",
    "OverviewRecord",
    "SummaryBarRecord",
    "SymbolFlag",
    "SymbolRecord",
    "TickerScore",
    "TopStatRecord",
    "TopType",
    "TopicScore",
]
