"""ORM models for stored entities."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class Symbol(Base):
    __tablename__ = "symbols"
    __table_args__ = (Index("ix_symbols_symbol", "symbol"),)

    sid: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(Text(), nullable=False)
    sec_type: Mapped[str] = mapped_column(String(32), nullable=False)
    region: Mapped[str] = mapped_column(String(32), nullable=False)
    marketopen: Mapped[dt.time] = mapped_column(Time(), nullable=False)
    marketclose: Mapped[dt.time] = mapped_column(Time(), nullable=False)
    timezone: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    overview: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    intraday: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    summary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    c_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    m_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Overview(Base):
    __tablename__ = "overviews"

    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(Text(), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    cik: Mapped[str] = mapped_column(String(32), nullable=False)
    exch: Mapped[str] = mapped_column(String(32), nullable=False)
    curr: Mapped[str] = mapped_column(String(16), nullable=False)
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    sector: Mapped[str] = mapped_column(String(128), nullable=False)
    industry: Mapped[str] = mapped_column(String(256), nullable=False)
    address: Mapped[str] = mapped_column(Text(), nullable=False)
    fiscalyearend: Mapped[str] = mapped_column(String(32), nullable=False)
    latestquarter: Mapped[dt.date] = mapped_column(Date(), nullable=False)
    marketcapitalization: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ebitda: Mapped[int] = mapped_column(BigInteger, nullable=False)
    peratio: Mapped[float] = mapped_column(Float, nullable=False)
    pegratio: Mapped[float] = mapped_column(Float, nullable=False)
    bookvalue: Mapped[float] = mapped_column(Float, nullable=False)
    dividendpershare: Mapped[float] = mapped_column(Float, nullable=False)
    dividendyield: Mapped[float] = mapped_column(Float, nullable=False)
    eps: Mapped[float] = mapped_column(Float, nullable=False)
    c_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    mod_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class OverviewExt(Base):
    __tablename__ = "overviewexts"

    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), primary_key=True)
    revenuepersharettm: Mapped[float] = mapped_column(Float, nullable=False)
    profitmargin: Mapped[float] = mapped_column(Float, nullable=False)
    operatingmarginttm: Mapped[float] = mapped_column(Float, nullable=False)
    returnonassetsttm: Mapped[float] = mapped_column(Float, nullable=False)
    returnonequityttm: Mapped[float] = mapped_column(Float, nullable=False)
    revenuettm: Mapped[int] = mapped_column(BigInteger, nullable=False)
    grossprofitttm: Mapped[int] = mapped_column(BigInteger, nullable=False)
    dilutedepsttm: Mapped[float] = mapped_column(Float, nullable=False)
    quarterlyearningsgrowthyoy: Mapped[float] = mapped_column(Float, nullable=False)
    quarterlyrevenuegrowthyoy: Mapped[float] = mapped_column(Float, nullable=False)
    analysttargetprice: Mapped[float] = mapped_column(Float, nullable=False)
    trailingpe: Mapped[float] = mapped_column(Float, nullable=False)
    forwardpe: Mapped[float] = mapped_column(Float, nullable=False)
    pricetosalesratiottm: Mapped[float] = mapped_column(Float, nullable=False)
    pricetobookratio: Mapped[float] = mapped_column(Float, nullable=False)
    evtorevenue: Mapped[float] = mapped_column(Float, nullable=False)
    evtoebitda: Mapped[float] = mapped_column(Float, nullable=False)
    beta: Mapped[float] = mapped_column(Float, nullable=False)
    annweekhigh: Mapped[float] = mapped_column(Float, nullable=False)
    annweeklow: Mapped[float] = mapped_column(Float, nullable=False)
    fiftydaymovingaverage: Mapped[float] = mapped_column(Float, nullable=False)
    twohdaymovingaverage: Mapped[float] = mapped_column(Float, nullable=False)
    sharesoutstanding: Mapped[float] = mapped_column(Float, nullable=False)
    dividenddate: Mapped[dt.date] = mapped_column(Date(), nullable=False)
    exdividenddate: Mapped[dt.date] = mapped_column(Date(), nullable=False)
    c_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    mod_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class IntradayPrice(Base):
    __tablename__ = "intradayprices"
    __table_args__ = (UniqueConstraint("tstamp", "sid", name="uq_intradayprices_tstamp_sid"),)

    eventid: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tstamp: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    open: Mapped[float] = mapped_column(Float, nullable=False)
    high: Mapped[float] = mapped_column(Float, nullable=False)
    low: Mapped[float] = mapped_column(Float, nullable=False)
    close: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[int] = mapped_column(BigInteger, nullable=False)


class SummaryPrice(Base):
    __tablename__ = "summaryprices"
    __table_args__ = (UniqueConstraint("date", "sid", name="uq_summaryprices_date_sid"),)

    eventid: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date(), nullable=False)
    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    open: Mapped[float] = mapped_column(Float, nullable=False)
    high: Mapped[float] = mapped_column(Float, nullable=False)
    low: Mapped[float] = mapped_column(Float, nullable=False)
    close: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[int] = mapped_column(BigInteger, nullable=False)


class TopStat(Base):
    __tablename__ = "topstats"
    __table_args__ = (
        UniqueConstraint("date", "event_type", "sid", name="topstats_date_event_type_sid_unique"),
    )

    eventid: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    date: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    event_type: Mapped[str] = mapped_column(String(8), nullable=False)
    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    change_val: Mapped[float] = mapped_column(Float, nullable=False)
    change_pct: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Source(Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    domain: Mapped[str] = mapped_column(String(256), nullable=False)


class Author(Base):
    __tablename__ = "authors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    author_name: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)


class Article(Base):
    __tablename__ = "articles"

    hashid: Mapped[str] = mapped_column(String(64), primary_key=True)
    sourceid: Mapped[int] = mapped_column(ForeignKey("sources.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(256), nullable=False)
    title: Mapped[str] = mapped_column(Text(), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    summary: Mapped[str] = mapped_column(Text(), nullable=False)
    banner: Mapped[str] = mapped_column(String(2048), nullable=False)
    author: Mapped[int | None] = mapped_column(ForeignKey("authors.id"), nullable=True)
    ct: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class NewsOverview(Base):
    __tablename__ = "newsoverviews"
    __table_args__ = (UniqueConstraint("hashid", "sid", name="unique_creation_sid"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), nullable=False)
    items: Mapped[int] = mapped_column(Integer, nullable=False)
    hashid: Mapped[str] = mapped_column(String(64), nullable=False)
    creation: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Feed(Base):
    __tablename__ = "feeds"
    __table_args__ = (UniqueConstraint("sid", "articleid", name="uq_feeds_sid_article"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), nullable=False)
    newsoverviewid: Mapped[int] = mapped_column(ForeignKey("newsoverviews.id"), nullable=False)
    articleid: Mapped[str] = mapped_column(ForeignKey("articles.hashid"), nullable=False)
    sourceid: Mapped[int] = mapped_column(ForeignKey("sources.id"), nullable=False)
    osentiment: Mapped[float] = mapped_column(Float, nullable=False)
    sentlabel: Mapped[str] = mapped_column(String(64), nullable=False)

    author_maps: Mapped[list["AuthorMap"]] = relationship(
        back_populates="feed", cascade="all, delete-orphan", passive_deletes=True
    )
    topic_maps: Mapped[list["TopicMap"]] = relationship(
        back_populates="feed", cascade="all, delete-orphan", passive_deletes=True
    )
    ticker_sentiments: Mapped[list["TickerSentiment"]] = relationship(
        back_populates="feed", cascade="all, delete-orphan", passive_deletes=True
    )


class AuthorMap(Base):
    __tablename__ = "authormaps"
    __table_args__ = (UniqueConstraint("feedid", "authorid", name="uq_authormaps_feed_author"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    feedid: Mapped[int] = mapped_column(ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False)
    authorid: Mapped[int] = mapped_column(ForeignKey("authors.id"), nullable=False)

    feed: Mapped[Feed] = relationship(back_populates="author_maps")


class TopicRef(Base):
    __tablename__ = "topicrefs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)


class TopicMap(Base):
    __tablename__ = "topicmaps"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), nullable=False)
    feedid: Mapped[int] = mapped_column(ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False)
    topicid: Mapped[int] = mapped_column(ForeignKey("topicrefs.id"), nullable=False)
    relscore: Mapped[float] = mapped_column(Float, nullable=False)

    feed: Mapped[Feed] = relationship(back_populates="topic_maps")


class TickerSentiment(Base):
    __tablename__ = "tickersentiments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    feedid: Mapped[int] = mapped_column(ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False)
    sid: Mapped[int] = mapped_column(BigInteger, ForeignKey("symbols.sid"), nullable=False)
    relevance: Mapped[float] = mapped_column(Float, nullable=False)
    tsentiment: Mapped[float] = mapped_column(Float, nullable=False)
    sentimentlable: Mapped[str] = mapped_column(String(64), nullable=False)

    feed: Mapped[Feed] = relationship(back_populates="ticker_sentiments")


class ProcType(Base):
    __tablename__ = "proctypes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)


class State(Base):
    __tablename__ = "states"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)


class ProcState(Base):
    __tablename__ = "procstates"
    __table_args__ = (
        # At most one unclosed run per proc type.
        Index(
            "uq_procstates_active_proc",
            "proc_id",
            unique=True,
            sqlite_where=text("end_state IS NULL"),
            postgresql_where=text("end_state IS NULL"),
        ),
    )

    spid: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    proc_id: Mapped[int] = mapped_column(ForeignKey("proctypes.id"), nullable=False)
    start_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_state: Mapped[int | None] = mapped_column(ForeignKey("states.id"), nullable=True)
    end_time: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    inserted: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated: Mapped[int | None] = mapped_column(Integer, nullable=True)
    skipped: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    note: Mapped[str | None] = mapped_column(Text(), nullable=True)


__all__ = [
    "Article",
    "Author",
    "AuthorMap",
    "Feed",
    "IntradayPrice",
    "NewsOverview",
    "Overview",
    "OverviewExt",
    "ProcState",
    "ProcType",
    "Source",
    "State",
    "SummaryPrice",
    "Symbol",
    "TickerSentiment",
    "TopStat",
    "TopicMap",
    "TopicRef",
]
