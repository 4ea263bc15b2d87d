"""Idempotent merge of fetched records into the relational store."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .db import session_scope, utcnow
from .errors import DuplicateRecord, MalformedRecord, SystemicStorageError
from .identity import DedupService, ReserveOutcome, batch_identity, identify
from .models import (
    Article,
    Feed,
    IntradayPrice,
    NewsOverview,
    Overview,
    OverviewExt,
    SummaryPrice,
    Symbol,
    TopStat,
)
from .records import (
    IntradayBarRecord,
    NewsBatchRecord,
    NewsItemRecord,
    OverviewRecord,
    SummaryBarRecord,
    SymbolFlag,
    SymbolRecord,
    TopStatRecord,
)
from .relationships import RelationshipMapper
from .repository import (
    find_sid,
    get_or_create_author,
    get_or_create_source,
    mark_loaded,
)


logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 100

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"

_RECORD_TYPES = (
    SymbolRecord,
    OverviewRecord,
    IntradayBarRecord,
    SummaryBarRecord,
    TopStatRecord,
    NewsBatchRecord,
)

_UTC_OFFSET = re.compile(r"^UTC([+-])(\d{1,2})(?::?(\d{2}))?$")


class IntradayPolicy(str, Enum):
    SKIP = "skip"
    UPDATE = "update"


@dataclass(slots=True)
class ReconcileReport:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.skipped + self.failed

    def count(self, outcome: str, amount: int = 1) -> None:
        setattr(self, outcome, getattr(self, outcome) + amount)

    def fail(self, message: str, amount: int = 1) -> None:
        self.failed += amount
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def merge(self, other: "ReconcileReport") -> "ReconcileReport":
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        room = MAX_REPORTED_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(other.errors[:room])
        return self

    def as_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def parse_timezone(name: str | None) -> tzinfo:
    """Resolve provider timezone labels such as ``UTC-04`` or ``US/Eastern``."""
    if not name:
        return timezone.utc
    label = name.strip()
    match = _UTC_OFFSET.match(label)
    if match:
        sign, hours, minutes = match.groups()
        offset = timedelta(hours=int(hours), minutes=int(minutes or 0))
        return timezone(-offset if sign == "-" else offset)
    if label.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(label)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r, falling back to UTC", label)
        return timezone.utc


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        dedup: DedupService | None = None,
        mapper: RelationshipMapper | None = None,
        intraday_policy: IntradayPolicy | str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dedup = dedup or DedupService(session_factory)
        self._mapper = mapper or RelationshipMapper()
        if intraday_policy is None:
            intraday_policy = get_settings().intraday_open_session_policy
        self._intraday_policy = IntradayPolicy(intraday_policy)
        self._clock = clock or utcnow
        self._handlers: dict[type, Callable[[object], str]] = {
            SymbolRecord: self._reconcile_symbol,
            OverviewRecord: self._reconcile_overview,
            IntradayBarRecord: self._reconcile_intraday,
            SummaryBarRecord: self._reconcile_summary,
            TopStatRecord: self._reconcile_topstat,
        }

    @property
    def intraday_policy(self) -> IntradayPolicy:
        return self._intraday_policy

    def reconcile(self, batch) -> ReconcileReport:
        """Merge one record or an iterable of records, each in its own transaction."""
        report = ReconcileReport()
        records: Iterable = [batch] if isinstance(batch, _RECORD_TYPES) else batch
        for record in records:
            if isinstance(record, NewsBatchRecord):
                self._guard(record, report, lambda: self._reconcile_news(record, report))
                continue
            handler = self._handlers.get(type(record))
            if handler is None:
                report.fail(f"unsupported record type {type(record).__name__}")
                continue
            self._guard(record, report, lambda: report.count(handler(record)))
        return report

    def _scope(self):
        return session_scope(self._session_factory)

    def _guard(self, record, report: ReconcileReport, action: Callable[[], None]) -> None:
        units = (len(record.items) or 1) if isinstance(record, NewsBatchRecord) else 1
        kind = type(record).__name__
        try:
            action()
        except DuplicateRecord as exc:
            logger.debug("Skipping %s", exc)
            report.count(SKIPPED, units)
        except MalformedRecord as exc:
            logger.warning("Rejected %s: %s", kind, exc)
            report.fail(f"{kind}: {exc}", units)
        except IntegrityError as exc:
            if self._exists(record):
                logger.info("%s written concurrently, skipping", kind)
                report.count(SKIPPED, units)
            else:
                logger.warning("Constraint violation for %s: %s", kind, exc.orig)
                report.fail(f"{kind}: {exc.orig}", units)
        except SQLAlchemyError as exc:
            logger.error("Storage failure while reconciling %s: %s", kind, exc)
            raise SystemicStorageError(f"storage failure while reconciling {kind}: {exc}", report) from exc

    def _require_symbol(self, session: Session, sid: int, record: object) -> Symbol:
        symbol = session.get(Symbol, sid)
        if symbol is None:
            raise MalformedRecord(f"unknown symbol sid {sid}", record)
        return symbol

    def _exists(self, record) -> bool:
        with self._scope() as session:
            if isinstance(record, SymbolRecord):
                return self._symbol_present(session, record)
            if isinstance(record, OverviewRecord):
                return session.get(Overview, record.sid) is not None
            if isinstance(record, IntradayBarRecord):
                return self._find_intraday(session, record) is not None
            if isinstance(record, SummaryBarRecord):
                return self._find_summary(session, record) is not None
            if isinstance(record, TopStatRecord):
                sid = record.sid or find_sid(session, record.ticker)
                return sid is not None and self._find_topstat(session, record, sid) is not None
            if isinstance(record, NewsBatchRecord):
                stmt = select(NewsOverview.id).where(
                    NewsOverview.hashid == batch_identity(record.items),
                    NewsOverview.sid == record.sid,
                )
                return session.execute(stmt).first() is not None
        return False

    # reference data

    @staticmethod
    def _symbol_present(session: Session, record: SymbolRecord) -> bool:
        if session.get(Symbol, record.sid) is not None:
            return True
        stmt = select(Symbol.sid).where(Symbol.symbol == record.symbol, Symbol.region == record.region)
        return session.execute(stmt).first() is not None

    def _reconcile_symbol(self, record: SymbolRecord) -> str:
        record.validate()
        with self._scope() as session:
            holder = session.get(Symbol, record.sid)
            if holder is not None and holder.symbol != record.symbol:
                raise MalformedRecord(f"sid {record.sid} already assigned to {holder.symbol}", record)
            if self._symbol_present(session, record):
                raise DuplicateRecord("symbol", record.symbol)
            now = self._clock()
            session.add(
                Symbol(
                    sid=record.sid,
                    symbol=record.symbol,
                    name=record.name,
                    sec_type=record.sec_type,
                    region=record.region,
                    marketopen=record.market_open,
                    marketclose=record.market_close,
                    timezone=record.timezone,
                    currency=record.currency,
                    overview=False,
                    intraday=False,
                    summary=False,
                    c_time=now,
                    m_time=now,
                )
            )
        return INSERTED

    def mark_loaded(self, sid: int, flag: SymbolFlag | str) -> bool:
        with self._scope() as session:
            return mark_loaded(session, sid, SymbolFlag(flag), now=self._clock())

    # replace-whole-row data

    def _reconcile_overview(self, record: OverviewRecord) -> str:
        record.validate()
        with self._scope() as session:
            self._require_symbol(session, record.sid, record)
            now = self._clock()
            outcome = INSERTED
            overview = session.get(Overview, record.sid)
            if overview is None:
                session.add(
                    Overview(
                        sid=record.sid,
                        symbol=record.symbol,
                        c_time=now,
                        mod_time=now,
                        **record.overview_values(),
                    )
                )
            else:
                outcome = UPDATED
                overview.symbol = record.symbol
                for column, value in record.overview_values().items():
                    setattr(overview, column, value)
                overview.mod_time = now

            ext = session.get(OverviewExt, record.sid)
            if ext is None:
                session.add(OverviewExt(sid=record.sid, c_time=now, mod_time=now, **record.ext_values()))
            else:
                outcome = UPDATED
                for column, value in record.ext_values().items():
                    setattr(ext, column, value)
                ext.mod_time = now
            session.flush()
            mark_loaded(session, record.sid, SymbolFlag.OVERVIEW, now=now)
        return outcome

    # append-only data

    @staticmethod
    def _find_intraday(session: Session, record: IntradayBarRecord) -> IntradayPrice | None:
        stmt = select(IntradayPrice).where(
            IntradayPrice.tstamp == record.tstamp, IntradayPrice.sid == record.sid
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _find_summary(session: Session, record: SummaryBarRecord) -> SummaryPrice | None:
        stmt = select(SummaryPrice).where(SummaryPrice.date == record.date, SummaryPrice.sid == record.sid)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _find_topstat(session: Session, record: TopStatRecord, sid: int) -> TopStat | None:
        stmt = select(TopStat).where(
            TopStat.date == record.date,
            TopStat.event_type == record.event_type.value,
            TopStat.sid == sid,
        )
        return session.execute(stmt).scalar_one_or_none()

    def in_open_session(self, symbol: Symbol, tstamp: datetime) -> bool:
        """True while ``tstamp`` falls in today's session and the market has not closed."""
        local_now = self._clock().replace(tzinfo=timezone.utc).astimezone(parse_timezone(symbol.timezone))
        if tstamp.date() != local_now.date():
            return False
        return local_now.time() < symbol.marketclose

    def _reconcile_intraday(self, record: IntradayBarRecord) -> str:
        record.validate()
        with self._scope() as session:
            symbol = self._require_symbol(session, record.sid, record)
            existing = self._find_intraday(session, record)
            if existing is not None:
                if self._intraday_policy is IntradayPolicy.UPDATE and self.in_open_session(
                    symbol, record.tstamp
                ):
                    if existing.close == record.close and existing.volume == record.volume:
                        raise DuplicateRecord("intraday bar", record.natural_key)
                    existing.close = record.close
                    existing.volume = record.volume
                    return UPDATED
                raise DuplicateRecord("intraday bar", record.natural_key)
            session.add(
                IntradayPrice(
                    tstamp=record.tstamp,
                    sid=record.sid,
                    symbol=record.symbol,
                    open=record.open,
                    high=record.high,
                    low=record.low,
                    close=record.close,
                    volume=record.volume,
                )
            )
            session.flush()
            mark_loaded(session, record.sid, SymbolFlag.INTRADAY, now=self._clock())
        return INSERTED

    def _reconcile_summary(self, record: SummaryBarRecord) -> str:
        record.validate()
        with self._scope() as session:
            self._require_symbol(session, record.sid, record)
            if self._find_summary(session, record) is not None:
                raise DuplicateRecord("summary bar", record.natural_key)
            session.add(
                SummaryPrice(
                    date=record.date,
                    sid=record.sid,
                    symbol=record.symbol,
                    open=record.open,
                    high=record.high,
                    low=record.low,
                    close=record.close,
                    volume=record.volume,
                )
            )
            session.flush()
            mark_loaded(session, record.sid, SymbolFlag.SUMMARY, now=self._clock())
        return INSERTED

    def _reconcile_topstat(self, record: TopStatRecord) -> str:
        record.validate()
        with self._scope() as session:
            sid = record.sid or find_sid(session, record.ticker)
            if sid is None:
                raise MalformedRecord(f"unknown ticker {record.ticker}", record)
            self._require_symbol(session, sid, record)
            if self._find_topstat(session, record, sid) is not None:
                raise DuplicateRecord("top stat", (record.date, record.event_type.value, sid))
            session.add(
                TopStat(
                    date=record.date,
                    event_type=record.event_type.value,
                    sid=sid,
                    symbol=record.ticker,
                    price=record.price,
                    change_val=record.change_val,
                    change_pct=record.change_pct,
                    volume=record.volume,
                )
            )
        return INSERTED

    # news

    def _reconcile_news(self, batch: NewsBatchRecord, report: ReconcileReport) -> None:
        batch.validate()
        items = list(batch.items)
        state = _NewsBatchState(
            hashid=batch_identity(items),
            items=len(items),
            fetched_at=batch.fetched_at or self._clock(),
        )
        with self._scope() as session:
            self._require_symbol(session, batch.sid, batch)
            state.overview_id = self._find_news_overview(session, batch.sid, state.hashid)
        if state.overview_id is not None:
            logger.info("News batch for %s already stored, checking %s items", batch.ticker, len(items))

        for item in items:
            partial = ReconcileReport()
            self._guard_item(batch, item, partial, state)
            report.merge(partial)

    @staticmethod
    def _find_news_overview(session: Session, sid: int, hashid: str) -> int | None:
        stmt = select(NewsOverview.id).where(NewsOverview.hashid == hashid, NewsOverview.sid == sid)
        return session.execute(stmt).scalar_one_or_none()

    def _news_overview_id(self, session: Session, batch: NewsBatchRecord, state: _NewsBatchState) -> int:
        if state.overview_id is not None:
            return state.overview_id
        existing = self._find_news_overview(session, batch.sid, state.hashid)
        if existing is not None:
            return existing
        overview = NewsOverview(sid=batch.sid, items=state.items, hashid=state.hashid, creation=state.fetched_at)
        session.add(overview)
        session.flush()
        return overview.id

    def _guard_item(
        self, batch: NewsBatchRecord, item: NewsItemRecord, report: ReconcileReport, state: _NewsBatchState
    ) -> None:
        try:
            item.validate()
            report.count(self._merge_news_item(batch, item, state))
        except DuplicateRecord as exc:
            logger.debug("Skipping %s", exc)
            report.count(SKIPPED)
        except MalformedRecord as exc:
            logger.warning("Rejected news item for %s: %s", batch.ticker, exc)
            report.fail(f"news item {item.url or item.title}: {exc}")
        except IntegrityError as exc:
            if self._feed_exists(batch.sid, identify(item)):
                report.count(SKIPPED)
            else:
                logger.warning("Constraint violation for news item %s: %s", item.url, exc.orig)
                report.fail(f"news item {item.url or item.title}: {exc.orig}")

    def _feed_exists(self, sid: int, articleid: str) -> bool:
        with self._scope() as session:
            stmt = select(Feed.id).where(Feed.sid == sid, Feed.articleid == articleid)
            return session.execute(stmt).first() is not None

    def _merge_news_item(self, batch: NewsBatchRecord, item: NewsItemRecord, state: _NewsBatchState) -> str:
        try:
            return self._reconcile_news_item(batch, item, state)
        except IntegrityError as exc:
            # A concurrent writer created a shared row first; the retry finds it.
            logger.info("Retrying news item %s after constraint violation: %s", item.url, exc.orig)
            return self._reconcile_news_item(batch, item, state)

    def _reconcile_news_item(self, batch: NewsBatchRecord, item: NewsItemRecord, state: _NewsBatchState) -> str:
        """Merge one item's overview, article, feed and associations in a single transaction.

        A failure anywhere rolls every row of the item back, including a
        batch overview created for it. An unchanged feed raises
        ``DuplicateRecord`` so nothing is rewritten.
        """
        content_hash = identify(item)
        with self._scope() as session:
            overview_id = self._news_overview_id(session, batch, state)
            source = get_or_create_source(session, item.source.strip(), item.source_domain)
            author_ids = [
                get_or_create_author(session, name.strip()).id
                for name in item.authors
                if name and name.strip()
            ]
            outcome = self._dedup.reserve(
                Article(
                    hashid=content_hash,
                    sourceid=source.id,
                    category=item.category,
                    title=item.title,
                    url=item.url,
                    summary=item.summary,
                    banner=item.banner_image,
                    author=author_ids[0] if author_ids else None,
                    ct=item.time_published,
                ),
                session=session,
            )
            if outcome is ReserveOutcome.DUPLICATE:
                logger.debug("Article %s already stored, linking to %s", content_hash, batch.ticker)

            stmt = select(Feed).where(Feed.sid == batch.sid, Feed.articleid == content_hash)
            feed = session.execute(stmt).scalar_one_or_none()
            if feed is None:
                result = INSERTED
                feed = Feed(
                    sid=batch.sid,
                    newsoverviewid=overview_id,
                    articleid=content_hash,
                    sourceid=source.id,
                    osentiment=item.overall_sentiment_score,
                    sentlabel=item.overall_sentiment_label,
                )
                session.add(feed)
                session.flush()
                self._mapper.attach(session, feed, item.authors, item.topics, item.ticker_sentiments)
            else:
                result = UPDATED
                previous = self._mapper.snapshot(session, feed.id)
                self._mapper.attach(session, feed, item.authors, item.topics, item.ticker_sentiments)
                if (
                    feed.osentiment == item.overall_sentiment_score
                    and feed.sentlabel == item.overall_sentiment_label
                    and self._mapper.snapshot(session, feed.id) == previous
                ):
                    raise DuplicateRecord("feed", (batch.sid, content_hash))
                feed.newsoverviewid = overview_id
                feed.osentiment = item.overall_sentiment_score
                feed.sentlabel = item.overall_sentiment_label
        state.overview_id = overview_id
        return result


@dataclass(slots=True)
class _NewsBatchState:
    hashid: str
    items: int
    fetched_at: datetime
    overview_id: int | None = None


__all__ = ["IntradayPolicy", "ReconcileReport", "Reconciler", "parse_timezone"]
