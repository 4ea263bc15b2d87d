"""Repository helpers for symbols and shared reference rows."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .models import (
    Author,
    Overview,
    ProcType,
    Source,
    State,
    Symbol,
    TopicRef,
)
from .records import SymbolFlag


logger = logging.getLogger(__name__)


def find_sid(session: Session, ticker: str) -> int | None:
    stmt = select(Symbol.sid).where(Symbol.symbol == ticker).order_by(Symbol.sid).limit(1)
    return session.execute(stmt).scalar_one_or_none()


def resolve_tickers(session: Session, tickers: Iterable[str]) -> dict[str, int]:
    wanted = {ticker for ticker in tickers if ticker}
    if not wanted:
        return {}
    stmt = select(Symbol.symbol, Symbol.sid).where(Symbol.symbol.in_(wanted)).order_by(Symbol.sid.desc())
    # Lowest sid wins when a ticker is listed in several regions.
    return {symbol: sid for symbol, sid in session.execute(stmt)}


def known_tickers(session: Session, *, region: str | None = None) -> set[str]:
    stmt = select(Symbol.symbol)
    if region is not None:
        stmt = stmt.where(Symbol.region == region)
    return set(session.execute(stmt).scalars())


def next_sid(session: Session) -> int:
    current = session.execute(select(func.max(Symbol.sid))).scalar_one_or_none()
    return (current or 0) + 1


class SidAllocator:
    """Hands out increasing symbol ids, seeded once from storage."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory
        self._next: int | None = None
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            if self._next is None:
                with session_scope(self._session_factory) as session:
                    self._next = next_sid(session)
            sid = self._next
            self._next += 1
            return sid


def list_symbols(
    session: Session,
    *,
    region: str | None = None,
    sec_type: str | None = None,
    tickers: Sequence[str] | None = None,
    flag: SymbolFlag | None = None,
) -> list[tuple[int, str]]:
    stmt = select(Symbol.sid, Symbol.symbol).order_by(Symbol.sid)
    if region is not None:
        stmt = stmt.where(Symbol.region == region)
    if sec_type is not None:
        stmt = stmt.where(Symbol.sec_type == sec_type)
    if tickers:
        stmt = stmt.where(Symbol.symbol.in_(list(tickers)))
    if flag is not None:
        stmt = stmt.where(getattr(Symbol, flag.value).is_(True))
    return [(sid, symbol) for sid, symbol in session.execute(stmt)]


def list_symbols_missing_overview(
    session: Session, *, region: str | None = None, sec_type: str | None = None
) -> list[tuple[int, str]]:
    stmt = (
        select(Symbol.sid, Symbol.symbol)
        .outerjoin(Overview, Overview.sid == Symbol.sid)
        .where(Overview.sid.is_(None))
        .order_by(Symbol.sid)
    )
    if region is not None:
        stmt = stmt.where(Symbol.region == region)
    if sec_type is not None:
        stmt = stmt.where(Symbol.sec_type == sec_type)
    return [(sid, symbol) for sid, symbol in session.execute(stmt)]


def mark_loaded(session: Session, sid: int, flag: SymbolFlag, *, now: datetime) -> bool:
    """Set a population flag on a symbol. Flags only ever go from false to true."""
    column = getattr(Symbol, flag.value)
    stmt = (
        update(Symbol)
        .where(Symbol.sid == sid, column.is_(False))
        .values({flag.value: True, "m_time": now})
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return bool(result.rowcount)


def _get_or_create(session: Session, model, lookup: dict, defaults: dict | None = None):
    stmt = select(model).filter_by(**lookup)
    existing = session.execute(stmt).scalar_one_or_none()
    if existing is not None:
        return existing
    row = model(**lookup, **(defaults or {}))
    session.add(row)
    try:
        session.flush()
    except IntegrityError:
        # Lost a race with a concurrent writer; the caller's transaction must roll back.
        logger.info("Concurrent insert of %s %s", model.__tablename__, lookup)
        raise
    return row


def get_or_create_source(session: Session, name: str, domain: str = "") -> Source:
    return _get_or_create(session, Source, {"source": name}, {"domain": domain or ""})


def get_or_create_author(session: Session, name: str) -> Author:
    return _get_or_create(session, Author, {"author_name": name})


def get_or_create_topic(session: Session, name: str) -> TopicRef:
    return _get_or_create(session, TopicRef, {"name": name})


def get_or_create_proc_type(session: Session, name: str) -> ProcType:
    return _get_or_create(session, ProcType, {"name": name})


def get_or_create_state(session: Session, name: str) -> State:
    return _get_or_create(session, State, {"name": name})


__all__ = [
    "SidAllocator",
    "find_sid",
    "get_or_create_author",
    "get_or_create_proc_type",
    "get_or_create_source",
    "get_or_create_state",
    "get_or_create_topic",
    "known_tickers",
    "list_symbols",
    "list_symbols_missing_overview",
    "mark_loaded",
    "next_sid",
    "resolve_tickers",
]
