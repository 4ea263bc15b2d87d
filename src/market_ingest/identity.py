"""Content identity and duplicate detection for externally sourced news items."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from hashlib import blake2b
from typing import Iterable, Iterator, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .models import Article
from .records import NewsItemRecord


logger = logging.getLogger(__name__)

HASH_BYTES = 16
_TRACKING_PARAM_PREFIXES = ("utm_",)


class ReserveOutcome(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"


def _normalize_text(text: str | None) -> str:
    return " ".join((text or "").split()).strip().lower()


def canonical_url(url: str) -> str:
    parts = urlsplit(url.strip())
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not key.lower().startswith(_TRACKING_PARAM_PREFIXES)
    ]
    path = parts.path.rstrip("/")
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), path, urlencode(sorted(query)), "")
    )


def _digest(payload: str) -> str:
    return blake2b(payload.encode("utf-8"), digest_size=HASH_BYTES).hexdigest()


def _identity_fields(raw_article: NewsItemRecord | Mapping[str, object]) -> tuple[str, str, str, str]:
    if isinstance(raw_article, NewsItemRecord):
        return (
            raw_article.source,
            raw_article.url,
            raw_article.title,
            raw_article.time_published.isoformat(),
        )
    published = raw_article.get("time_published")
    if isinstance(published, datetime):
        published = published.isoformat()
    return (
        str(raw_article.get("source") or ""),
        str(raw_article.get("url") or ""),
        str(raw_article.get("title") or ""),
        str(published or ""),
    )


def identify(raw_article: NewsItemRecord | Mapping[str, object]) -> str:
    """Stable content hash of an article: source plus canonical URL.

    Items without a URL fall back to title and publication time. Fetch time,
    sentiment scores and summary text never contribute.
    """
    source, url, title, published = _identity_fields(raw_article)
    if url.strip():
        payload = f"{_normalize_text(source)}\x1f{canonical_url(url)}"
    else:
        payload = f"{_normalize_text(source)}\x1f{_normalize_text(title)}\x1f{published}"
    return _digest(payload)


def batch_identity(items: Iterable[NewsItemRecord | Mapping[str, object]]) -> str:
    hashes = sorted(identify(item) for item in items)
    return _digest("\n".join(hashes))


class DedupService:
    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory

    def is_known(self, content_hash: str) -> bool:
        with session_scope(self._session_factory) as session:
            return session.get(Article, content_hash) is not None

    def known_subset(self, hashes: Iterable[str]) -> set[str]:
        wanted = set(hashes)
        if not wanted:
            return set()
        with session_scope(self._session_factory) as session:
            stmt = select(Article.hashid).where(Article.hashid.in_(wanted))
            return set(session.execute(stmt).scalars())

    def reserve(self, article: Article, session: Session | None = None) -> ReserveOutcome:
        """Insert the article row unless its hash is already stored.

        Concurrent reservations of one hash race on the primary key: the loser's
        constraint violation is reported as a duplicate instead of raised.

        With ``session`` the row joins the caller's transaction instead. A
        lost race then surfaces as ``IntegrityError`` from the flush, and the
        caller rolls back and retries, finding the stored row.
        """
        if session is not None:
            if session.get(Article, article.hashid) is not None:
                return ReserveOutcome.DUPLICATE
            session.add(article)
            session.flush()
            return ReserveOutcome.NEW
        try:
            with session_scope(self._session_factory) as session:
                if session.get(Article, article.hashid) is not None:
                    return ReserveOutcome.DUPLICATE
                session.add(article)
        except IntegrityError:
            if self.is_known(article.hashid):
                logger.info("Article %s reserved concurrently, treating as duplicate", article.hashid)
                return ReserveOutcome.DUPLICATE
            raise
        return ReserveOutcome.NEW

    def tag(
        self, items: Iterable[NewsItemRecord]
    ) -> Iterator[tuple[str, NewsItemRecord, bool]]:
        for item in items:
            content_hash = identify(item)
            yield content_hash, item, self.is_known(content_hash)


__all__ = [
    "DedupService",
    "HASH_BYTES",
    "ReserveOutcome",
    "batch_identity",
    "canonical_url",
    "identify",
]
