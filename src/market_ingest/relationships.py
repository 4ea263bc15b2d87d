"""Maintains the author, topic and ticker-sentiment rows owned by a feed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .models import AuthorMap, Feed, TickerSentiment, TopicMap
from .records import TickerScore, TopicScore
from .repository import get_or_create_author, get_or_create_topic, resolve_tickers


logger = logging.getLogger(__name__)

_ASSOCIATIONS = ("author_maps", "topic_maps", "ticker_sentiments")


@dataclass(slots=True, frozen=True)
class AttachResult:
    authors: int = 0
    topics: int = 0
    ticker_sentiments: int = 0
    dropped_tickers: tuple[str, ...] = ()


class RelationshipMapper:
    """Replaces a feed's association set inside the caller's transaction.

    Nothing here commits or swallows errors: a failure anywhere leaves the
    caller to roll back, so a feed ends up with its full association set or
    with none of the new rows.
    """

    def snapshot(self, session: Session, feed_id: int) -> frozenset[tuple]:
        """Content of a feed's association set, independent of row ids."""
        authors = session.execute(select(AuthorMap.authorid).where(AuthorMap.feedid == feed_id)).all()
        topics = session.execute(
            select(TopicMap.topicid, TopicMap.relscore).where(TopicMap.feedid == feed_id)
        ).all()
        sentiments = session.execute(
            select(
                TickerSentiment.sid,
                TickerSentiment.relevance,
                TickerSentiment.tsentiment,
                TickerSentiment.sentimentlable,
            ).where(TickerSentiment.feedid == feed_id)
        ).all()
        return frozenset(
            [("author", *row) for row in authors]
            + [("topic", *row) for row in topics]
            + [("ticker", *row) for row in sentiments]
        )

    def detach(self, session: Session, feed_id: int) -> int:
        removed = 0
        for model in (AuthorMap, TopicMap, TickerSentiment):
            result = session.execute(
                delete(model)
                .where(model.feedid == feed_id)
                .execution_options(synchronize_session=False)
            )
            removed += result.rowcount or 0
        return removed

    def attach(
        self,
        session: Session,
        feed: Feed,
        authors: Iterable[str],
        topics: Iterable[TopicScore],
        ticker_sentiments: Iterable[TickerScore],
    ) -> AttachResult:
        if feed.id is None:
            session.flush()
        self.detach(session, feed.id)
        session.expire(feed, list(_ASSOCIATIONS))

        author_count = 0
        for name in dict.fromkeys(name.strip() for name in authors if name and name.strip()):
            author = get_or_create_author(session, name)
            session.add(AuthorMap(feedid=feed.id, authorid=author.id))
            author_count += 1

        topic_count = 0
        seen_topics: set[str] = set()
        for topic in topics:
            if topic.name in seen_topics:
                continue
            seen_topics.add(topic.name)
            ref = get_or_create_topic(session, topic.name)
            session.add(TopicMap(sid=feed.sid, feedid=feed.id, topicid=ref.id, relscore=topic.relevance))
            topic_count += 1

        scores = list(ticker_sentiments)
        sids = resolve_tickers(session, (score.ticker for score in scores))
        dropped: list[str] = []
        sentiment_count = 0
        for score in scores:
            sid = sids.get(score.ticker)
            if sid is None:
                dropped.append(score.ticker)
                continue
            session.add(
                TickerSentiment(
                    feedid=feed.id,
                    sid=sid,
                    relevance=score.relevance,
                    tsentiment=score.score,
                    sentimentlable=score.label,
                )
            )
            sentiment_count += 1
        if dropped:
            logger.debug("Feed %s: dropped sentiments for unknown tickers %s", feed.id, dropped)
        session.flush()
        return AttachResult(
            authors=author_count,
            topics=topic_count,
            ticker_sentiments=sentiment_count,
            dropped_tickers=tuple(dropped),
        )


__all__ = ["AttachResult", "RelationshipMapper"]
