"""Database setup for the market data store."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from sqlalchemy import Engine, create_engine, event, select
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings


class Base(DeclarativeBase):
    pass


TOPIC_NAMES = (
    "Blockchain",
    "Earnings",
    "Economy - Fiscal",
    "Economy - Macro",
    "Economy - Monetary",
    "Energy & Transportation",
    "Finance",
    "Financial Markets",
    "IPO",
    "Life Sciences",
    "Manufacturing",
    "Real Estate & Construction",
    "Retail & Wholesale",
    "Technology",
)

PROC_TYPE_NAMES = (
    "load_intraday",
    "load_missed",
    "load_missed_overviews",
    "load_news",
    "load_open_close",
    "load_overviews",
    "load_symbols",
    "load_tops",
)

STATE_NAMES = ("running", "success", "failed")


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _build_sqlite_url(path: str) -> str:
    db_path = Path(path)
    if not db_path.parent.exists():
        db_path.parent.mkdir(parents=True, exist_ok=True)
    resolved = db_path.resolve()
    return f"sqlite+pysqlite:///{resolved}"  # pragma: no cover - deterministic path


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_engine() -> Engine:
    settings = get_settings()
    if settings.database_url:
        return create_engine(settings.database_url, echo=False, pool_pre_ping=True)
    url = _build_sqlite_url(settings.sqlite_path)
    engine = create_engine(url, echo=False, connect_args={"timeout": 30})
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _create_engine()
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(), class_=Session, autoflush=False, expire_on_commit=False
        )
    return _session_factory


def reset_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    from . import models  # noqa: F401 - ensure models are imported

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    _seed_reference_rows()


def _seed_reference_rows() -> None:
    from .models import ProcType, State, TopicRef

    with session_scope() as session:
        for model, names in ((TopicRef, TOPIC_NAMES), (ProcType, PROC_TYPE_NAMES), (State, STATE_NAMES)):
            existing = set(session.execute(select(model.name)).scalars())
            for name in names:
                if name not in existing:
                    session.add(model(name=name))


__all__ = [
    "Base",
    "PROC_TYPE_NAMES",
    "STATE_NAMES",
    "TOPIC_NAMES",
    "get_engine",
    "get_session_factory",
    "reset_engine",
    "session_scope",
    "init_db",
    "utcnow",
]
