from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from kiddyguard.config import get_settings
from kiddyguard.models import Base
from kiddyguard.realtime import ChangeFeed, default_feed

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def make_engine(db_path: str | Path) -> Engine:
    """Create a SQLite engine with foreign keys on and write-locking transactions.

    Every transaction starts with ``BEGIN IMMEDIATE`` so two writers racing on
    the same rows serialise on the database lock instead of deadlocking on a
    shared-to-reserved lock upgrade.
    """
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": get_settings().sqlite_busy_timeout_seconds,
        },
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself (see _on_begin)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def init_db(db_path: str | Path | None = None, feed: ChangeFeed | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = make_engine(db_path)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        (feed or default_feed).attach(_SessionLocal)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


def get_session_factory() -> sessionmaker:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
