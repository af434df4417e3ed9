"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: Optional[Engine] = None

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def _engine_kwargs(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "future": True}
    return {
        "pool_size": 5,
        "max_overflow": 5,
        "pool_timeout": 5,
        "pool_recycle": 300,
        "pool_pre_ping": True,
        "future": True,
    }


def configure_sqlite_engine(engine: Engine) -> Engine:
    """
    Enable foreign keys and hand transaction control to SQLAlchemy.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT scoping; emitting BEGIN ourselves keeps nested units correct.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    return engine


def get_engine() -> Engine:
    """Create the process-wide engine on first use and bind the session factory."""
    global _engine
    if _engine is None:
        url = settings.database_url
        _engine = create_engine(url, echo=settings.database_echo, **_engine_kwargs(url))
        if url.startswith("sqlite"):
            configure_sqlite_engine(_engine)
        SessionLocal.configure(bind=_engine)
        logger.info("Database engine initialised for dialect %s", _engine.dialect.name)
    return _engine


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Session scope for workers and scripts: commit on success, rollback on error."""
    get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "configure_sqlite_engine",
    "SessionLocal",
    "get_db_session",
    "get_engine",
]
