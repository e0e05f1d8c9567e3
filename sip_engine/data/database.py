"""Database engine and session management.

One engine per process, created by init_database(). Components that need
short-lived sessions (the schedule registry, the reconciler) take the
session factory; request-style callers use the get_db_session() context
manager.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sip_engine.data.models import Base

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _create_engine(database_url: str) -> Engine:
    """Create an engine with SQLite-friendly settings where needed."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            # Share the single in-memory database across sessions
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            db_path = database_url.replace("sqlite:///", "", 1)
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                database_url, connect_args={"check_same_thread": False}
            )

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True)


def init_database(database_url: Optional[str] = None) -> Engine:
    """Initialize the global engine and create missing tables.

    Args:
        database_url: Connection URL. Defaults to Config.database_url.

    Returns:
        The initialized Engine
    """
    global _engine, _session_factory

    if database_url is None:
        from sip_engine.config.base import get_config

        database_url = get_config().database_url

    if _engine is not None:
        _engine.dispose()

    _engine = _create_engine(database_url)
    Base.metadata.create_all(_engine)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.debug(f"Database initialized: {_engine.url}")
    return _engine


def get_engine() -> Engine:
    """Return the global engine, initializing it on first use."""
    if _engine is None:
        init_database()
    return _engine


def get_session_factory() -> sessionmaker:
    """Return the global session factory, initializing on first use."""
    if _session_factory is None:
        init_database()
    return _session_factory


def get_session() -> Session:
    """Create a new session. Caller is responsible for closing it."""
    return get_session_factory()()


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Like get_db_session(), for an explicit session factory."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Session context manager that commits on success and rolls back on error.

    Example:
        >>> with get_db_session() as db:
        ...     db.add(plan)
    """
    with session_scope(get_session_factory()) as session:
        yield session


def close_database() -> None:
    """Dispose of the global engine."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
