"""Engine and session helpers for the digest store (PostgreSQL in production, SQLite in tests)."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from channeldigest.models import db

SessionFactory = sessionmaker[Session]
SessionT = TypeVar("SessionT", bound=Session)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an SQLAlchemy engine for ``database_url``.

    Server databases get a small pre-pinged pool. SQLite connections switch on
    foreign key enforcement so ``ON DELETE CASCADE`` behaves as on PostgreSQL.
    """

    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, echo=echo)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(database_url, echo=echo, pool_pre_ping=True, pool_size=5, max_overflow=5)


def create_session_factory(engine: Engine) -> SessionFactory:
    """Sessions keep loaded attributes after commit; repository results outlive their session."""

    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: Callable[[], SessionT]) -> Iterator[SessionT]:
    """Commit on success, roll back on any error, always close."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database(engine: Engine) -> None:
    """Create the digest tables that do not exist yet."""

    db.Base.metadata.create_all(engine)
