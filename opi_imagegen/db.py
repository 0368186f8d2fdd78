"""Database engine and session management for opi_imagegen.

This module provides the SQLAlchemy engine, session factory and base
model class for the build history.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from opi_imagegen.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def _ensure_sqlite_parent(db_url: str) -> None:
    url = make_url(db_url)
    if url.database and url.database != ":memory:":
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def get_engine(db_url: str | None = None) -> Engine:
    """Create and return a SQLAlchemy engine.

    For file-backed SQLite the parent directory is created first.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    # The build worker thread writes the history its caller created
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        _ensure_sqlite_parent(db_url)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Create and return a session factory.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Commits on success and rolls back on any exception, which is re-raised.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the build history tables.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    # Register models with the mapper before creating tables
    from opi_imagegen.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine | None = None) -> None:
    """Drop all tables. Only use in testing."""
    if engine is None:
        engine = get_engine()
    Base.metadata.drop_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "drop_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
