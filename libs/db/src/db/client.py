"""Centralized SQLAlchemy engine/session helpers for the workspace.

Usage
-----
from db.client import create_schema, session_scope

create_schema(database_url=url)
with session_scope(database_url=url) as s:
    s.execute(...)

Engines are cached per database URL so a long-running process reuses one
connection pool per database, while tests can point at a fresh SQLite file
per case and call :func:`dispose_engines` afterwards.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from .models.ledger import Base

_ENGINES: dict[str, tuple[Engine, sessionmaker[Session]]] = {}
_LOCK = threading.Lock()


def _database_url(override: str | None = None) -> str:
    url = override or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot initialize database client")
    return url


def _ensure_sqlite_parent(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def get_engine(*, database_url: str | None = None) -> Engine:
    """Return the shared engine for ``database_url``, creating it on first use."""

    url = _database_url(database_url)
    with _LOCK:
        cached = _ENGINES.get(url)
        if cached is not None:
            return cached[0]
        _ensure_sqlite_parent(url)
        # Default isolation level is fine; echo disabled.
        engine = create_engine(url, pool_pre_ping=True)
        maker = sessionmaker(bind=engine, expire_on_commit=False, class_=Session)
        _ENGINES[url] = (engine, maker)
        return engine


def get_session(*, database_url: str | None = None) -> Session:
    """Return a new SQLAlchemy session bound to the shared engine."""

    url = _database_url(database_url)
    get_engine(database_url=url)
    return _ENGINES[url][1]()


@contextmanager
def session_scope(*, database_url: str | None = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = get_session(database_url=database_url)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema(*, database_url: str | None = None) -> None:
    """Create any missing tables for the registered models (idempotent)."""

    Base.metadata.create_all(bind=get_engine(database_url=database_url))


def dispose_engines() -> None:
    """Dispose and forget every cached engine."""

    with _LOCK:
        for engine, _maker in _ENGINES.values():
            engine.dispose()
        _ENGINES.clear()


__all__ = [
    "create_schema",
    "dispose_engines",
    "get_engine",
    "get_session",
    "session_scope",
]
