"""Dedup ledger: the set of DAT source files that were already processed.

The set is keyed by filename only, with no content hash and no TTL. Once a
filename is marked, normal runs skip it until an operator removes it. A file
re-delivered under a different name is therefore processed again; this is a
known limitation of filename keys, not something the store tries to detect.

Two interchangeable implementations share the :class:`ProcessedFileStore`
protocol and are injected into the orchestrator explicitly:

- :class:`InMemoryProcessedFileStore` for tests and one-off runs.
- :class:`SqlProcessedFileStore` persisted through ``libs/db``
  (``dat_processed_files``). ``claim`` relies on the unique ``filename``
  constraint with insert-or-ignore, so two workers racing on the same file
  cannot both win.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import delete, exists, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.client import create_schema, session_scope
from db.models.ledger import DatProcessedFile

from .logging_setup import get_logger

_logger = get_logger("dat_ledger.dedup")


@runtime_checkable
class ProcessedFileStore(Protocol):
    def is_processed(self, filename: str) -> bool: ...

    def mark_processed(self, filename: str) -> None: ...

    def claim(self, filename: str) -> bool: ...

    def release(self, filename: str) -> None: ...

    def clear(self) -> int: ...

    def processed_files(self) -> list[str]: ...


class InMemoryProcessedFileStore:
    """Process-local store backed by a lock-guarded ``set``."""

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._names: set[str] = set(initial)
        self._lock = threading.Lock()

    def is_processed(self, filename: str) -> bool:
        with self._lock:
            return filename in self._names

    def mark_processed(self, filename: str) -> None:
        with self._lock:
            self._names.add(filename)

    def claim(self, filename: str) -> bool:
        """Atomically mark ``filename``; return ``False`` if it was already marked."""

        with self._lock:
            if filename in self._names:
                return False
            self._names.add(filename)
            return True

    def release(self, filename: str) -> None:
        with self._lock:
            self._names.discard(filename)

    def clear(self) -> int:
        with self._lock:
            n = len(self._names)
            self._names.clear()
            return n

    def processed_files(self) -> list[str]:
        with self._lock:
            return sorted(self._names)


def _insert_ignore(session: Session, filename: str) -> bool:
    """Insert ``filename`` unless present; return ``True`` when a row was added."""

    values = {"filename": filename, "processed_at": datetime.now(UTC)}
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(DatProcessedFile).values(values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(DatProcessedFile).values(values)
    else:
        # Generic path: let the unique constraint decide inside a savepoint.
        try:
            with session.begin_nested():
                session.add(DatProcessedFile(**values))
            return True
        except IntegrityError:
            return False
    stmt = stmt.on_conflict_do_nothing(index_elements=[DatProcessedFile.filename])
    return session.execute(stmt).rowcount == 1


class SqlProcessedFileStore:
    """Persistent store in the ``dat_processed_files`` table.

    The schema is created on construction when missing.
    """

    def __init__(self, *, database_url: str) -> None:
        self.database_url = database_url
        create_schema(database_url=database_url)

    def is_processed(self, filename: str) -> bool:
        with session_scope(database_url=self.database_url) as session:
            stmt = select(exists().where(DatProcessedFile.filename == filename))
            return bool(session.execute(stmt).scalar_one())

    def mark_processed(self, filename: str) -> None:
        with session_scope(database_url=self.database_url) as session:
            _insert_ignore(session, filename)

    def claim(self, filename: str) -> bool:
        with session_scope(database_url=self.database_url) as session:
            added = _insert_ignore(session, filename)
        if not added:
            _logger.debug("dedup_claim_lost filename=%s", filename)
        return added

    def release(self, filename: str) -> None:
        with session_scope(database_url=self.database_url) as session:
            session.execute(delete(DatProcessedFile).where(DatProcessedFile.filename == filename))

    def clear(self) -> int:
        with session_scope(database_url=self.database_url) as session:
            result = session.execute(delete(DatProcessedFile))
            return result.rowcount or 0

    def processed_files(self) -> list[str]:
        with session_scope(database_url=self.database_url) as session:
            stmt = select(DatProcessedFile.filename).order_by(DatProcessedFile.filename)
            return list(session.execute(stmt).scalars())


__all__ = [
    "InMemoryProcessedFileStore",
    "ProcessedFileStore",
    "SqlProcessedFileStore",
]
