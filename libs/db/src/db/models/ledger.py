from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Dedup: dat_processed_files
# ---------------------------


class DatProcessedFile(Base):
    """One row per DAT source file that has been fully processed.

    Membership is the only state tracked: a filename present here is skipped
    by normal ingest runs. Rows never expire; operators delete them to force
    reprocessing. The unique constraint on ``filename`` is what makes
    concurrent claims safe (insert-or-ignore).
    """

    __tablename__ = "dat_processed_files"

    # SQLite only auto-increments an INTEGER PRIMARY KEY (rowid alias).
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


__all__ = [
    "Base",
    "DatProcessedFile",
]
