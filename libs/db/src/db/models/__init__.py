"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the dedup ledger table used by ``dat_ledger``.
"""

from .ledger import Base, DatProcessedFile

__all__ = [
    "Base",
    "DatProcessedFile",
]
