"""Exception types raised across ``dat_ledger``.

Record-level problems (unmatched lines, malformed digit tokens) are never
raised past the extractor; they surface as :class:`~dat_ledger.models.ParseFailure`
values and counters instead.
"""

from __future__ import annotations

from pathlib import Path


class DatLedgerError(Exception):
    """Base class for errors raised by this package."""


class SourceDirectoryMissing(DatLedgerError):
    """The configured DAT input directory does not exist."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"DAT files directory does not exist: {path}")
        self.path = path


class LedgerWriteError(DatLedgerError):
    """A daily ledger could not be rewritten on disk."""


class RunLockHeld(DatLedgerError):
    """Another live process holds the run lock."""

    def __init__(self, path: Path, pid: int | None) -> None:
        super().__init__(f"run lock {path} is held by pid {pid}")
        self.path = path
        self.pid = pid


class TransmissionError(DatLedgerError):
    """A single transmission attempt failed at the transport level.

    Raised by :mod:`dat_ledger.http_client` and converted by the forwarder
    into an ``ERROR`` audit entry; it never reaches orchestrator callers.
    """
