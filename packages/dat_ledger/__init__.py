"""Public interface for the ``dat_ledger`` package.

This module exposes the pipeline entry points and public models/types as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .accumulator import CsvAccumulator, read_ledger, render_csv
from .audit import AuditTrail
from .config import Settings
from .dedup import InMemoryProcessedFileStore, ProcessedFileStore, SqlProcessedFileStore
from .errors import DatLedgerError, LedgerWriteError, SourceDirectoryMissing, TransmissionError
from .forwarder import TransmissionForwarder
from .ingest import DatExtractor, parse_dat_bytes, parse_dat_file
from .models import (
    AccumulationResult,
    FileParseStats,
    LedgerBatch,
    ParsedFile,
    ParseFailure,
    TransactionRecord,
    TransmissionLogEntry,
    TransmissionOutcome,
    TransmissionStatus,
)
from .orchestrator import RunSummary, discover_dat_files, run_ingest
from .transmission_queue import TransmissionQueue, send_pending

__all__ = [
    # Pipeline
    "discover_dat_files",
    "parse_dat_bytes",
    "parse_dat_file",
    "run_ingest",
    "send_pending",
    # Components
    "AuditTrail",
    "CsvAccumulator",
    "DatExtractor",
    "InMemoryProcessedFileStore",
    "ProcessedFileStore",
    "Settings",
    "SqlProcessedFileStore",
    "TransmissionForwarder",
    "TransmissionQueue",
    "read_ledger",
    "render_csv",
    # Models / types
    "AccumulationResult",
    "FileParseStats",
    "LedgerBatch",
    "ParseFailure",
    "ParsedFile",
    "RunSummary",
    "TransactionRecord",
    "TransmissionLogEntry",
    "TransmissionOutcome",
    "TransmissionStatus",
    # Errors
    "DatLedgerError",
    "LedgerWriteError",
    "SourceDirectoryMissing",
    "TransmissionError",
]
