"""Data models for ``dat_ledger``.

Parsing-side values (``RawLine``, ``TransactionRecord``, ``ParseFailure``,
``FileParseStats``) are plain dataclasses: they are produced in tight loops
and never cross a process boundary. Anything serialized to disk or over the
wire (transmission payloads, audit entries, queue entries) is a Pydantic
model so the on-disk JSON shape is validated when read back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from .normalizers import format_amount

# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RawLine:
    """A single line of a DAT file. Ephemeral; never persisted."""

    text: str
    filename: str
    line_number: int


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    """Canonical unit extracted from one DAT line.

    ``transaction_date`` is ISO ``YYYY-MM-DD`` when the source token could be
    normalized and the raw token otherwise. ``amount`` always carries exactly
    two fractional digits. ``transaction_id`` is best-effort and may be empty.
    """

    transaction_date: str
    transaction_time: str
    amount: Decimal
    mobile_number: str
    transaction_id: str = ""

    @property
    def dedup_key(self) -> tuple[str, str, str, str]:
        """Key that identifies a row inside one daily ledger."""

        return (self.transaction_id, self.mobile_number, format_amount(self.amount), self.transaction_time)

    def to_dict(self) -> dict[str, str]:
        return {
            "transaction_date": self.transaction_date,
            "transaction_time": self.transaction_time,
            "amount": format_amount(self.amount),
            "mobile_number": self.mobile_number,
            "transaction_id": self.transaction_id,
        }


class FailureReason(StrEnum):
    NO_SHAPE_MATCH = "no_shape_match"
    MALFORMED_NUMERIC = "malformed_numeric"
    MISSING_FIELD = "missing_field"


@dataclass(frozen=True, slots=True)
class ParseFailure:
    """A candidate line that passed the filters but produced no record."""

    filename: str
    line_number: int
    reason: FailureReason
    detail: str = ""


@dataclass(slots=True)
class FileParseStats:
    """Per-file counters, logged once as a single summary entry."""

    filename: str
    total_lines: int = 0
    processed_lines: int = 0
    skipped_no_marker: int = 0
    skipped_no_auth: int = 0
    successful_matches: int = 0
    alternative_matches: int = 0
    processing_errors: int = 0
    records_emitted: int = 0

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "file": self.filename,
            "lines_total": self.total_lines,
            "lines_processed": self.processed_lines,
            "successful_matches": self.successful_matches,
            "alternative_matches": self.alternative_matches,
            "final_results": self.records_emitted,
            "skip_no_marker": self.skipped_no_marker,
            "skip_no_auth": self.skipped_no_auth,
            "errors": self.processing_errors,
        }


@dataclass(slots=True)
class ParsedFile:
    """Materialized result of parsing one DAT file."""

    filename: str
    records: list[TransactionRecord]
    failures: list[ParseFailure]
    stats: FileParseStats


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class AccumulationResult:
    """Outcome of merging one date's records into its ledger file."""

    date: str
    path: Path
    new_records: list[TransactionRecord] = field(default_factory=list)
    duplicates_skipped: int = 0
    corrupt_rows_skipped: int = 0
    total_rows: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class LedgerBatch:
    """A date's freshly accumulated delta, ready for transmission."""

    filename: str
    date: str
    records: tuple[TransactionRecord, ...]

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def total_amount(self) -> Decimal:
        return sum((r.amount for r in self.records), Decimal("0.00"))


# ---------------------------------------------------------------------------
# Transmission DTOs
# ---------------------------------------------------------------------------


class TransmissionStatus(StrEnum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ERROR = "ERROR"


class TransmissionMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    source: str
    generated_at: datetime
    total_amount: Decimal

    @field_serializer("total_amount")
    def _amount_as_float(self, v: Decimal) -> float:
        # Downstream accounting expects a JSON number.
        return float(v)


class TransmissionPayload(BaseModel):
    """JSON body posted to the accounting endpoint."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    filename: str
    date: str
    record_count: int
    csv_data: str
    metadata: TransmissionMetadata


class TransmissionLogEntry(BaseModel):
    """Immutable audit record of a single transmission attempt."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: TransmissionStatus
    attempt: int
    filename: str
    transaction_date: str
    record_count: int
    total_amount: Decimal
    endpoint_url: str
    transmitted_at: datetime
    response_status: int | None = None
    response_headers: dict[str, str] | None = None
    response_data: Any = None
    error_message: str | None = None
    exception_class: str | None = None

    @field_validator("attempt")
    @classmethod
    def _attempt_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("attempt must be >= 1")
        return v


class QueueState(StrEnum):
    PENDING = "pending"
    FAILED = "failed"
    COMPLETED = "completed"


class QueueEntry(BaseModel):
    """A ledger delta waiting in the transmission queue."""

    model_config = ConfigDict(extra="forbid")

    item_id: str
    filename: str
    date: str
    csv_data: str
    record_count: int
    total_amount: Decimal
    enqueued_at: datetime
    retry_count: int = 0
    failed_at: datetime | None = None
    last_error: str | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class TransmissionOutcome:
    """Final result of forwarding one batch (all attempts)."""

    batch: LedgerBatch
    entries: tuple[TransmissionLogEntry, ...]

    @property
    def final(self) -> TransmissionLogEntry:
        return self.entries[-1]

    @property
    def success(self) -> bool:
        return self.final.status is TransmissionStatus.SUCCESS

    @property
    def error(self) -> str | None:
        return None if self.success else (self.final.error_message or "unknown error")
