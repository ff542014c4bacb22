"""Streaming line classifier and record extractor for DAT files.

Each line goes through two cheap rejection filters before any shape regex
runs:

1. the transaction-copy marker substring (``CPY``) must be present;
2. the case-insensitive status anchor
   ``AUTH CANCELLED <segment><14-16 digit timestamp>INTERNET`` must match.

The segment in front of the timestamp is then tried against the ordered
shape table (see :mod:`dat_ledger.ingest.shapes`). Output is a lazy sequence
of :class:`TransactionRecord` or :class:`ParseFailure`; per-file counters
accumulate in a :class:`FileParseStats` and are logged once, as a single
summary entry, when the sequence is exhausted.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Sequence
from os import PathLike
from pathlib import Path

from ..logging_setup import get_logger, log_event
from ..models import (
    FailureReason,
    FileParseStats,
    ParsedFile,
    ParseFailure,
    RawLine,
    TransactionRecord,
)
from ..normalizers import minor_units_to_amount, normalize_date, normalize_time
from .shapes import DEFAULT_SHAPES, RecordShape, match_first
from .sources import DatFileSource, iter_lines_from_bytes

MARKER = "CPY"
AUTH_SEGMENT_RE = re.compile(r"AUTH\s+CANCELLED\s+(.*?)(\d{14,16})INTERNET", re.IGNORECASE)
MAX_LOGGED_ERRORS = 5

_logger = get_logger("dat_ledger.ingest.extractor")

type ExtractionResult = TransactionRecord | ParseFailure


def find_transaction_id(line: str, date_raw: str) -> str:
    """Return the id that immediately follows ``date_raw`` in ``line``.

    The id is an uppercase letter followed by at least four uppercase
    alphanumerics. Returns ``""`` when no such run exists.
    """

    m = re.search(re.escape(date_raw) + r"([A-Z][A-Z0-9]{4,})", line)
    return m.group(1).strip() if m else ""


class DatExtractor:
    """Classify DAT lines and extract transaction records.

    Parameters
    ----------
    shapes:
        Record shapes in priority order. The first match wins.
    marker:
        Substring every candidate line must contain.
    max_logged_errors:
        How many structural mismatches per file are logged individually.
    """

    def __init__(
        self,
        *,
        shapes: Sequence[RecordShape] = DEFAULT_SHAPES,
        marker: str = MARKER,
        max_logged_errors: int = MAX_LOGGED_ERRORS,
    ) -> None:
        if not shapes:
            raise ValueError("at least one record shape is required")
        self.shapes = tuple(shapes)
        self.marker = marker
        self.max_logged_errors = max_logged_errors

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def iter_results(
        self,
        lines: Iterable[RawLine],
        *,
        filename: str,
        stats: FileParseStats | None = None,
    ) -> Iterator[ExtractionResult]:
        """Yield one result per candidate line, in file order.

        ``stats`` (created when omitted) is updated in place while iterating
        and the summary is logged once the input is exhausted.
        """

        stats = stats if stats is not None else FileParseStats(filename=filename)
        for raw in lines:
            result = self._classify(raw, stats)
            if result is None:
                continue
            if isinstance(result, TransactionRecord):
                stats.records_emitted += 1
            yield result
        _log_summary(stats)

    def parse(self, source: Iterable[RawLine], *, filename: str) -> ParsedFile:
        """Run :meth:`iter_results` to completion and split the results."""

        stats = FileParseStats(filename=filename)
        records: list[TransactionRecord] = []
        failures: list[ParseFailure] = []
        for result in self.iter_results(source, filename=filename, stats=stats):
            if isinstance(result, TransactionRecord):
                records.append(result)
            else:
                failures.append(result)
        return ParsedFile(filename=filename, records=records, failures=failures, stats=stats)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _classify(self, raw: RawLine, stats: FileParseStats) -> ExtractionResult | None:
        stats.total_lines += 1
        line = raw.text.strip()

        # Substring search first: it rejects most lines before any regex runs.
        if not line or self.marker not in line:
            stats.skipped_no_marker += 1
            return None

        seg = AUTH_SEGMENT_RE.search(line)
        if seg is None:
            stats.skipped_no_auth += 1
            return None

        segment = seg.group(1).strip()
        timestamp = seg.group(2)
        time_token = timestamp[8:14]
        stats.processed_lines += 1

        match = match_first(segment, self.shapes)
        if match is None:
            stats.processing_errors += 1
            if stats.processing_errors <= self.max_logged_errors:
                _logger.warning(
                    "dat_parse_error file=%s line=%d reason=no_pattern_match",
                    raw.filename,
                    raw.line_number,
                )
            return ParseFailure(
                filename=raw.filename,
                line_number=raw.line_number,
                reason=FailureReason.NO_SHAPE_MATCH,
                detail=segment[:80],
            )

        try:
            record = TransactionRecord(
                transaction_date=normalize_date(match.date_raw),
                transaction_time=normalize_time(time_token),
                amount=minor_units_to_amount(match.amount_raw),
                mobile_number=match.mobile_raw,
                transaction_id=find_transaction_id(line, match.date_raw),
            )
        except ValueError as exc:
            stats.processing_errors += 1
            _logger.error(
                "dat_record_error file=%s line=%d shape=%s error=%s",
                raw.filename,
                raw.line_number,
                match.shape.name,
                exc,
            )
            return ParseFailure(
                filename=raw.filename,
                line_number=raw.line_number,
                reason=FailureReason.MALFORMED_NUMERIC,
                detail=str(exc),
            )

        if not record.transaction_date or not record.mobile_number:
            stats.processing_errors += 1
            return ParseFailure(
                filename=raw.filename,
                line_number=raw.line_number,
                reason=FailureReason.MISSING_FIELD,
                detail="transaction_date and mobile_number are required",
            )

        setattr(stats, match.shape.counter, getattr(stats, match.shape.counter) + 1)
        return record


def _log_summary(stats: FileParseStats) -> None:
    log_event(_logger, logging.INFO, "dat_parse_summary", **stats.as_log_fields())


# ----------------------------------------------------------------------------
# Module-level conveniences using the default shape table
# ----------------------------------------------------------------------------

_DEFAULT_EXTRACTOR = DatExtractor()


def extract_records(
    lines: Iterable[RawLine],
    *,
    filename: str,
    stats: FileParseStats | None = None,
) -> Iterator[ExtractionResult]:
    """Lazily extract results from ``lines`` with the default shapes."""

    return _DEFAULT_EXTRACTOR.iter_results(lines, filename=filename, stats=stats)


def parse_dat_file(
    path: str | PathLike[str],
    *,
    encoding: str = "utf-8",
    extractor: DatExtractor | None = None,
) -> ParsedFile:
    """Parse a DAT file on disk.

    A missing or unreadable file propagates ``OSError``; it is fatal for this
    file only and the caller decides how to continue.
    """

    source = DatFileSource(path, encoding=encoding)
    return (extractor or _DEFAULT_EXTRACTOR).parse(source, filename=Path(path).name)


def parse_dat_bytes(
    content: bytes,
    filename: str,
    *,
    encoding: str = "utf-8",
    extractor: DatExtractor | None = None,
) -> ParsedFile:
    """Parse an in-memory DAT payload."""

    lines = iter_lines_from_bytes(content, filename, encoding=encoding)
    return (extractor or _DEFAULT_EXTRACTOR).parse(lines, filename=filename)


__all__ = [
    "AUTH_SEGMENT_RE",
    "MARKER",
    "MAX_LOGGED_ERRORS",
    "DatExtractor",
    "ExtractionResult",
    "extract_records",
    "find_transaction_id",
    "parse_dat_bytes",
    "parse_dat_file",
]
