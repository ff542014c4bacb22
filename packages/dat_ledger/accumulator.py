"""Per-date CSV ledgers.

Each transaction date owns one file ``<exports>/YYYYMMDD.csv`` with the header
``Transaction Date,Transaction Time,Amount,Mobile Number,Transaction ID``.
Merging a batch of records reads the current file, drops records whose
dedup key (transaction id, mobile number, amount, time) is already present,
and rewrites the whole file atomically only when something new was added.

Existing ledgers are read leniently and a leading BOM is ignored. Rows that
are short, undecodable, split across lines or rejected by the CSV parser
count as corrupt: they are logged and left out of the rewrite.

Merges for the same date are serialized through a per-date lock held by the
accumulator instance. Cross-process writers are kept apart by the run lock
(:mod:`dat_ledger.locking`), not here.
"""

from __future__ import annotations

import contextlib
import csv
import io
import os
import threading
from collections import defaultdict
from collections.abc import Iterable, Iterator
from pathlib import Path

from .errors import LedgerWriteError
from .logging_setup import get_logger
from .models import AccumulationResult, TransactionRecord
from .normalizers import format_amount, ledger_filename, parse_amount

_logger = get_logger("dat_ledger.accumulator")

LEDGER_HEADER: tuple[str, ...] = (
    "Transaction Date",
    "Transaction Time",
    "Amount",
    "Mobile Number",
    "Transaction ID",
)
MISSING_VALUE = "N/A"
_REPLACEMENT_CHAR = "\ufffd"


def _cell(value: str | None) -> str:
    if value is None or value == "":
        return MISSING_VALUE
    return value


def _row(record: TransactionRecord) -> list[str]:
    return [
        _cell(record.transaction_date),
        _cell(record.transaction_time),
        format_amount(record.amount),
        _cell(record.mobile_number),
        _cell(record.transaction_id),
    ]


def _uncell(value: str) -> str:
    v = value.strip()
    return "" if v == MISSING_VALUE else v


def _row_key(row: list[str]) -> tuple[str, str, str, str]:
    """Dedup key for a raw CSV row; mirrors :attr:`TransactionRecord.dedup_key`."""

    try:
        amount = format_amount(parse_amount(row[2]))
    except ValueError:
        amount = row[2].strip()
    return (_uncell(row[4]), _uncell(row[3]), amount, _uncell(row[1]))


def _iter_rows(path: Path) -> Iterator[tuple[int, list[str] | None]]:
    """Yield ``(line_no, row)`` for each data row of an existing ledger.

    ``row`` is ``None`` when the line could not be decoded as UTF-8, when the
    CSV parser rejected it (e.g. a field over ``csv.field_size_limit()``) or
    when a field spans lines, which only an unterminated quote produces here.
    """

    with path.open("r", encoding="utf-8-sig", errors="replace", newline="") as fh:
        reader = csv.reader(fh)
        first = True
        while True:
            try:
                row = next(reader)
            except StopIteration:
                return
            except csv.Error:
                first = False
                yield reader.line_num, None
                continue
            if first:
                first = False
                if [c.strip() for c in row] == list(LEDGER_HEADER):
                    continue
            if any(_REPLACEMENT_CHAR in c or "\n" in c or "\r" in c for c in row):
                yield reader.line_num, None
                continue
            yield reader.line_num, row


def read_ledger(path: Path) -> list[TransactionRecord]:
    """Return the well-formed records of an existing ledger file.

    Corrupt rows, rows with fewer than five columns and rows with an
    unparseable amount are skipped. A missing file yields an empty list.
    """

    if not path.exists():
        return []
    out: list[TransactionRecord] = []
    for _line_no, row in _iter_rows(path):
        if row is None or len(row) < len(LEDGER_HEADER):
            continue
        try:
            amount = parse_amount(row[2])
        except ValueError:
            continue
        out.append(
            TransactionRecord(
                transaction_date=_uncell(row[0]),
                transaction_time=_uncell(row[1]),
                amount=amount,
                mobile_number=_uncell(row[3]),
                transaction_id=_uncell(row[4]),
            )
        )
    return out


def render_csv(records: Iterable[TransactionRecord]) -> str:
    """Render ``records`` as a CSV body with the ledger header row."""

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(LEDGER_HEADER)
    for rec in records:
        writer.writerow(_row(rec))
    return buf.getvalue()


def _write_atomic(path: Path, rows: list[list[str]]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp.open("w", encoding="utf-8", newline="") as fh:
            writer = csv.writer(fh, lineterminator="\n")
            writer.writerow(LEDGER_HEADER)
            writer.writerows(rows)
        os.replace(tmp, path)
    except OSError as exc:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()
        raise LedgerWriteError(f"failed to write ledger {path}: {exc}") from exc


class CsvAccumulator:
    """Merge transaction records into per-date ledger files under ``exports_dir``."""

    def __init__(self, exports_dir: Path) -> None:
        self.exports_dir = Path(exports_dir)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, date: str) -> Path:
        return self.exports_dir / ledger_filename(date)

    def _lock_for(self, filename: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(filename)
            if lock is None:
                lock = self._locks[filename] = threading.Lock()
            return lock

    def accumulate(self, records: Iterable[TransactionRecord]) -> list[AccumulationResult]:
        """Merge ``records`` into their date ledgers.

        Returns one result per distinct date, in first-seen order. A failure
        on one date is recorded in that result's ``error`` and logged; the
        remaining dates are still merged.
        """

        by_date: dict[str, list[TransactionRecord]] = defaultdict(list)
        for rec in records:
            by_date[rec.transaction_date].append(rec)

        results: list[AccumulationResult] = []
        for date, group in by_date.items():
            path = self.path_for(date)
            try:
                with self._lock_for(path.name):
                    result = self._merge(date, path, group)
            except (OSError, ValueError, csv.Error, LedgerWriteError) as exc:
                _logger.error("ledger_merge_failed date=%s path=%s error=%s", date, path, exc)
                result = AccumulationResult(date=date, path=path, error=str(exc))
            results.append(result)
        return results

    def _merge(self, date: str, path: Path, group: list[TransactionRecord]) -> AccumulationResult:
        self.exports_dir.mkdir(parents=True, exist_ok=True)
        result = AccumulationResult(date=date, path=path)

        rows: list[list[str]] = []
        seen: set[tuple[str, str, str, str]] = set()
        if path.exists():
            for line_no, row in _iter_rows(path):
                if row is None:
                    result.corrupt_rows_skipped += 1
                    _logger.warning("ledger_row_skipped path=%s line=%d reason=unreadable", path, line_no)
                    continue
                if len(row) < len(LEDGER_HEADER):
                    result.corrupt_rows_skipped += 1
                    _logger.warning(
                        "ledger_row_skipped path=%s line=%d reason=short columns=%d", path, line_no, len(row)
                    )
                    continue
                rows.append(row)
                seen.add(_row_key(row))

        for rec in group:
            key = rec.dedup_key
            if key in seen:
                result.duplicates_skipped += 1
                continue
            seen.add(key)
            rows.append(_row(rec))
            result.new_records.append(rec)

        result.total_rows = len(rows)
        if result.new_records:
            _write_atomic(path, rows)
            _logger.info(
                "ledger_updated path=%s new=%d duplicates=%d total=%d",
                path,
                len(result.new_records),
                result.duplicates_skipped,
                result.total_rows,
            )
        else:
            _logger.debug("ledger_unchanged path=%s duplicates=%d", path, result.duplicates_skipped)
        return result


__all__ = [
    "CsvAccumulator",
    "LEDGER_HEADER",
    "MISSING_VALUE",
    "read_ledger",
    "render_csv",
]
