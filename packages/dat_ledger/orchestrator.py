"""End-to-end ingest run: discover, dedup, parse, accumulate, forward.

A run walks the DAT directory in sorted order. In normal mode each file is
claimed in the processed-file store before parsing, so a second run (or a
concurrent worker) skips it; ``process_all`` bypasses the check but still
marks files once their records are in the ledgers.

Parsing may fan out over a thread pool with one file per task. Accumulation
and transmission always happen afterwards on the calling thread, so each
daily ledger has a single writer inside the process.

If the run is interrupted by an unexpected error, every file it claimed but
had not yet recorded is released again before the error propagates.
Transmission and queue problems are logged and counted, never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from .accumulator import CsvAccumulator
from .config import Settings
from .dedup import ProcessedFileStore
from .errors import SourceDirectoryMissing
from .forwarder import TransmissionForwarder
from .ingest import DatExtractor, parse_dat_file
from .logging_setup import get_logger, log_event
from .models import (
    AccumulationResult,
    FileParseStats,
    LedgerBatch,
    ParsedFile,
    TransactionRecord,
    TransmissionOutcome,
)
from .transmission_queue import TransmissionQueue

_logger = get_logger("dat_ledger.orchestrator")


def discover_dat_files(directory: Path) -> list[Path]:
    """Return the ``.DAT`` files directly under ``directory``, sorted by name.

    The extension is compared case-insensitively. A missing directory raises
    :class:`SourceDirectoryMissing`.
    """

    directory = Path(directory)
    if not directory.is_dir():
        raise SourceDirectoryMissing(directory)
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.upper() == ".DAT")


@dataclass(slots=True)
class RunSummary:
    files_found: int = 0
    files_skipped: int = 0
    files_processed: int = 0
    files_failed: int = 0
    records_extracted: int = 0
    records_added: int = 0
    duplicates_skipped: int = 0
    transmissions_attempted: int = 0
    transmissions_succeeded: int = 0
    transmissions_queued: int = 0
    queue_failures: int = 0
    file_stats: list[FileParseStats] = field(default_factory=list)
    records: list[TransactionRecord] = field(default_factory=list)
    ledgers: list[AccumulationResult] = field(default_factory=list)
    outcomes: list[TransmissionOutcome] = field(default_factory=list)


def _parse_all(
    paths: Sequence[Path],
    *,
    encoding: str,
    extractor: DatExtractor | None,
    workers: int,
) -> list[tuple[Path, ParsedFile | OSError]]:
    def _one(path: Path) -> ParsedFile | OSError:
        try:
            return parse_dat_file(path, encoding=encoding, extractor=extractor)
        except OSError as exc:
            return exc

    if workers <= 1 or len(paths) <= 1:
        return [(p, _one(p)) for p in paths]

    with ThreadPoolExecutor(max_workers=min(workers, len(paths)), thread_name_prefix="dat-parse") as ex:
        return list(zip(paths, ex.map(_one, paths), strict=True))


def run_ingest(
    settings: Settings,
    store: ProcessedFileStore,
    *,
    process_all: bool = False,
    save: bool = True,
    forwarder: TransmissionForwarder | None = None,
    queue: TransmissionQueue | None = None,
    workers: int = 1,
    extractor: DatExtractor | None = None,
) -> RunSummary:
    """Run one ingest pass over ``settings.dat_dir``.

    With ``save=False`` files are parsed and reported only; the store and
    the ledgers are left untouched.
    """

    paths = discover_dat_files(settings.dat_dir)
    summary = RunSummary(files_found=len(paths))
    _logger.info("ingest_started dir=%s files=%d process_all=%s", settings.dat_dir, len(paths), process_all)

    selected: list[Path] = []
    claimed: set[str] = set()
    for path in paths:
        name = path.name
        if process_all:
            selected.append(path)
        elif save:
            if store.claim(name):
                claimed.add(name)
                selected.append(path)
            else:
                summary.files_skipped += 1
                _logger.info("dat_file_skipped filename=%s reason=already_processed", name)
        elif store.is_processed(name):
            summary.files_skipped += 1
        else:
            selected.append(path)

    try:
        parsed = _collect(
            summary, store, selected, claimed, settings=settings, extractor=extractor, workers=workers
        )
        if not save:
            summary.files_processed = len(parsed)
            return summary
        _record(summary, store, parsed, claimed, exports_dir=settings.exports_dir)
    finally:
        # Whatever is still claimed here was never recorded; let the next run take it.
        for name in sorted(claimed):
            _logger.error("dat_file_claim_released filename=%s reason=run_aborted", name)
            store.release(name)

    for result in summary.ledgers:
        summary.duplicates_skipped += result.duplicates_skipped
        if result.ok and result.new_records:
            summary.records_added += len(result.new_records)
            _dispatch(summary, result, forwarder=forwarder, queue=queue)

    log_event(
        _logger,
        logging.INFO,
        "ingest_finished",
        files_found=summary.files_found,
        skipped=summary.files_skipped,
        processed=summary.files_processed,
        failed=summary.files_failed,
        records=summary.records_extracted,
        added=summary.records_added,
        duplicates=summary.duplicates_skipped,
        sent=f"{summary.transmissions_succeeded}/{summary.transmissions_attempted}",
        queue_failures=summary.queue_failures,
    )
    return summary


def _collect(
    summary: RunSummary,
    store: ProcessedFileStore,
    selected: Sequence[Path],
    claimed: set[str],
    *,
    settings: Settings,
    extractor: DatExtractor | None,
    workers: int,
) -> list[ParsedFile]:
    parsed: list[ParsedFile] = []
    results = _parse_all(selected, encoding=settings.dat_encoding, extractor=extractor, workers=workers)
    for path, result in results:
        if isinstance(result, OSError):
            summary.files_failed += 1
            _logger.error("dat_file_unreadable filename=%s error=%s", path.name, result)
            if path.name in claimed:
                store.release(path.name)
                claimed.discard(path.name)
            continue
        parsed.append(result)
        summary.file_stats.append(result.stats)
        summary.records.extend(result.records)
        summary.records_extracted += len(result.records)
    return parsed


def _record(
    summary: RunSummary,
    store: ProcessedFileStore,
    parsed: Sequence[ParsedFile],
    claimed: set[str],
    *,
    exports_dir: Path,
) -> None:
    """Merge parsed records into the ledgers and mark the files that made it."""

    summary.ledgers = CsvAccumulator(exports_dir).accumulate(summary.records)
    failed_dates = {r.date for r in summary.ledgers if not r.ok}

    for pf in parsed:
        if any(rec.transaction_date in failed_dates for rec in pf.records):
            # Leave it unmarked so the next run retries the file
            summary.files_failed += 1
            _logger.error("dat_file_not_recorded filename=%s reason=ledger_write_failed", pf.filename)
            if pf.filename in claimed:
                store.release(pf.filename)
                claimed.discard(pf.filename)
            continue
        store.mark_processed(pf.filename)
        claimed.discard(pf.filename)
        summary.files_processed += 1


def _dispatch(
    summary: RunSummary,
    result: AccumulationResult,
    *,
    forwarder: TransmissionForwarder | None,
    queue: TransmissionQueue | None,
) -> None:
    """Forward one date's new rows, queueing them when that is not possible now."""

    batch = LedgerBatch(filename=result.path.name, date=result.date, records=tuple(result.new_records))
    error: str | None = None
    if forwarder is not None:
        outcome = forwarder.forward(batch)
        summary.outcomes.append(outcome)
        summary.transmissions_attempted += 1
        if outcome.success:
            summary.transmissions_succeeded += 1
            return
        error = outcome.error or "transmission failed"
    if queue is None:
        return

    try:
        entry = queue.enqueue(batch)
        if error is not None:
            queue.mark_failed(entry.item_id, error)
    except OSError as exc:
        # The rows are already in the ledger, so this delta is only recoverable by hand.
        summary.queue_failures += 1
        _logger.error(
            "queue_enqueue_failed date=%s filename=%s records=%d error=%s",
            batch.date,
            batch.filename,
            batch.record_count,
            exc,
        )
        return
    summary.transmissions_queued += 1


__all__ = ["RunSummary", "discover_dat_files", "run_ingest"]
