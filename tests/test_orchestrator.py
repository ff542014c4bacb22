from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

import pytest

from dat_ledger.accumulator import CsvAccumulator, read_ledger
from dat_ledger.audit import AuditTrail
from dat_ledger.config import Settings
from dat_ledger.dedup import InMemoryProcessedFileStore, SqlProcessedFileStore
from dat_ledger.errors import SourceDirectoryMissing
from dat_ledger.forwarder import TransmissionForwarder
from dat_ledger.orchestrator import discover_dat_files, run_ingest
from dat_ledger.transmission_queue import TransmissionQueue
from tests.helpers.dat import StubSender, dat_line, refused, write_dat


def _forwarder(settings: Settings, sender: StubSender) -> TransmissionForwarder:
    return TransmissionForwarder(
        settings.endpoint_url,
        AuditTrail(settings.transmission_log_dir),
        sender=sender,
        sleep=lambda _s: None,
    )


def test_discover_sorts_and_matches_extension_case_insensitively(dat_dir: Path):
    for name in ("b.dat", "A.DAT", "c.txt", "D.Dat"):
        (dat_dir / name).write_text("", encoding="utf-8")
    (dat_dir / "sub.DAT").mkdir()

    assert [p.name for p in discover_dat_files(dat_dir)] == ["A.DAT", "D.Dat", "b.dat"]


def test_missing_source_directory_raises(settings: Settings):
    with pytest.raises(SourceDirectoryMissing) as exc:
        run_ingest(settings, InMemoryProcessedFileStore())
    assert exc.value.path == settings.dat_dir


def test_empty_directory_is_a_clean_run(settings: Settings, dat_dir: Path):
    summary = run_ingest(settings, InMemoryProcessedFileStore())
    assert summary.files_found == 0
    assert summary.records_added == 0


def test_second_run_adds_nothing(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line(), dat_line(seq="0002", txn_id="QWERTY12", hhmmss="150000")])
    write_dat(dat_dir / "B.DAT", [dat_line(date="20250711", txn_id="JULY11AA")])
    store = SqlProcessedFileStore(database_url=settings.database_url)

    first = run_ingest(settings, store)
    assert first.files_processed == 2
    assert first.records_extracted == 3
    assert first.records_added == 3
    assert sorted(p.name for p in settings.exports_dir.iterdir()) == ["20250710.csv", "20250711.csv"]

    second = run_ingest(settings, store)
    assert second.files_skipped == 2
    assert second.records_extracted == 0
    assert second.records_added == 0
    assert store.processed_files() == ["A.DAT", "B.DAT"]


def test_process_all_reparses_without_duplicating_rows(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    store = InMemoryProcessedFileStore()
    run_ingest(settings, store)

    again = run_ingest(settings, store, process_all=True)

    assert again.files_processed == 1
    assert again.records_extracted == 1
    assert again.records_added == 0
    assert again.duplicates_skipped == 1
    assert len(read_ledger(settings.exports_dir / "20250710.csv")) == 1


def test_overlapping_files_merge_into_one_ledger(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    # Same transaction delivered again in a later file plus one new row
    write_dat(dat_dir / "B.DAT", [dat_line(), dat_line(txn_id="NEWROW01", hhmmss="160000")])

    summary = run_ingest(settings, InMemoryProcessedFileStore(), workers=4)

    assert summary.records_extracted == 3
    assert summary.records_added == 2
    assert summary.duplicates_skipped == 1


def test_unreadable_file_is_released_and_others_continue(
    settings: Settings, dat_dir: Path, monkeypatch: pytest.MonkeyPatch
):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    write_dat(dat_dir / "B.DAT", [dat_line(txn_id="OTHER001")])
    real_open = Path.open

    def _open(self: Path, *args, **kwargs):
        if self.name == "A.DAT":
            raise PermissionError(13, "Permission denied", os.fspath(self))
        return real_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", _open)
    store = InMemoryProcessedFileStore()
    summary = run_ingest(settings, store)

    assert summary.files_failed == 1
    assert summary.files_processed == 1
    assert store.processed_files() == ["B.DAT"]


def test_no_save_leaves_store_and_ledgers_untouched(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    store = InMemoryProcessedFileStore()

    summary = run_ingest(settings, store, save=False)

    assert summary.records_extracted == 1
    assert store.processed_files() == []
    assert not settings.exports_dir.exists()


def test_new_rows_are_forwarded_once_per_date(settings: Settings, dat_dir: Path):
    write_dat(
        dat_dir / "A.DAT",
        [dat_line(), dat_line(date="20250711", txn_id="JULY11AA"), dat_line(txn_id="SECOND01")],
    )
    sender = StubSender([200])

    summary = run_ingest(settings, InMemoryProcessedFileStore(), forwarder=_forwarder(settings, sender))

    assert summary.transmissions_attempted == 2
    assert summary.transmissions_succeeded == 2
    by_file = {c["payload"]["filename"]: c["payload"] for c in sender.calls}
    assert by_file["20250710.csv"]["record_count"] == 2
    assert by_file["20250711.csv"]["record_count"] == 1


def test_failed_transmission_is_queued_for_retry(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    queue = TransmissionQueue(settings.queue_dir)

    summary = run_ingest(
        settings,
        InMemoryProcessedFileStore(),
        forwarder=_forwarder(settings, StubSender([refused()])),
        queue=queue,
    )

    assert summary.transmissions_succeeded == 0
    assert summary.transmissions_queued == 1
    assert queue.status()["failed"] == 1
    # The ledger is still written; transmission failures never roll it back
    assert len(read_ledger(settings.exports_dir / "20250710.csv")) == 1


def test_without_forwarder_deltas_are_queued(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    queue = TransmissionQueue(settings.queue_dir)

    summary = run_ingest(settings, InMemoryProcessedFileStore(), queue=queue)

    assert summary.transmissions_queued == 1
    assert queue.status()["pending"] == 1


def test_ledger_write_failure_keeps_file_unprocessed(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    (settings.exports_dir / "20250710.csv").mkdir(parents=True)
    store = InMemoryProcessedFileStore()

    summary = run_ingest(settings, store)

    assert summary.files_failed == 1
    assert store.processed_files() == []


def test_undecodable_ledger_does_not_abort_the_run(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    settings.exports_dir.mkdir(parents=True)
    (settings.exports_dir / "20250710.csv").write_bytes(b"\xff\xfeBROKEN\n")
    store = InMemoryProcessedFileStore()

    summary = run_ingest(settings, store)

    assert summary.files_processed == 1
    assert summary.records_added == 1
    assert store.processed_files() == ["A.DAT"]
    assert [r.transaction_id for r in read_ledger(settings.exports_dir / "20250710.csv")] == ["NAM0SVFGY9QB"]


def test_unknown_encoding_releases_claims(settings: Settings, dat_dir: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    write_dat(dat_dir / "B.DAT", [dat_line(txn_id="OTHER001")])
    store = InMemoryProcessedFileStore()

    with pytest.raises(LookupError):
        run_ingest(dataclasses.replace(settings, dat_encoding="no-such-codec"), store)

    assert store.processed_files() == []
    summary = run_ingest(settings, store)
    assert summary.files_processed == 2
    assert store.processed_files() == ["A.DAT", "B.DAT"]


def test_unexpected_accumulator_error_releases_claims(
    settings: Settings, dat_dir: Path, monkeypatch: pytest.MonkeyPatch
):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    store = SqlProcessedFileStore(database_url=settings.database_url)

    def _boom(self: CsvAccumulator, records):
        raise RuntimeError("disk gremlins")

    monkeypatch.setattr(CsvAccumulator, "accumulate", _boom)
    with pytest.raises(RuntimeError, match="disk gremlins"):
        run_ingest(settings, store)

    assert store.processed_files() == []
    assert not store.is_processed("A.DAT")


def test_unwritable_queue_is_logged_and_run_completes(
    settings: Settings, dat_dir: Path, tmp_path: Path, caplog: pytest.LogCaptureFixture
):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    write_dat(dat_dir / "B.DAT", [dat_line(date="20250711", txn_id="JULY11AA")])
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    queue = TransmissionQueue(blocker / "queue")
    store = InMemoryProcessedFileStore()
    caplog.set_level(logging.ERROR, logger="dat_ledger")

    summary = run_ingest(
        settings,
        store,
        forwarder=_forwarder(settings, StubSender([refused()])),
        queue=queue,
    )

    assert summary.queue_failures == 2
    assert summary.transmissions_queued == 0
    assert store.processed_files() == ["A.DAT", "B.DAT"]
    failures = [r.getMessage() for r in caplog.records if r.getMessage().startswith("queue_enqueue_failed")]
    assert len(failures) == 2
    assert "date=2025-07-10" in failures[0]
    assert "records=1" in failures[0]


def test_unwritable_queue_without_forwarder(settings: Settings, dat_dir: Path, tmp_path: Path):
    write_dat(dat_dir / "A.DAT", [dat_line()])
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")

    summary = run_ingest(settings, InMemoryProcessedFileStore(), queue=TransmissionQueue(blocker / "q"))

    assert summary.queue_failures == 1
    assert summary.records_added == 1
