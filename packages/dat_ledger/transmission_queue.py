"""Directory-backed queue of ledger deltas awaiting transmission.

Each item is one JSON file named ``<item_id>.<state>`` where ``state`` is
``pending``, ``failed`` or ``completed``. Moving between states rewrites the
file under its new suffix (``.tmp`` then ``os.replace``) and removes the old
one, so a reader never sees a half-written item.

Failed items are retried with exponential backoff: an item that failed at
``failed_at`` with ``retry_count`` becomes eligible again after
``min(60, 5 * 2**retry_count)`` minutes, as long as ``retry_count`` is below
the caller's ``max_retries``.
"""

from __future__ import annotations

import contextlib
import os
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from .accumulator import render_csv
from .forwarder import TransmissionForwarder
from .logging_setup import get_logger
from .models import LedgerBatch, QueueEntry, QueueState, TransmissionStatus

_logger = get_logger("dat_ledger.transmission_queue")

MAX_BACKOFF_MINUTES = 60
BASE_BACKOFF_MINUTES = 5


def _now() -> datetime:
    return datetime.now().astimezone()


def backoff_for(retry_count: int) -> timedelta:
    """Delay before a failed item with ``retry_count`` may be retried."""

    return timedelta(minutes=min(MAX_BACKOFF_MINUTES, BASE_BACKOFF_MINUTES * 2**retry_count))


class TransmissionQueue:
    def __init__(self, queue_dir: Path) -> None:
        self.queue_dir = Path(queue_dir)

    # ------------------------------------------------------------------
    # storage helpers
    # ------------------------------------------------------------------
    def _path(self, item_id: str, state: QueueState) -> Path:
        return self.queue_dir / f"{item_id}.{state.value}"

    def _write(self, entry: QueueEntry, state: QueueState) -> Path:
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(entry.item_id, state)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp.write_text(entry.model_dump_json(), encoding="utf-8")
            os.replace(tmp, path)
        except Exception:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise
        for other in QueueState:
            if other is not state:
                with contextlib.suppress(FileNotFoundError):
                    self._path(entry.item_id, other).unlink()
        return path

    def _read(self, path: Path) -> QueueEntry | None:
        try:
            return QueueEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            _logger.warning("queue_entry_unreadable path=%s error=%s", path, exc)
            return None

    def _entries(self, state: QueueState) -> list[QueueEntry]:
        if not self.queue_dir.is_dir():
            return []
        out: list[QueueEntry] = []
        for path in sorted(self.queue_dir.glob(f"*.{state.value}")):
            entry = self._read(path)
            if entry is not None:
                out.append(entry)
        return out

    def get(self, item_id: str) -> tuple[QueueState, QueueEntry] | None:
        for state in QueueState:
            path = self._path(item_id, state)
            if path.exists():
                entry = self._read(path)
                if entry is not None:
                    return state, entry
        return None

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def enqueue(self, batch: LedgerBatch, *, now: datetime | None = None) -> QueueEntry:
        """Store ``batch`` as a new pending item and return it."""

        ts = now or _now()
        entry = QueueEntry(
            item_id=f"{Path(batch.filename).stem}_{ts:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}",
            filename=batch.filename,
            date=batch.date,
            csv_data=render_csv(batch.records),
            record_count=batch.record_count,
            total_amount=batch.total_amount,
            enqueued_at=ts,
        )
        self._write(entry, QueueState.PENDING)
        _logger.info(
            "queue_enqueued item=%s filename=%s records=%d", entry.item_id, entry.filename, entry.record_count
        )
        return entry

    def mark_completed(self, item_id: str, *, now: datetime | None = None) -> QueueEntry:
        found = self.get(item_id)
        if found is None:
            raise KeyError(item_id)
        _state, entry = found
        done = entry.model_copy(update={"completed_at": now or _now()})
        self._write(done, QueueState.COMPLETED)
        return done

    def mark_failed(self, item_id: str, error: str, *, now: datetime | None = None) -> QueueEntry:
        """Move an item to ``failed``.

        The first failure keeps ``retry_count`` at 0; every later failure of an
        item that is already failed increments it.
        """

        found = self.get(item_id)
        if found is None:
            raise KeyError(item_id)
        state, entry = found
        retry_count = entry.retry_count + 1 if state is QueueState.FAILED else entry.retry_count
        failed = entry.model_copy(
            update={"failed_at": now or _now(), "last_error": error, "retry_count": retry_count}
        )
        self._write(failed, QueueState.FAILED)
        _logger.warning(
            "queue_item_failed item=%s retry_count=%d error=%s", item_id, retry_count, error
        )
        return failed

    def pending(
        self,
        *,
        limit: int | None = None,
        include_failed: bool = False,
        max_retries: int = 3,
        now: datetime | None = None,
    ) -> list[tuple[QueueEntry, bool]]:
        """Return ``(entry, is_retry)`` pairs ready to send.

        Pending items come first, then failed items whose backoff has elapsed
        and whose ``retry_count`` is below ``max_retries``.
        """

        ready: list[tuple[QueueEntry, bool]] = [(e, False) for e in self._entries(QueueState.PENDING)]
        if include_failed:
            ts = now or _now()
            for e in self._entries(QueueState.FAILED):
                if e.retry_count >= max_retries:
                    continue
                failed_at = e.failed_at or ts
                if failed_at + backoff_for(e.retry_count) <= ts:
                    ready.append((e, True))
        if limit is not None:
            ready = ready[:limit]
        return ready

    def status(self) -> dict[str, int]:
        counts = {state.value: 0 for state in QueueState}
        if self.queue_dir.is_dir():
            for state in QueueState:
                counts[state.value] = sum(1 for _ in self.queue_dir.glob(f"*.{state.value}"))
        return counts


@dataclass(slots=True)
class SendSummary:
    sent: int = 0
    failed: int = 0
    retry_attempts: int = 0
    total_records: int = 0
    runtime_exceeded: bool = False
    errors: list[str] = field(default_factory=list)
    queue_status: dict[str, int] = field(default_factory=dict)


def send_pending(
    queue: TransmissionQueue,
    forwarder: TransmissionForwarder,
    *,
    batch_size: int = 15,
    max_runtime: float = 120.0,
    retry_failed: bool = False,
    max_retries: int = 3,
    pause: float = 0.75,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> SendSummary:
    """Drain the queue in batches until it is empty or ``max_runtime`` elapses.

    Each item is attempted at most once per call. ``pause`` seconds are slept
    between items.
    """

    summary = SendSummary()
    started = monotonic()
    attempted: set[str] = set()

    def _expired() -> bool:
        return monotonic() - started >= max_runtime

    while True:
        if _expired():
            summary.runtime_exceeded = True
            _logger.info("queue_runtime_limit_reached max_runtime=%s", max_runtime)
            break
        batch = [
            (entry, is_retry)
            for entry, is_retry in queue.pending(include_failed=retry_failed, max_retries=max_retries)
            if entry.item_id not in attempted
        ][:batch_size]
        if not batch:
            _logger.info("queue_drained")
            break

        for entry, is_retry in batch:
            if _expired():
                break
            attempted.add(entry.item_id)
            if is_retry:
                summary.retry_attempts += 1

            entries = forwarder.forward_csv(
                filename=entry.filename,
                date=entry.date,
                csv_data=entry.csv_data,
                record_count=entry.record_count,
                total_amount=entry.total_amount,
            )
            final = entries[-1]
            if final.status is TransmissionStatus.SUCCESS:
                queue.mark_completed(entry.item_id)
                summary.sent += 1
                summary.total_records += entry.record_count
            else:
                error = final.error_message or "unknown error"
                queue.mark_failed(entry.item_id, error)
                summary.failed += 1
                summary.errors.append(f"{entry.filename}: {error}")

            if pause > 0:
                sleep(pause)

    summary.queue_status = queue.status()
    return summary


__all__ = [
    "SendSummary",
    "TransmissionQueue",
    "backoff_for",
    "send_pending",
]
