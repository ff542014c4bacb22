"""Append-only audit trail of transmission attempts.

Every attempt is written twice into ``<log_dir>``, keyed by the day the
attempt was made:

- ``transmission_log_YYYY-MM-DD.log``: a human-readable block per entry.
- ``transmission_log_YYYY-MM-DD.jsonl``: one JSON object per line, which is
  what :meth:`AuditTrail.read_entries` parses back.

Writing the trail is best-effort: a failure is logged and swallowed so that
auditing can never abort a run.
"""

from __future__ import annotations

import json
import threading
from datetime import date, datetime
from pathlib import Path

from pydantic import ValidationError

from .logging_setup import get_logger
from .models import TransmissionLogEntry, TransmissionStatus

_logger = get_logger("dat_ledger.audit")

_SEPARATOR = "=" * 60


def format_entry(entry: TransmissionLogEntry) -> str:
    """Render ``entry`` as the human-readable block used in ``.log`` files."""

    lines = [
        f"[{entry.transmitted_at:%Y-%m-%d %H:%M:%S}] Transaction Date: {entry.transaction_date}",
        _SEPARATOR,
        "TRANSMISSION LOG ENTRY",
        _SEPARATOR,
        f"Timestamp       : {entry.transmitted_at:%Y-%m-%d %H:%M:%S}",
        f"Status          : {entry.status.value}",
        f"Attempt         : {entry.attempt}",
        f"Filename        : {entry.filename}",
        f"Transaction Date: {entry.transaction_date}",
        f"Record Count    : {entry.record_count}",
        f"Total Amount    : {entry.total_amount:,.2f}",
    ]
    if entry.endpoint_url:
        lines.append(f"Endpoint URL    : {entry.endpoint_url}")
    if entry.status is TransmissionStatus.SUCCESS:
        lines.append(f"Response Status : {entry.response_status}")
    if entry.error_message is not None:
        lines.append(f"Error           : {entry.error_message}")
        if entry.response_status is not None:
            lines.append(f"HTTP Status     : {entry.response_status}")
    lines.append(_SEPARATOR)
    return "\n".join(lines) + "\n\n"


class AuditTrail:
    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)
        self._lock = threading.Lock()

    def _paths(self, day: date) -> tuple[Path, Path]:
        stem = f"transmission_log_{day:%Y-%m-%d}"
        return self.log_dir / f"{stem}.log", self.log_dir / f"{stem}.jsonl"

    def append(self, entry: TransmissionLogEntry) -> None:
        """Append ``entry`` to the day files for ``entry.transmitted_at``."""

        log_path, jsonl_path = self._paths(entry.transmitted_at.date())
        try:
            with self._lock:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                with log_path.open("a", encoding="utf-8") as fh:
                    fh.write(format_entry(entry))
                with jsonl_path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n")
        except OSError as exc:
            _logger.error(
                "audit_write_failed path=%s filename=%s status=%s error=%s",
                log_path,
                entry.filename,
                entry.status.value,
                exc,
            )
            return
        _logger.debug("audit_entry_saved path=%s status=%s", log_path, entry.status.value)

    def read_entries(self, day: date | datetime | None = None) -> list[TransmissionLogEntry]:
        """Return the entries recorded on ``day`` (today when omitted).

        Lines that are not valid entries are skipped with a warning.
        """

        if day is None:
            day = date.today()
        elif isinstance(day, datetime):
            day = day.date()
        _log_path, jsonl_path = self._paths(day)
        if not jsonl_path.exists():
            return []

        out: list[TransmissionLogEntry] = []
        with jsonl_path.open("r", encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    out.append(TransmissionLogEntry.model_validate_json(line))
                except ValidationError as exc:
                    _logger.warning(
                        "audit_entry_invalid path=%s line=%d error=%s", jsonl_path, line_no, exc
                    )
        return out


__all__ = ["AuditTrail", "format_entry"]
