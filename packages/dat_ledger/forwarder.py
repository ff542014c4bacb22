"""Forward freshly accumulated ledger deltas to the accounting endpoint.

One POST per date delta, retried a fixed number of times with a fixed
blocking delay. Every attempt produces exactly one audit entry:

- ``SUCCESS`` for a 2xx response (no further attempts),
- ``FAILED`` for any other HTTP status,
- ``ERROR`` when the request could not be made at all.

:meth:`TransmissionForwarder.forward` never raises; the outcome (and the audit
trail) is the only report. There is no cancellation path: a caller that
forwards synchronously waits out the retry delays.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from .accumulator import render_csv
from .audit import AuditTrail
from .config import DEFAULT_SOURCE, Settings
from .http_client import HttpResponse, post_json
from .logging_setup import get_logger
from .models import (
    LedgerBatch,
    TransmissionLogEntry,
    TransmissionMetadata,
    TransmissionOutcome,
    TransmissionPayload,
    TransmissionStatus,
)

_logger = get_logger("dat_ledger.forwarder")

type Sender = Callable[..., HttpResponse]


def _local_now() -> datetime:
    return datetime.now().astimezone()


class TransmissionForwarder:
    """POST ledger deltas as JSON with retry, recording every attempt.

    Parameters
    ----------
    endpoint_url:
        Accounting endpoint receiving the JSON payload.
    audit:
        Trail that receives one entry per attempt.
    timeout:
        Per-request timeout in seconds.
    attempts:
        Maximum number of attempts per delta (at least 1).
    retry_delay:
        Seconds to sleep between attempts.
    sender, sleep, clock:
        Injection points for tests; default to :func:`post_json`,
        :func:`time.sleep` and the local wall clock.
    """

    def __init__(
        self,
        endpoint_url: str,
        audit: AuditTrail,
        *,
        timeout: float = 30.0,
        attempts: int = 3,
        retry_delay: float = 1.0,
        source: str = DEFAULT_SOURCE,
        sender: Sender = post_json,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.endpoint_url = endpoint_url
        self.audit = audit
        self.timeout = timeout
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.source = source
        self._sender = sender
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> TransmissionForwarder:
        kwargs: dict[str, Any] = {
            "timeout": settings.timeout,
            "attempts": settings.attempts,
            "retry_delay": settings.retry_delay,
            "source": settings.source,
        }
        kwargs.update(overrides)
        return cls(settings.endpoint_url, AuditTrail(settings.transmission_log_dir), **kwargs)

    def forward(self, batch: LedgerBatch) -> TransmissionOutcome:
        entries = self.forward_csv(
            filename=batch.filename,
            date=batch.date,
            csv_data=render_csv(batch.records),
            record_count=batch.record_count,
            total_amount=batch.total_amount,
        )
        return TransmissionOutcome(batch=batch, entries=entries)

    def forward_csv(
        self,
        *,
        filename: str,
        date: str,
        csv_data: str,
        record_count: int,
        total_amount: Decimal,
    ) -> tuple[TransmissionLogEntry, ...]:
        """Transmit an already rendered CSV body; return one entry per attempt."""

        payload = TransmissionPayload(
            filename=filename,
            date=date,
            record_count=record_count,
            csv_data=csv_data,
            metadata=TransmissionMetadata(
                source=self.source,
                generated_at=self._clock(),
                total_amount=total_amount,
            ),
        ).model_dump(mode="json")

        base: dict[str, Any] = {
            "filename": filename,
            "transaction_date": date,
            "record_count": record_count,
            "total_amount": total_amount,
            "endpoint_url": self.endpoint_url,
        }
        entries: list[TransmissionLogEntry] = []
        for attempt in range(1, self.attempts + 1):
            entry = self._attempt(payload, base, attempt)
            self.audit.append(entry)
            entries.append(entry)
            if entry.status is TransmissionStatus.SUCCESS:
                _logger.info(
                    "transmission_succeeded filename=%s date=%s records=%d attempt=%d status=%s",
                    filename,
                    date,
                    record_count,
                    attempt,
                    entry.response_status,
                )
                break
            _logger.warning(
                "transmission_attempt_failed filename=%s attempt=%d/%d status=%s error=%s",
                filename,
                attempt,
                self.attempts,
                entry.status.value,
                entry.error_message,
            )
            if attempt < self.attempts and self.retry_delay > 0:
                self._sleep(self.retry_delay)
        else:
            _logger.error(
                "transmission_gave_up filename=%s date=%s attempts=%d", filename, date, self.attempts
            )
        return tuple(entries)

    def _attempt(
        self, payload: Mapping[str, Any], base: Mapping[str, Any], attempt: int
    ) -> TransmissionLogEntry:
        try:
            resp = self._sender(self.endpoint_url, payload, timeout=self.timeout)
        except Exception as exc:  # noqa: BLE001 - every failure becomes an audit entry
            return TransmissionLogEntry(
                status=TransmissionStatus.ERROR,
                attempt=attempt,
                transmitted_at=self._clock(),
                error_message=str(exc) or exc.__class__.__name__,
                exception_class=f"{exc.__class__.__module__}.{exc.__class__.__qualname__}",
                **base,
            )

        data = resp.data()
        if resp.ok:
            return TransmissionLogEntry(
                status=TransmissionStatus.SUCCESS,
                attempt=attempt,
                transmitted_at=self._clock(),
                response_status=resp.status,
                response_headers=dict(resp.headers),
                response_data=data,
                **base,
            )
        return TransmissionLogEntry(
            status=TransmissionStatus.FAILED,
            attempt=attempt,
            transmitted_at=self._clock(),
            response_status=resp.status,
            response_headers=dict(resp.headers),
            response_data=data,
            error_message=f"HTTP {resp.status}",
            **base,
        )


__all__ = ["Sender", "TransmissionForwarder"]
