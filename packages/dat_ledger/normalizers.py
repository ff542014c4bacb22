"""Token normalizers for fixed-width DAT fields.

The extractor hands over raw digit runs; this module turns them into the
canonical values stored on :class:`~dat_ledger.models.TransactionRecord`:

- ``YYYYMMDD`` date tokens become ISO ``YYYY-MM-DD`` strings.
- ``HHMMSS`` time tokens become ``HH:MM:SS`` strings.
- Integer minor-unit amount tokens become ``Decimal`` values with exactly two
  fractional digits.

Date and time tokens of an unexpected length pass through unchanged: the row
is still useful for accounting with the raw value as metadata. Tokens that
contain non-digits raise ``ValueError`` so the caller can drop the record.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENTS = Decimal("0.01")
_LEDGER_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})")


def _require_digits(token: str, what: str) -> str:
    s = token.strip()
    if not s.isdigit() or not s.isascii():
        raise ValueError(f"invalid {what} token: {token!r}")
    return s


def normalize_date(token: str) -> str:
    """Return ``YYYY-MM-DD`` for an 8-digit ``YYYYMMDD`` token.

    Any token whose length is not exactly 8 is returned unchanged.
    """

    if len(token) != 8:
        return token
    s = _require_digits(token, "date")
    return f"{s[0:4]}-{s[4:6]}-{s[6:8]}"


def normalize_time(token: str) -> str:
    """Return ``HH:MM:SS`` for a ``HHMMSS`` token.

    Tokens shorter than 6 characters are returned unchanged; longer tokens
    use their first six digits. Out-of-range seconds and minutes carry into
    the next unit and hours wrap at 24.
    """

    if len(token) < 6:
        return token
    s = _require_digits(token, "time")[:6]
    hours, minutes, seconds = int(s[0:2]), int(s[2:4]), int(s[4:6])

    minutes += seconds // 60
    seconds %= 60
    hours += minutes // 60
    minutes %= 60
    hours %= 24
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def minor_units_to_amount(token: str) -> Decimal:
    """Convert an integer minor-unit token (cents) to a 2dp ``Decimal``.

    ``"00000000000000015040"`` -> ``Decimal("150.40")``; an all-zero token
    yields ``Decimal("0.00")``.
    """

    s = _require_digits(token, "amount").lstrip("0") or "0"
    return (Decimal(int(s)) / 100).quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal) -> str:
    # Half-up to cents; never scientific notation.
    return f"{amount.quantize(_CENTS, rounding=ROUND_HALF_UP):.2f}"


def parse_amount(raw: str) -> Decimal:
    """Parse a rendered ledger amount (``"150.40"``) back into a ``Decimal``."""

    try:
        d = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {raw!r}") from exc
    if not d.is_finite():
        raise ValueError(f"invalid amount: {raw!r}")
    return d.quantize(_CENTS, rounding=ROUND_HALF_UP)


def ledger_filename(date: str, *, now: datetime | None = None) -> str:
    """Return the daily ledger file name (``YYYYMMDD.csv``) for ``date``.

    Accepts ``2025-07-10`` or ``20250710``. Dates that don't start with an
    8-digit stamp fall back to their digits only, and to the current
    timestamp when no digits remain.
    """

    clean = date.replace("-", "")
    m = _LEDGER_DATE_RE.match(clean)
    if m:
        return f"{m.group(1)}{m.group(2)}{m.group(3)}.csv"
    digits = re.sub(r"[^0-9]", "", date)
    if digits:
        return f"{digits}.csv"
    return f"{(now or datetime.now()).strftime('%Y%m%d_%H%M%S')}.csv"


__all__ = [
    "format_amount",
    "ledger_filename",
    "minor_units_to_amount",
    "normalize_date",
    "normalize_time",
    "parse_amount",
]
