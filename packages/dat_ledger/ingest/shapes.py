"""Record shapes recognized inside the ``AUTH CANCELLED`` segment.

The upstream client emits two positional encodings depending on the payment
rail version, with no version flag in the data. Shapes are told apart purely
by digit-run length and evaluated in priority order; the first match wins,
so a segment that satisfies both always resolves to the stricter primary
shape. New encodings are added by appending to :data:`DEFAULT_SHAPES`.

Every shape captures three groups in order: date-raw (``YYYYMMDD``),
amount-raw (minor units), mobile-raw.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ShapeMatch:
    shape: RecordShape
    date_raw: str
    amount_raw: str
    mobile_raw: str


@dataclass(frozen=True, slots=True)
class RecordShape:
    """A named pattern plus the stats counter it increments on match."""

    name: str
    pattern: re.Pattern[str]
    counter: str

    def match(self, segment: str) -> ShapeMatch | None:
        m = self.pattern.search(segment)
        if m is None:
            return None
        date_raw, amount_raw, mobile_raw = m.group(1, 2, 3)
        return ShapeMatch(self, date_raw=date_raw, amount_raw=amount_raw, mobile_raw=mobile_raw)


PRIMARY_SHAPE = RecordShape(
    name="primary",
    # Date (8) + Amount (20) + Mobile (9-12)
    pattern=re.compile(r"(\d{8})\s*(\d{20})\s*(\d{9,12})"),
    counter="successful_matches",
)

ALTERNATIVE_SHAPE = RecordShape(
    name="alternative",
    # Date (8) + Amount (15-25) + Mobile (8-12)
    pattern=re.compile(r"(\d{8})\s*(\d{15,25})\s*(\d{8,12})"),
    counter="alternative_matches",
)

DEFAULT_SHAPES: tuple[RecordShape, ...] = (PRIMARY_SHAPE, ALTERNATIVE_SHAPE)


def match_first(segment: str, shapes: Sequence[RecordShape] = DEFAULT_SHAPES) -> ShapeMatch | None:
    """Return the match of the first shape (in priority order) that fits."""

    for shape in shapes:
        found = shape.match(segment)
        if found is not None:
            return found
    return None


__all__ = ["ALTERNATIVE_SHAPE", "DEFAULT_SHAPES", "PRIMARY_SHAPE", "RecordShape", "ShapeMatch", "match_first"]
