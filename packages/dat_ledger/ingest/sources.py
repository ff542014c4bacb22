"""Lazy, re-iterable line sources over DAT content.

A source yields :class:`~dat_ledger.models.RawLine` values one at a time and
never materializes the file. Iterating a :class:`DatFileSource` twice re-opens
the file, so both passes see the same sequence for unchanged input.
"""

from __future__ import annotations

import io
from collections.abc import Iterator
from os import PathLike
from pathlib import Path

from ..models import RawLine


def _iter_text(stream: io.TextIOBase, filename: str) -> Iterator[RawLine]:
    for line_number, line in enumerate(stream, start=1):
        yield RawLine(text=line.rstrip("\r\n"), filename=filename, line_number=line_number)


class DatFileSource:
    """Re-iterable view over the lines of a DAT file on disk.

    Opening is deferred until iteration starts; a missing or unreadable file
    raises ``OSError`` from the first ``next()`` call.
    """

    __slots__ = ("path", "encoding")

    def __init__(self, path: str | PathLike[str], *, encoding: str = "utf-8") -> None:
        self.path = Path(path)
        self.encoding = encoding

    @property
    def filename(self) -> str:
        return self.path.name

    def __iter__(self) -> Iterator[RawLine]:
        # errors="replace": noisy banking text must not abort the whole file.
        with self.path.open(encoding=self.encoding, errors="replace", newline="") as f:
            yield from _iter_text(f, self.filename)

    def __repr__(self) -> str:  # pragma: no cover - trivial repr
        return f"DatFileSource({str(self.path)!r})"


def iter_lines_from_bytes(
    content: bytes, filename: str, *, encoding: str = "utf-8"
) -> Iterator[RawLine]:
    """Yield lines from an in-memory DAT payload without copying it."""

    with io.TextIOWrapper(io.BytesIO(content), encoding=encoding, errors="replace", newline="") as f:
        yield from _iter_text(f, filename)


__all__ = ["DatFileSource", "iter_lines_from_bytes"]
