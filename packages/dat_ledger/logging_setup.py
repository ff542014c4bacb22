"""Logging for the ``dat_ledger`` package.

Every record is an event name followed by ``key=value`` pairs, for example
``dat_parse_summary file=A.DAT successful_matches=12``. Operators grep the
ingest, ledger and transmission logs by event name, so modules log through
:func:`log_event` or a format string that keeps the same layout.

Only entrypoints call :func:`configure_logging`; library modules take a
logger from :func:`get_logger` and never attach handlers themselves. The
level comes from the explicit argument, then ``DAT_LEDGER_LOG_LEVEL``, then
``INFO``.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from typing import IO, Any

PACKAGE_LOGGER = "dat_ledger"
LEVEL_ENV_VAR = "DAT_LEDGER_LOG_LEVEL"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_CONFIGURED = False


def _level_from(value: int | str) -> int | None:
    if isinstance(value, int):
        return value
    name = value.strip().upper()
    if name.isdigit():
        return int(name)
    return logging.getLevelNamesMapping().get(name)


def resolve_level(level: int | str | None = None, env: Mapping[str, str] | None = None) -> int:
    """Pick the effective level; unknown names fall through to the next source."""

    env = os.environ if env is None else env
    for candidate in (level, env.get(LEVEL_ENV_VAR)):
        if candidate is None or candidate == "":
            continue
        parsed = _level_from(candidate)
        if parsed is not None:
            return parsed
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Send ``dat_ledger.*`` records to ``stream`` (stderr by default).

    Runs once per process; later calls are ignored so a CLI callback and an
    embedding application cannot stack handlers.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    pkg = logging.getLogger(PACKAGE_LOGGER)
    for h in [h for h in pkg.handlers if isinstance(h, logging.NullHandler)]:
        pkg.removeHandler(h)

    resolved = resolve_level(level)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
    pkg.addHandler(handler)
    pkg.setLevel(resolved)
    pkg.propagate = False

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return ``logging.getLogger(name)``.

    Until :func:`configure_logging` runs the package logger carries a
    ``NullHandler`` and records still propagate to the root logger, which
    keeps pytest's ``caplog`` working.
    """

    pkg = logging.getLogger(PACKAGE_LOGGER)
    if not _CONFIGURED and not pkg.handlers:
        pkg.addHandler(logging.NullHandler())
    return logging.getLogger(name)


def log_event(logger: logging.Logger, level: int, event: str, /, **fields: Any) -> None:
    """Log ``event`` with ``fields`` rendered as ``key=value`` in keyword order."""

    if not logger.isEnabledFor(level):
        return
    template = " ".join([event, *(f"{key}=%s" for key in fields)])
    logger.log(level, template, *fields.values())


__all__ = [
    "DEFAULT_FORMAT",
    "LEVEL_ENV_VAR",
    "PACKAGE_LOGGER",
    "configure_logging",
    "get_logger",
    "log_event",
    "resolve_level",
]
