"""Single-run lock shared by the CLI commands that write ledgers or download.

The lock is a small JSON file ``{"pid": ..., "started_at": ...}`` created
with ``O_EXCL``. An existing lock is considered stale (and replaced) when its
process is gone or it is older than ``stale_after``; ``force=True`` replaces
it unconditionally.
"""

from __future__ import annotations

import contextlib
import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import TracebackType

from .errors import RunLockHeld
from .logging_setup import get_logger

_logger = get_logger("dat_ledger.locking")

DEFAULT_STALE_AFTER = timedelta(minutes=30)


def pid_is_running(pid: int | None) -> bool:
    if not pid or pid < 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class RunLock:
    def __init__(
        self,
        path: Path,
        *,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        force: bool = False,
    ) -> None:
        self.path = Path(path)
        self.stale_after = stale_after
        self.force = force
        self._held = False

    def read(self) -> dict[str, object] | None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}
        return raw if isinstance(raw, dict) else {}

    def is_stale(self, info: dict[str, object], *, now: datetime | None = None) -> bool:
        pid = info.get("pid")
        if not isinstance(pid, int) or not pid_is_running(pid):
            return True
        started_raw = info.get("started_at")
        try:
            started = datetime.fromisoformat(str(started_raw))
        except ValueError:
            return True
        if started.tzinfo is None:
            started = started.replace(tzinfo=UTC)
        return (now or datetime.now(UTC)) - started >= self.stale_after

    def _create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"pid": os.getpid(), "started_at": datetime.now(UTC).isoformat()}, fh)
        return True

    def acquire(self) -> None:
        """Take the lock or raise :class:`RunLockHeld`."""

        if self._create():
            self._held = True
            return

        info = self.read()
        if info is None:
            # Released between our attempt and the read
            if self._create():
                self._held = True
                return
            info = self.read() or {}

        if self.force:
            _logger.warning("run_lock_forced path=%s previous_pid=%s", self.path, info.get("pid"))
        elif self.is_stale(info):
            _logger.warning("run_lock_stale path=%s previous_pid=%s", self.path, info.get("pid"))
        else:
            pid = info.get("pid")
            raise RunLockHeld(self.path, pid if isinstance(pid, int) else None)

        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        if not self._create():
            other = (self.read() or {}).get("pid")
            raise RunLockHeld(self.path, other if isinstance(other, int) else None)
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["DEFAULT_STALE_AFTER", "RunLock", "pid_is_running"]
