"""Contracts for the pieces around the parser: fetching DAT files and device access.

Neither is used by the parsing core. ``DownloadTrigger`` wraps the external
bank download script; ``DeviceAllowList`` answers whether a client address
may talk to the service.
"""

from __future__ import annotations

import ipaddress
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .logging_setup import get_logger

_logger = get_logger("dat_ledger.collaborators")

DEFAULT_DOWNLOAD_TIMEOUT = 300.0


def count_dat_files(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    return sum(1 for p in directory.iterdir() if p.is_file() and p.suffix.upper() == ".DAT")


@dataclass(frozen=True, slots=True)
class DownloadResult:
    ok: bool
    returncode: int | None
    new_files: int
    output: str = ""


class DownloadTrigger:
    """Run the bank download script and report how many DAT files it produced.

    The script is run with ``working_dir`` as its cwd and ``-m`` as its only
    argument. New files are counted as the difference of ``.DAT`` files in
    ``dat_dir`` before and after the run.
    """

    def __init__(
        self,
        script: Path,
        *,
        working_dir: Path,
        dat_dir: Path,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        args: Iterable[str] = ("-m",),
    ) -> None:
        self.script = Path(script)
        self.working_dir = Path(working_dir)
        self.dat_dir = Path(dat_dir)
        self.timeout = timeout
        self.args = tuple(args)

    def run(self) -> DownloadResult:
        before = count_dat_files(self.dat_dir)
        cmd = [str(self.script), *self.args]
        _logger.info("download_started cmd=%s cwd=%s timeout=%s", cmd, self.working_dir, self.timeout)
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            _logger.error("download_timeout timeout=%s", self.timeout)
            out = e.stdout if isinstance(e.stdout, str) else ""
            return DownloadResult(
                ok=False,
                returncode=None,
                new_files=max(0, count_dat_files(self.dat_dir) - before),
                output=out,
            )
        except OSError as e:
            _logger.error("download_failed_to_start script=%s error=%s", self.script, e)
            return DownloadResult(ok=False, returncode=None, new_files=0, output=str(e))

        new_files = max(0, count_dat_files(self.dat_dir) - before)
        ok = proc.returncode == 0
        log = _logger.info if ok else _logger.error
        log("download_finished returncode=%d new_files=%d", proc.returncode, new_files)
        return DownloadResult(
            ok=ok,
            returncode=proc.returncode,
            new_files=new_files,
            output=(proc.stdout or "") + (proc.stderr or ""),
        )


type _Network = ipaddress.IPv4Network | ipaddress.IPv6Network


class DeviceAllowList:
    """Allow-list of client addresses: exact IPs and CIDR ranges.

    Invalid entries raise ``ValueError`` at construction.
    """

    def __init__(self, allowed: Iterable[str]) -> None:
        self._networks: list[_Network] = []
        for raw in allowed:
            item = raw.strip()
            if not item:
                continue
            try:
                self._networks.append(ipaddress.ip_network(item, strict=False))
            except ValueError as exc:
                raise ValueError(f"invalid device address or range: {item!r}") from exc

    def __len__(self) -> int:
        return len(self._networks)

    def is_allowed(self, ip: str) -> bool:
        """Return ``True`` when ``ip`` falls in any configured address or range.

        Forwarded-for style values (``"a, b"``) use their first address.
        Unparseable input is denied.
        """

        candidate = ip.split(",")[0].strip()
        try:
            addr = ipaddress.ip_address(candidate)
        except ValueError:
            return False
        return any(addr.version == net.version and addr in net for net in self._networks)


__all__ = [
    "DEFAULT_DOWNLOAD_TIMEOUT",
    "DeviceAllowList",
    "DownloadResult",
    "DownloadTrigger",
    "count_dat_files",
]
