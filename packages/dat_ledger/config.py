"""Runtime settings resolved from the environment.

Entrypoints load a local ``.env`` with ``python-dotenv`` first (existing
environment variables win) and then call :meth:`Settings.from_env`. Library
code receives a ``Settings`` instance explicitly and never reads the
environment on its own.

Directory defaults all hang off ``DAT_LEDGER_STORAGE_DIR`` (``./storage``):

``<storage>/dat_files``                    input ``.DAT`` files
``<storage>/exports``                      per-date ``YYYYMMDD.csv`` ledgers
``<storage>/transmission_to_server_logs``  audit trail
``<storage>/transmission_queue``           queued ledger deltas
``<storage>/dat_ledger.db``                processed-file set (SQLite)
"""

from __future__ import annotations

import codecs
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ENDPOINT_URL = "http://localhost:8080/api/transactions"
DEFAULT_SOURCE = "transaction_processor"


def _env_str(env: Mapping[str, str], name: str) -> str | None:
    raw = env.get(name)
    if raw is None:
        return None
    s = raw.strip()
    return s or None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _env_str(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _env_str(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ValueError(f"{name} must be a positive integer, got {raw!r}")
    return value


def _env_encoding(env: Mapping[str, str], name: str, default: str) -> str:
    raw = _env_str(env, name)
    if raw is None:
        return default
    try:
        codecs.lookup(raw)
    except LookupError as exc:
        raise ValueError(f"{name} is not a known text encoding, got {raw!r}") from exc
    return raw


def _env_path(env: Mapping[str, str], name: str, default: Path) -> Path:
    raw = _env_str(env, name)
    if raw is None:
        return default
    return Path(raw).expanduser().resolve()


@dataclass(frozen=True, slots=True)
class Settings:
    """Resolved configuration for a single process."""

    storage_dir: Path
    dat_dir: Path
    exports_dir: Path
    transmission_log_dir: Path
    queue_dir: Path
    database_url: str
    endpoint_url: str = DEFAULT_ENDPOINT_URL
    timeout: float = 30.0
    attempts: int = 3
    retry_delay: float = 1.0
    source: str = DEFAULT_SOURCE
    dat_encoding: str = "utf-8"
    allowed_devices: tuple[str, ...] = field(default_factory=tuple)
    download_script: Path | None = None

    @property
    def lock_path(self) -> Path:
        return self.storage_dir / "dat_ledger.lock"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``env`` (defaults to ``os.environ``).

        Raises ``ValueError`` naming the offending variable when a numeric
        value cannot be parsed or the DAT encoding is unknown.
        """

        env = os.environ if env is None else env
        storage = _env_path(env, "DAT_LEDGER_STORAGE_DIR", (Path.cwd() / "storage").resolve())
        database_url = _env_str(env, "DATABASE_URL") or f"sqlite+pysqlite:///{storage / 'dat_ledger.db'}"
        devices = tuple(
            d.strip() for d in (_env_str(env, "DAT_LEDGER_ALLOWED_DEVICES") or "").split(",") if d.strip()
        )
        script = _env_str(env, "DAT_LEDGER_DOWNLOAD_SCRIPT")

        return cls(
            storage_dir=storage,
            dat_dir=_env_path(env, "DAT_LEDGER_DAT_DIR", storage / "dat_files"),
            exports_dir=_env_path(env, "DAT_LEDGER_EXPORTS_DIR", storage / "exports"),
            transmission_log_dir=_env_path(
                env, "DAT_LEDGER_TRANSMISSION_LOG_DIR", storage / "transmission_to_server_logs"
            ),
            queue_dir=_env_path(env, "DAT_LEDGER_QUEUE_DIR", storage / "transmission_queue"),
            database_url=database_url,
            endpoint_url=_env_str(env, "ACCOUNTING_ENDPOINT_URL") or DEFAULT_ENDPOINT_URL,
            timeout=_env_float(env, "ACCOUNTING_TIMEOUT", 30.0),
            attempts=_env_int(env, "ACCOUNTING_RETRIES", 3),
            retry_delay=_env_float(env, "ACCOUNTING_RETRY_DELAY", 1.0),
            source=_env_str(env, "ACCOUNTING_SOURCE") or DEFAULT_SOURCE,
            dat_encoding=_env_encoding(env, "DAT_LEDGER_DAT_ENCODING", "utf-8"),
            allowed_devices=devices,
            download_script=Path(script).expanduser() if script else None,
        )


__all__ = ["DEFAULT_ENDPOINT_URL", "DEFAULT_SOURCE", "Settings"]
