"""Pytest configuration for test isolation.

Every ``dat_ledger`` path (DAT input, ledgers, audit trail, queue, SQLite
processed-file set) hangs off ``DAT_LEDGER_STORAGE_DIR``. When tests share a
working tree, ledgers written by one test would be read back by the next and
turn fresh rows into "duplicates", so each test gets its own storage root and
a clean environment via an autouse fixture.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

import pytest

import dat_ledger.logging_setup as logging_setup
from dat_ledger.config import Settings
from db.client import dispose_engines

_ENV_VARS = (
    "DAT_LEDGER_DAT_DIR",
    "DAT_LEDGER_EXPORTS_DIR",
    "DAT_LEDGER_TRANSMISSION_LOG_DIR",
    "DAT_LEDGER_QUEUE_DIR",
    "DAT_LEDGER_DAT_ENCODING",
    "DAT_LEDGER_ALLOWED_DEVICES",
    "DAT_LEDGER_DOWNLOAD_SCRIPT",
    "DAT_LEDGER_LOG_LEVEL",
    "DATABASE_URL",
    "ACCOUNTING_ENDPOINT_URL",
    "ACCOUNTING_TIMEOUT",
    "ACCOUNTING_RETRIES",
    "ACCOUNTING_RETRY_DELAY",
    "ACCOUNTING_SOURCE",
)


@pytest.fixture(autouse=True)
def _isolate_storage(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Force a per-test storage root and drop inherited configuration."""

    storage = tmp_path / "storage"
    storage.mkdir(parents=True, exist_ok=True)
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DAT_LEDGER_STORAGE_DIR", os.fspath(storage))
    # Keep ``load_dotenv`` from picking up a developer's .env
    monkeypatch.chdir(tmp_path)
    yield
    dispose_engines()


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Undo CLI logging setup so ``caplog`` keeps seeing package records."""

    yield
    pkg = logging.getLogger("dat_ledger")
    for h in list(pkg.handlers):
        pkg.removeHandler(h)
    pkg.propagate = True
    pkg.setLevel(logging.NOTSET)
    logging_setup._CONFIGURED = False


@pytest.fixture
def settings() -> Settings:
    return Settings.from_env()


@pytest.fixture
def dat_dir(settings: Settings) -> Path:
    settings.dat_dir.mkdir(parents=True, exist_ok=True)
    return settings.dat_dir
