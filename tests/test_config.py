from __future__ import annotations

from pathlib import Path

import pytest

from dat_ledger.config import DEFAULT_ENDPOINT_URL, Settings


def test_defaults_hang_off_storage_dir(tmp_path: Path):
    storage = tmp_path / "store"
    s = Settings.from_env({"DAT_LEDGER_STORAGE_DIR": str(storage)})

    assert s.storage_dir == storage.resolve()
    assert s.dat_dir == s.storage_dir / "dat_files"
    assert s.exports_dir == s.storage_dir / "exports"
    assert s.transmission_log_dir == s.storage_dir / "transmission_to_server_logs"
    assert s.queue_dir == s.storage_dir / "transmission_queue"
    assert s.database_url.startswith("sqlite+pysqlite:///")
    assert s.database_url.endswith("dat_ledger.db")
    assert s.endpoint_url == DEFAULT_ENDPOINT_URL
    assert (s.timeout, s.attempts, s.retry_delay) == (30.0, 3, 1.0)
    assert s.allowed_devices == ()
    assert s.download_script is None


def test_overrides(tmp_path: Path):
    s = Settings.from_env(
        {
            "DAT_LEDGER_STORAGE_DIR": str(tmp_path),
            "DAT_LEDGER_DAT_DIR": str(tmp_path / "incoming"),
            "DATABASE_URL": "postgresql+psycopg://u:p@db/ledger",
            "ACCOUNTING_ENDPOINT_URL": "https://books.example/api/tx",
            "ACCOUNTING_TIMEOUT": "12.5",
            "ACCOUNTING_RETRIES": "5",
            "ACCOUNTING_RETRY_DELAY": "0",
            "DAT_LEDGER_ALLOWED_DEVICES": "10.0.0.1, 192.168.0.0/24,,",
            "DAT_LEDGER_DOWNLOAD_SCRIPT": "./receiptit-client.sh",
        }
    )

    assert s.dat_dir == (tmp_path / "incoming").resolve()
    assert s.database_url == "postgresql+psycopg://u:p@db/ledger"
    assert s.endpoint_url == "https://books.example/api/tx"
    assert (s.timeout, s.attempts, s.retry_delay) == (12.5, 5, 0.0)
    assert s.allowed_devices == ("10.0.0.1", "192.168.0.0/24")
    assert s.download_script == Path("receiptit-client.sh")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("ACCOUNTING_TIMEOUT", "soon"),
        ("ACCOUNTING_TIMEOUT", "-1"),
        ("ACCOUNTING_RETRIES", "0"),
        ("ACCOUNTING_RETRIES", "2.5"),
        ("ACCOUNTING_RETRY_DELAY", "x"),
    ],
)
def test_invalid_numbers_name_the_variable(name: str, value: str):
    with pytest.raises(ValueError, match=name):
        Settings.from_env({name: value})


def test_reads_process_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ACCOUNTING_RETRIES", "7")
    assert Settings.from_env().attempts == 7


def test_unknown_dat_encoding_names_the_variable():
    with pytest.raises(ValueError, match="DAT_LEDGER_DAT_ENCODING"):
        Settings.from_env({"DAT_LEDGER_DAT_ENCODING": "no-such-codec"})


def test_known_dat_encoding_is_kept():
    assert Settings.from_env({"DAT_LEDGER_DAT_ENCODING": "cp874"}).dat_encoding == "cp874"
