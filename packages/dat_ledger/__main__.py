"""Running as a module: ``python -m dat_ledger``."""

from .cli import app

app(prog_name="dat-ledger")
