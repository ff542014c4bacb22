# ruff: noqa: I001
"""CLI for the ``dat_ledger`` package.

Typer-based console interface over the ingest pipeline. Environment variables
are loaded from a local ``.env`` using ``python-dotenv`` (existing variables
win) before :class:`~dat_ledger.config.Settings` is resolved. Business logic
lives in :mod:`dat_ledger.orchestrator` and related modules; this module only
wires settings, locks and output together.

Exit codes: ``1`` when the DAT directory is missing (or another hard
precondition fails), ``0`` otherwise, including when another run holds the
lock.
"""

from __future__ import annotations

import json
from enum import StrEnum
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .accumulator import render_csv
from .collaborators import DeviceAllowList, DownloadTrigger
from .config import Settings
from .dedup import SqlProcessedFileStore
from .errors import RunLockHeld, SourceDirectoryMissing
from .forwarder import TransmissionForwarder
from .locking import RunLock
from .logging_setup import configure_logging
from .normalizers import format_amount
from .orchestrator import RunSummary, run_ingest
from .transmission_queue import TransmissionQueue, send_pending

console = Console()
err_console = Console(stderr=True)


class OutputFormat(StrEnum):
    TABLE = "table"
    JSON = "json"
    CSV = "csv"


# ---- Small module-level helpers used by CLI commands -------------------------


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        err_console.print(f"[red]Error:[/red] invalid configuration: {e}")
        raise typer.Exit(1) from e


def _summary_table(summary: RunSummary) -> Table:
    table = Table(title="Run summary", show_header=False)
    table.add_column("metric", style="cyan")
    table.add_column("value", justify="right")
    rows = [
        ("Files found", summary.files_found),
        ("Files skipped (already processed)", summary.files_skipped),
        ("Files processed", summary.files_processed),
        ("Files failed", summary.files_failed),
        ("Records extracted", summary.records_extracted),
        ("Records added to ledgers", summary.records_added),
        ("Duplicates skipped", summary.duplicates_skipped),
        ("Transmissions sent", f"{summary.transmissions_succeeded}/{summary.transmissions_attempted}"),
        ("Deltas queued", summary.transmissions_queued),
        ("Deltas not queued", summary.queue_failures),
    ]
    for label, value in rows:
        table.add_row(label, str(value))
    return table


def _records_table(summary: RunSummary) -> Table:
    table = Table(title=f"Transactions ({len(summary.records)})")
    for col in ("Date", "Time", "Amount", "Mobile Number", "Transaction ID"):
        table.add_column(col, justify="right" if col == "Amount" else "left")
    for rec in summary.records:
        table.add_row(
            rec.transaction_date,
            rec.transaction_time,
            format_amount(rec.amount),
            rec.mobile_number,
            rec.transaction_id or "N/A",
        )
    return table


def _summary_json(summary: RunSummary) -> dict[str, object]:
    return {
        "files_found": summary.files_found,
        "files_skipped": summary.files_skipped,
        "files_processed": summary.files_processed,
        "files_failed": summary.files_failed,
        "records_extracted": summary.records_extracted,
        "records_added": summary.records_added,
        "duplicates_skipped": summary.duplicates_skipped,
        "transmissions_attempted": summary.transmissions_attempted,
        "transmissions_succeeded": summary.transmissions_succeeded,
        "transmissions_queued": summary.transmissions_queued,
        "queue_failures": summary.queue_failures,
        "files": [s.as_log_fields() for s in summary.file_stats],
        "records": [r.to_dict() for r in summary.records],
    }


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Parse bank DAT files into per-date CSV ledgers and forward new rows to "
        "the accounting endpoint. Loads settings from a local .env before running."
    ),
)
processed_app = typer.Typer(no_args_is_help=True, help="Inspect or reset the processed-file set.")
app.add_typer(processed_app, name="processed")


@app.callback()
def _root(
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (falls back to DAT_LEDGER_LOG_LEVEL)."),
    ] = None,
) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


@app.command("parse-dat")
def parse_dat_cmd(
    output: Annotated[OutputFormat, typer.Option(help="Output format for parsed records.")] = OutputFormat.TABLE,
    save: Annotated[bool, typer.Option("--save/--no-save", help="Merge records into the daily ledgers.")] = True,
    send: Annotated[
        bool,
        typer.Option("--send/--no-send", help="Forward new ledger rows now (otherwise they are queued)."),
    ] = True,
    process_all: Annotated[
        bool, typer.Option("--all", help="Reprocess files even if they were processed before.")
    ] = False,
    workers: Annotated[int, typer.Option(min=1, help="Parallel file parsers.")] = 1,
    force: Annotated[bool, typer.Option(help="Replace a run lock held by another process.")] = False,
) -> None:
    """Parse every DAT file in the configured directory."""

    settings = _load_settings()
    store = SqlProcessedFileStore(database_url=settings.database_url)
    lock = RunLock(settings.lock_path, force=force)

    if save:
        try:
            lock.acquire()
        except RunLockHeld as e:
            err_console.print(f"[yellow]Another run is in progress:[/yellow] {e}")
            raise typer.Exit(0) from e

    try:
        forwarder = TransmissionForwarder.from_settings(settings) if (save and send) else None
        queue = TransmissionQueue(settings.queue_dir) if save else None
        summary = run_ingest(
            settings,
            store,
            process_all=process_all,
            save=save,
            forwarder=forwarder,
            queue=queue,
            workers=workers,
        )
    except SourceDirectoryMissing as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        lock.release()

    if output is OutputFormat.JSON:
        typer.echo(json.dumps(_summary_json(summary), indent=2))
    elif output is OutputFormat.CSV:
        typer.echo(render_csv(summary.records), nl=False)
    else:
        if summary.records:
            console.print(_records_table(summary))
        else:
            console.print("[yellow]No new transactions found.[/yellow]")
        console.print(_summary_table(summary))


@app.command("send-pending")
def send_pending_cmd(
    batch_size: Annotated[int, typer.Option(min=1, help="Items per batch.")] = 15,
    max_runtime: Annotated[float, typer.Option(min=0, help="Stop after this many seconds.")] = 120.0,
    retry_failed: Annotated[bool, typer.Option(help="Retry previously failed transmissions.")] = False,
    max_retries: Annotated[int, typer.Option(min=0, help="Maximum retries per queued item.")] = 3,
) -> None:
    """Send queued ledger deltas to the accounting endpoint."""

    settings = _load_settings()
    queue = TransmissionQueue(settings.queue_dir)
    forwarder = TransmissionForwarder.from_settings(settings)

    console.print(
        f"[cyan]Starting transmission batch:[/cyan] max {batch_size} items, {max_runtime:g}s limit"
    )
    summary = send_pending(
        queue,
        forwarder,
        batch_size=batch_size,
        max_runtime=max_runtime,
        retry_failed=retry_failed,
        max_retries=max_retries,
    )

    table = Table(title="Transmission summary", show_header=False)
    table.add_column("metric", style="cyan")
    table.add_column("value", justify="right")
    table.add_row("Sent", str(summary.sent))
    table.add_row("Failed", str(summary.failed))
    table.add_row("Retry attempts", str(summary.retry_attempts))
    table.add_row("Records sent", str(summary.total_records))
    table.add_row("Pending", str(summary.queue_status.get("pending", 0)))
    table.add_row("Failed in queue", str(summary.queue_status.get("failed", 0)))
    console.print(table)
    if summary.runtime_exceeded:
        console.print("[yellow]Runtime limit reached, stopped early.[/yellow]")
    for err in summary.errors[:5]:
        console.print(f"[red]✗[/red] {err[:200]}")


@processed_app.command("list")
def processed_list_cmd() -> None:
    """List DAT files recorded as processed."""

    settings = _load_settings()
    names = SqlProcessedFileStore(database_url=settings.database_url).processed_files()
    if not names:
        console.print("[yellow]No processed files recorded.[/yellow]")
        return
    for name in names:
        typer.echo(name)


@processed_app.command("forget")
def processed_forget_cmd(
    name: Annotated[str, typer.Argument(help="DAT file name to reprocess on the next run.")],
) -> None:
    """Remove one file from the processed set."""

    settings = _load_settings()
    store = SqlProcessedFileStore(database_url=settings.database_url)
    if not store.is_processed(name):
        console.print(f"[yellow]Not recorded as processed:[/yellow] {name}")
        return
    store.release(name)
    console.print(f"[green]Forgot[/green] {name}")


@processed_app.command("clear")
def processed_clear_cmd(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation.")] = False,
) -> None:
    """Remove every file from the processed set."""

    if not yes:
        typer.confirm("Clear the processed-file set?", abort=True)
    settings = _load_settings()
    removed = SqlProcessedFileStore(database_url=settings.database_url).clear()
    console.print(f"[green]Cleared[/green] {removed} processed file(s)")


@app.command("download")
def download_cmd(
    timeout: Annotated[float, typer.Option(min=1, help="Maximum execution time in seconds.")] = 300.0,
    force: Annotated[bool, typer.Option(help="Replace a lock held by another download.")] = False,
) -> None:
    """Run the bank download script to fetch new DAT files."""

    settings = _load_settings()
    if settings.download_script is None:
        err_console.print("[red]Error:[/red] DAT_LEDGER_DOWNLOAD_SCRIPT is not set")
        raise typer.Exit(1)

    script = settings.download_script.resolve()
    trigger = DownloadTrigger(
        script,
        working_dir=script.parent,
        dat_dir=settings.dat_dir,
        timeout=timeout,
    )
    try:
        with RunLock(settings.storage_dir / "download.lock", force=force):
            result = trigger.run()
    except RunLockHeld as e:
        err_console.print(f"[yellow]Another download is in progress:[/yellow] {e}")
        raise typer.Exit(0) from e

    if not result.ok:
        err_console.print(f"[red]Download failed[/red] (exit code {result.returncode})")
        if result.output:
            err_console.print(result.output[-2000:])
        raise typer.Exit(1)
    console.print(f"[green]Download finished:[/green] {result.new_files} new DAT file(s)")


@app.command("check-device")
def check_device_cmd(
    ip: Annotated[str, typer.Argument(help="Client IP address to check.")],
) -> None:
    """Check an address against DAT_LEDGER_ALLOWED_DEVICES."""

    settings = _load_settings()
    try:
        allow = DeviceAllowList(settings.allowed_devices)
    except ValueError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    if allow.is_allowed(ip):
        console.print(f"[green]allowed[/green] {ip}")
        return
    console.print(f"[red]denied[/red] {ip}")
    raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover
    app()
