"""Command-line interface for the DMARC report sender.

Usage:
    dmarc-send-reports send -v --delay 10 --batch 5
    dmarc-send-reports enqueue report.xml --id 1234 --domain example.com \\
        --rua "mailto:dmarc@example.com!10m"
    dmarc-send-reports pending --json
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config_loader import Settings, load_settings
from .core import ReportSender
from .errors import FatalSenderError
from .logger import configure_operational_sink
from .models import Report
from .persistence import ReportStore

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _load(config_path: Optional[str], db_path: Optional[str]) -> Settings:
    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        print_error(str(exc))
        raise SystemExit(1) from exc
    if db_path:
        settings.db_path = db_path
    # no-op when the entry point already configured logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return settings


@click.group()
@click.version_option(package_name="dmarc-sender")
def main() -> None:
    """dmarc-send-reports: deliver queued DMARC aggregate reports."""


@main.command("send")
@click.option("-v", "--verbose", count=True, help="Raise verbosity; twice echoes every log record.")
@click.option("--delay", type=click.IntRange(min=0), default=None, help="Seconds to sleep between batches.")
@click.option("--batch", type=click.IntRange(min=1), default=None, help="Reports sent between two pauses.")
@click.option("--timeout", type=click.IntRange(min=1), default=None, help="Seconds allowed per report.")
@click.option("--syslog", count=True, help="Send operational records to syslog.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.option("--db-path", default=None, help="Report queue database.")
@click.option("--metrics-file", type=click.Path(dir_okay=False), default=None, help="Write Prometheus metrics here.")
def send(
    verbose: int,
    delay: Optional[int],
    batch: Optional[int],
    timeout: Optional[int],
    syslog: int,
    config_path: Optional[str],
    db_path: Optional[str],
    metrics_file: Optional[str],
) -> None:
    """Send every queued report once."""
    settings = _load(config_path, db_path)
    overrides = {"delay": delay, "batch": batch, "timeout": timeout}
    for name, value in overrides.items():
        if value is not None:
            setattr(settings.send, name, value)
    settings.send.verbose += verbose
    settings.send.syslog += syslog

    if settings.send.syslog:
        configure_operational_sink(settings.syslog_address)

    try:
        sender = ReportSender(settings, console=console)
    except (ImportError, AttributeError, ValueError) as exc:
        print_error(f"Invalid transports setting: {exc}")
        raise SystemExit(1) from exc

    try:
        stats = run_async(sender.run())
    except FatalSenderError as exc:
        print_error(str(exc))
        raise SystemExit(1) from exc
    finally:
        if metrics_file:
            sender.metrics.write_textfile(metrics_file)

    if settings.send.verbose > 1:
        console.print(
            f"processed {stats.processed} report(s): {stats.deleted} removed, "
            f"{stats.timeouts} timed out, {stats.errors} failed",
            markup=False,
            highlight=False,
        )


@main.command("enqueue")
@click.argument("xml_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--id", "report_id", required=True, help="Unique report identifier.")
@click.option("--domain", required=True, help="Policy domain the report covers.")
@click.option("--rua", required=True, help="Receiver list, e.g. 'mailto:a@example.com!10m'.")
@click.option("--begin", type=int, default=None, help="Window start (epoch seconds).")
@click.option("--end", type=int, default=None, help="Window end (epoch seconds).")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.option("--db-path", default=None, help="Report queue database.")
def enqueue(
    xml_file: Path,
    report_id: str,
    domain: str,
    rua: str,
    begin: Optional[int],
    end: Optional[int],
    config_path: Optional[str],
    db_path: Optional[str],
) -> None:
    """Queue XML_FILE as an aggregate report."""
    settings = _load(config_path, db_path)
    try:
        report = Report(
            id=report_id,
            domain=domain,
            rua=rua,
            body=xml_file.read_text(encoding="utf-8"),
            begin=begin,
            end=end,
        )
    except ValidationError as exc:
        print_error(f"Invalid report: {exc}")
        raise SystemExit(1) from exc

    async def _enqueue() -> bool:
        store = ReportStore(settings.db_path)
        await store.init_db()
        return await store.enqueue_report(report)

    if run_async(_enqueue()):
        print_success(f"Report '{report_id}' queued")
    else:
        print_error(f"Report '{report_id}' is already queued")
        raise SystemExit(1)


@main.command("pending")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.option("--db-path", default=None, help="Report queue database.")
def pending(as_json: bool, config_path: Optional[str], db_path: Optional[str]) -> None:
    """List queued reports."""
    settings = _load(config_path, db_path)

    async def _list():
        store = ReportStore(settings.db_path)
        await store.init_db()
        return await store.list_reports()

    reports = run_async(_list())

    if as_json:
        print_json(reports)
        return

    if not reports:
        console.print("[dim]No reports queued.[/dim]")
        return

    table = Table(title="Queued Reports")
    table.add_column("ID", style="cyan")
    table.add_column("Domain")
    table.add_column("Receivers")
    table.add_column("Size", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Last Error", style="red")

    for item in reports:
        table.add_row(
            item["id"],
            item["domain"],
            item.get("rua") or "-",
            str(item.get("body_length") or 0),
            str(item.get("error_count") or 0),
            item.get("error") or "",
        )

    console.print(table)


if __name__ == "__main__":
    main()
