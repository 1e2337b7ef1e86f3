"""
CLI interface for Usage Ledger.

Provides command-line access to ingestion, statistics and the sync scheduler.
"""

import logging
import sys
import time
from dataclasses import replace
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_ledger.config.loader import LedgerConfig, default_config, load_config
from usage_ledger.core.errors import PreconditionError, SyncError
from usage_ledger.core.pipeline import SyncReport, SyncType
from usage_ledger.core.services import LedgerServices, build_services
from usage_ledger.storage.errors import StoreError
from usage_ledger.storage.models import DateRange, SessionSortOrder, UsageStatistics

app = typer.Typer(help="Ingest JSONL usage logs into a local SQLite ledger.")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

STATUS_POLL_SECONDS = 5.0


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _build_config(
    config_path: Optional[str],
    db_path: Optional[str],
    projects_dir: Optional[str],
) -> LedgerConfig:
    """Load the YAML config (or defaults) and apply command-line overrides."""
    config = load_config(config_path) if config_path else default_config()
    if db_path:
        config = replace(config, storage=replace(config.storage, db_path=db_path))
    if projects_dir:
        config = replace(config, ingestion=replace(config.ingestion, projects_dir=projects_dir))
    return config


def _services(ctx: typer.Context) -> LedgerServices:
    return build_services(ctx.obj)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to the SQLite ledger"),
    projects_dir: Optional[str] = typer.Option(
        None, "--projects-dir", "-p", help="Root directory of the JSONL logs"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Usage Ledger CLI."""
    _configure_logging(verbose)
    try:
        ctx.obj = _build_config(config, db, projects_dir)
    except (FileNotFoundError, ValueError) as e:
        _fail(str(e))
    if ctx.invoked_subcommand is None:
        console.print("Usage Ledger - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage database."""
    try:
        _services(ctx).repository.initialize_schema()
    except StoreError as e:
        _fail(f"initializing database: {e}")
    console.print("[green]✓[/] Database initialized successfully")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sync(
    ctx: typer.Context,
    incremental: bool = typer.Option(
        False, "--incremental", "-i", help="Only process new, modified or failed files"
    ),
):
    """Ingest log files into the database once."""
    services = _services(ctx)
    sync_type = SyncType.INCREMENTAL if incremental else SyncType.FULL
    try:
        report = services.pipeline.run(sync_type)
    except (PreconditionError, StoreError, SyncError) as e:
        _fail(str(e))
    _display_report(report)
    sys.exit(EXIT_CODE_PASS if report.success else EXIT_CODE_FAIL)


@app.command()
def stats(
    ctx: typer.Context,
    date_range: DateRange = typer.Option(DateRange.ALL, "--range", "-r", help="Date range"),
    project: Optional[str] = typer.Option(None, "--project", help="Filter by project path substring"),
):
    """Show usage statistics, from the database or directly from the logs."""
    services = _services(ctx)
    try:
        statistics = services.hybrid.get_statistics(date_range, project)
    except (PreconditionError, StoreError) as e:
        _fail(str(e))

    if statistics.is_empty:
        console.print("\n[bold yellow]No usage data found[/]")
        console.print("Run `usage-ledger sync` after using the CLI tool to collect data.\n")
        sys.exit(EXIT_CODE_PASS)

    source = services.hybrid.last_source.value if services.hybrid.last_source else "unknown"
    _display_statistics(statistics, date_range, source)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sessions(
    ctx: typer.Context,
    date_range: DateRange = typer.Option(DateRange.ALL, "--range", "-r", help="Date range"),
    sort: SessionSortOrder = typer.Option(SessionSortOrder.COST_DESC, "--sort", "-s", help="Sort order"),
):
    """Show usage per project."""
    services = _services(ctx)
    try:
        projects = services.hybrid.get_session_breakdown(date_range, sort)
    except (PreconditionError, StoreError) as e:
        _fail(str(e))

    table = Table(title=f"Projects ({date_range.value})")
    table.add_column("Project")
    table.add_column("Cost", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Sessions", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Last used")
    for usage in projects:
        table.add_row(
            usage.project_name,
            _format_currency(usage.total_cost),
            f"{usage.total_tokens:,}",
            str(usage.session_count),
            str(usage.request_count),
            usage.last_used[:19],
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(ctx: typer.Context):
    """Show row counts and file processing states."""
    services = _services(ctx)
    try:
        services.repository.initialize_schema()
        summary = services.repository.get_store_summary()
    except StoreError as e:
        _fail(str(e))

    console.print(f"\n[bold]Database:[/bold] {services.config.storage.db_path}")
    console.print(f"Usage entries: {summary.usage_entries:,}")
    console.print(f"Tracked files: {summary.jsonl_files:,}")
    for file_status, count in summary.files_by_status:
        console.print(f"  {file_status}: {count:,}")
    console.print(
        f"Rollup rows: {summary.daily_statistics} daily, "
        f"{summary.model_statistics} model, {summary.project_statistics} project"
    )
    access = "[green]ok[/]" if services.broker.has_access() else "[red]unavailable[/]"
    console.print(f"Projects directory: {services.config.ingestion.projects_dir} ({access})\n")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def dedupe(ctx: typer.Context):
    """Remove duplicate records from the database and rebuild rollups."""
    services = _services(ctx)
    try:
        services.repository.initialize_schema()
        removed = services.repository.deduplicate()
        services.repository.regenerate_rollups()
    except StoreError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Removed {removed:,} duplicate records")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    reingest: bool = typer.Option(False, "--reingest", help="Run a full sync after the reset"),
):
    """Delete all stored data."""
    if not yes and not typer.confirm("Delete all usage data from the database?"):
        console.print("Aborted.")
        sys.exit(EXIT_CODE_FAIL)

    services = _services(ctx)
    try:
        services.repository.reset_all()
        console.print("[green]✓[/] Database reset")
        if reingest:
            report = services.pipeline.run_full()
            _display_report(report)
    except (PreconditionError, StoreError, SyncError) as e:
        _fail(str(e))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cleanup(
    ctx: typer.Context,
    keep_days: int = typer.Option(365, "--keep-days", help="Days of history to keep"),
):
    """Delete records older than the retention window."""
    services = _services(ctx)
    try:
        services.repository.initialize_schema()
        removed = services.repository.cleanup_old_records(keep_days)
    except (StoreError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Removed {removed:,} records older than {keep_days} days")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def watch(
    ctx: typer.Context,
    interval: Optional[float] = typer.Option(None, "--interval", help="Override the sync interval in seconds"),
):
    """Run the background sync scheduler until interrupted."""
    config: LedgerConfig = ctx.obj
    if interval is not None:
        config = replace(config, sync=replace(config.sync, interval_seconds=interval))
    scheduler = build_services(config).scheduler

    try:
        scheduler.start(run_immediately=True)
    except SyncError as e:
        _fail(str(e))

    console.print(f"Auto-sync every {config.sync.interval_seconds:.0f}s. Press Ctrl+C to stop.")
    last_state = None
    try:
        while True:
            current = scheduler.get_status()
            if current.state is not last_state:
                _display_status_line(current)
                last_state = current.state
            if current.is_suspended:
                _fail(current.last_error or "Auto-sync suspended")
            time.sleep(STATUS_POLL_SECONDS)
    except KeyboardInterrupt:
        console.print("\nStopping auto-sync...")
    finally:
        scheduler.stop()
        scheduler.wait_until_idle(timeout=30)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with cents, or more precision for tiny amounts."""
    if 0 < abs(amount) < 0.01:
        return f"${amount:.4f}"
    return f"${amount:,.2f}"


def _display_report(report: SyncReport) -> None:
    console.print(f"\n[bold]{report.sync_type.value.capitalize()} sync[/bold]")
    console.print("-" * 40)
    console.print(f"Files: {report.processed_files}/{report.total_files} processed, "
                  f"{report.skipped_files} unchanged, {report.error_files} failed")
    console.print(f"Entries: {report.total_entries:,} parsed, {report.inserted_entries:,} inserted")
    console.print(f"Skipped lines: {report.skipped_lines:,}")
    if report.duplicates_removed:
        console.print(f"Duplicates removed: {report.duplicates_removed:,}")
    console.print(f"Duration: {report.duration:.2f}s")
    for error in report.errors:
        console.print(f"[red]✗[/] {error}")


def _display_statistics(statistics: UsageStatistics, date_range: DateRange, source: str) -> None:
    console.print(f"\n[bold]Usage Statistics ({date_range.value})[/bold] [dim]source: {source}[/]")
    console.print("-" * 40)
    console.print(f"Total cost: {_format_currency(statistics.total_cost)}")
    console.print(f"Total tokens: {statistics.total_tokens:,}")
    console.print(f"Sessions: {statistics.total_sessions:,}  Requests: {statistics.total_requests:,}")
    console.print(f"Average cost/request: {_format_currency(statistics.average_cost_per_request)}")

    models = Table(title="By model")
    models.add_column("Model")
    models.add_column("Cost", justify="right")
    models.add_column("Tokens", justify="right")
    models.add_column("Requests", justify="right")
    for usage in statistics.by_model:
        models.add_row(usage.model, _format_currency(usage.total_cost),
                       f"{usage.total_tokens:,}", str(usage.request_count))
    console.print(models)

    days = Table(title="By date")
    days.add_column("Date")
    days.add_column("Cost", justify="right")
    days.add_column("Tokens", justify="right")
    days.add_column("Models")
    for usage in statistics.by_date:
        days.add_row(usage.date, _format_currency(usage.total_cost),
                     f"{usage.total_tokens:,}", ", ".join(usage.models_used))
    console.print(days)

    projects = Table(title="By project")
    projects.add_column("Project")
    projects.add_column("Cost", justify="right")
    projects.add_column("Sessions", justify="right")
    for usage in statistics.by_project:
        projects.add_row(usage.project_name, _format_currency(usage.total_cost), str(usage.session_count))
    console.print(projects)


def _display_status_line(current) -> None:
    next_sync = current.next_sync_time.isoformat(timespec="seconds") if current.next_sync_time else "-"
    line = f"[bold]{current.state.value}[/bold] next sync: {next_sync}"
    if current.last_report is not None:
        line += f" | last: {current.last_report.inserted_entries:,} inserted"
    if current.last_error:
        line += f" | [red]{current.last_error}[/]"
    console.print(line)


if __name__ == "__main__":
    app()
