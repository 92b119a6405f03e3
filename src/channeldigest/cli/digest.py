"""CLI commands for running the digest scheduler and managing its schedule."""

from __future__ import annotations

import json
import signal
import threading
from datetime import UTC, datetime
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from channeldigest import get_version
from channeldigest.config import AppConfig, get_config
from channeldigest.errors import InvalidScheduleError, RepositoryError
from channeldigest.logging import configure_logging
from channeldigest.services.database import build_engine, create_session_factory, init_database
from channeldigest.services.llm import OllamaGateway
from channeldigest.services.orchestrator import (
    DEFAULT_CATCHUP_WINDOW,
    DigestOrchestrator,
    SchedulerLease,
    WindowStatus,
    default_tasks,
    duration_or_default,
    load_anchor,
    load_schedule,
)
from channeldigest.services.repository import DEFAULT_LOCK_TTL, SqlRepository
from channeldigest.services.schedule import SETTING_DIGEST_SCHEDULE, parse_schedule
from channeldigest.services.tasks import TaskScheduler
from channeldigest.services.telegram import TelegramPoster
from channeldigest.services.windows import build_windows

app = typer.Typer(add_completion=False, help="Compose scheduled channel digests and deliver them to Telegram.")
schedule_app = typer.Typer(help="Show or replace the stored digest schedule.")
app.add_typer(schedule_app, name="schedule")
console = Console()

STATUS_STYLES = {
    WindowStatus.POSTED: "green",
    WindowStatus.SKIPPED: "dim",
    WindowStatus.EMPTY: "yellow",
    WindowStatus.FAILED: "red",
    WindowStatus.CANCELLED: "yellow",
}


def _setup(config: AppConfig) -> SqlRepository:
    configure_logging(config.log_level, json_output=config.log_json)
    engine = build_engine(config.database_url, echo=config.database_echo)
    init_database(engine)
    lock_ttl = duration_or_default(config.lock_ttl, DEFAULT_LOCK_TTL, "lock_ttl")
    return SqlRepository(create_session_factory(engine), lock_ttl=lock_ttl)


def _orchestrator(config: AppConfig) -> DigestOrchestrator:
    repo = _setup(config)
    try:
        poster = TelegramPoster.from_config(config)
    except ValueError as exc:
        console.print(f"[red]✗ {exc}[/red]")
        raise typer.Exit(1) from exc
    return DigestOrchestrator(repo, poster, config, llm=OllamaGateway.from_config(config))


@app.command("version")
def version() -> None:
    """Print the installed version."""
    console.print(get_version())


@app.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    config = get_config()
    _setup(config)
    console.print("[green]✓ Database initialized[/green]")


@app.command("run")
def run() -> None:
    """Run the scheduler loop until interrupted."""
    config = get_config()
    orchestrator = _orchestrator(config)
    log = structlog.get_logger("cli.digest")

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        log.info("scheduler.signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    console.print(f"[cyan]📰 Digest scheduler started (tick {config.scheduler_tick_interval})[/cyan]")
    orchestrator.run(stop_event)
    console.print("[cyan]Scheduler stopped[/cyan]")


@app.command("run-once")
def run_once() -> None:
    """Process every pending window once and exit."""
    config = get_config()
    orchestrator = _orchestrator(config)
    results = orchestrator.run_once()

    if not results:
        console.print("[yellow]No windows processed (no schedule, nothing pending, or lock held elsewhere).[/yellow]")
        return

    table = Table(title="Digest windows")
    table.add_column("Start (UTC)")
    table.add_column("End (UTC)")
    table.add_column("Status")
    table.add_column("Details")
    for result in results:
        detail = result.error or (result.anomaly.kind.value if result.anomaly else "") or (result.digest_id or "")
        style = STATUS_STYLES.get(result.status, "")
        table.add_row(
            result.window.start.strftime("%Y-%m-%d %H:%M"),
            result.window.end.strftime("%Y-%m-%d %H:%M"),
            f"[{style}]{result.status.value}[/{style}]",
            detail,
        )
    console.print(table)

    if any(result.status is WindowStatus.FAILED for result in results):
        raise typer.Exit(1)


@app.command("windows")
def preview_windows() -> None:
    """Preview the windows the next run would process."""
    config = get_config()
    repo = _setup(config)
    schedule = load_schedule(repo)
    if schedule is None:
        console.print("[yellow]No digest schedule configured.[/yellow]")
        return

    catchup = duration_or_default(config.scheduler_catchup_window, DEFAULT_CATCHUP_WINDOW, "scheduler_catchup_window")
    anchor = load_anchor(repo)
    windows = build_windows(schedule, datetime.now(tz=UTC), catchup, anchor)
    tz = schedule.location()

    console.print(f"[dim]Anchor: {anchor.isoformat() if anchor else 'none'}[/dim]")
    if not windows:
        console.print("[green]Nothing pending.[/green]")
        return

    table = Table(title=f"Pending windows ({schedule.timezone or 'UTC'})")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Exists")
    for window in windows:
        table.add_row(
            window.start.astimezone(tz).strftime("%Y-%m-%d %H:%M"),
            window.end.astimezone(tz).strftime("%Y-%m-%d %H:%M"),
            "yes" if repo.digest_exists(window.start, window.end) else "no",
        )
    console.print(table)


@app.command("tune")
def tune(
    force: bool = typer.Option(False, "--force", help="Run every enabled tuner regardless of its weekly slot"),
) -> None:
    """Run the rating-driven tuners that are due."""
    config = get_config()
    repo = _setup(config)
    lease = SchedulerLease(repo, config)
    scheduler = TaskScheduler(repo, default_tasks(repo, config))
    completed: list[str] = []

    def tick() -> None:
        completed.extend(scheduler.tick(force=force, keep_running=lease.renew))

    if not lease.run(tick):
        console.print("[red]✗ Scheduler lock held elsewhere; tuners not run[/red]")
        raise typer.Exit(1)

    if completed:
        console.print(f"[green]✓ Completed: {', '.join(completed)}[/green]")
    else:
        console.print("[yellow]No tuners ran.[/yellow]")


@schedule_app.command("show")
def schedule_show() -> None:
    """Print the stored schedule."""
    config = get_config()
    repo = _setup(config)
    raw = repo.get_setting(SETTING_DIGEST_SCHEDULE)
    if not raw:
        console.print("[yellow]No digest schedule configured.[/yellow]")
        return
    console.print_json(raw if isinstance(raw, str) else json.dumps(raw))


@schedule_app.command("set")
def schedule_set(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="JSON schedule file"),
) -> None:
    """Validate and store a schedule from a JSON file."""
    config = get_config()
    repo = _setup(config)

    try:
        schedule = parse_schedule(path.read_text(encoding="utf-8")).normalized()
    except InvalidScheduleError as exc:
        console.print(f"[red]✗ Invalid schedule: {exc}[/red]")
        raise typer.Exit(1) from exc

    try:
        repo.save_setting(SETTING_DIGEST_SCHEDULE, schedule.model_dump(mode="json", exclude_none=True))
    except RepositoryError as exc:
        console.print(f"[red]✗ Could not save schedule: {exc}[/red]")
        raise typer.Exit(1) from exc

    console.print(f"[green]✓ Schedule saved ({schedule.timezone or 'UTC'})[/green]")


if __name__ == "__main__":
    app()
