"""Command-line interface for the listening tracker."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from .config.settings import Settings
from .core.events import JsonLinesEventSource
from .utils.logger import setup_logger
from .utils.platform import get_config_dir
from .utils.time import Period

app = typer.Typer(help="SoundCloud listening tracker and statistics")
console = Console()

T = TypeVar("T")

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

ConfigOption = typer.Option(None, "--config", "-c", help="Path to configuration file")


def get_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings from file or defaults."""
    return Settings.from_file_or_default(config_path)


def format_duration(seconds: float) -> str:
    """Format seconds as ``1h 02m`` / ``3m 05s``."""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m {secs:02d}s"


def run_query(config: Optional[Path], query: Callable[..., Awaitable[T]]) -> T:
    """Open the service without tracking, run ``query(service)`` and close it."""
    from .service import ListeningTrackerService

    settings = get_settings(config)
    logger = setup_logger(
        log_file=settings.logging.path,
        level=settings.logging.level,
        max_size_mb=settings.logging.max_size_mb,
        backup_count=settings.logging.backup_count,
        console=False
    )

    async def _run() -> T:
        service = ListeningTrackerService(settings=settings, logger=logger)
        await service.open(track=False)
        try:
            return await query(service)
        finally:
            await service.close()

    return asyncio.run(_run())


def _period(value: str) -> Period:
    try:
        return Period(value)
    except ValueError:
        console.print(f"[red]Error: period must be one of {[p.value for p in Period]}[/red]")
        raise typer.Exit(1)


@app.command()
def start(
    config: Optional[Path] = ConfigOption,
    events: Optional[Path] = typer.Option(
        None,
        "--events",
        "-e",
        help="Read observation events from this JSON-lines file instead of stdin"
    ),
    idle: bool = typer.Option(
        False,
        "--idle",
        help="Do not read events; keep the timers running until stopped"
    )
):
    """Start the tracking service."""
    console.print("[cyan]Starting listening tracker...[/cyan]", highlight=False)

    from .service import ListeningTrackerService

    try:
        service = ListeningTrackerService(config_path=config)

        if idle:
            flushed = asyncio.run(service.run())
        elif events is not None:
            with open(events, 'r', encoding='utf-8') as f:
                flushed = asyncio.run(service.run(JsonLinesEventSource(f, logger=service.logger)))
        else:
            flushed = asyncio.run(service.run(JsonLinesEventSource(sys.stdin, logger=service.logger)))
    except KeyboardInterrupt:
        console.print("\n[yellow]Service stopped by user[/yellow]")
        return
    except Exception as e:
        console.print(f"[red]Service error: {e}[/red]")
        raise typer.Exit(1)

    if not flushed:
        console.print("[red]Some changes could not be saved[/red]")
        raise typer.Exit(1)


@app.command()
def status(config: Optional[Path] = ConfigOption):
    """Show tracking status, totals and storage usage."""
    settings = get_settings(config)

    async def query(service):
        return service.get_status(), service.get_total_stats(Period.ALL), await service.get_storage_usage()

    try:
        state, totals, usage = run_query(config, query)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print("[cyan]Listening Tracker Status[/cyan]\n")

    console.print(f"Config directory: {get_config_dir()}")
    console.print(f"Database: {settings.storage.path}")
    console.print(f"Log file: {settings.logging.path}\n")

    tracking = "[green]Enabled[/green]" if state["enabled"] else "[red]Disabled[/red]"
    console.print(f"[bold]Tracking:[/bold] {tracking}")
    console.print(f"[bold]Enrichment:[/bold] {'ready' if state['enrichment_ready'] else 'no client id'}\n")

    current = state["current_track"]
    if current:
        label = "Playing" if state["is_playing"] else "Paused"
        console.print(f"[bold]{label}:[/bold] {current['title']} - {current['artist_name']}")
        console.print(f"  Session: {format_duration(state['session_seconds'])}")
        if state["saved_at"]:
            saved = datetime.fromtimestamp(state["saved_at"]).strftime("%Y-%m-%d %H:%M:%S")
            console.print(f"  Last saved: {saved}")
        console.print()

    console.print("[bold]All time:[/bold]")
    console.print(f"  Listening time: {format_duration(totals.total_seconds)}")
    console.print(f"  Tracks: {totals.total_tracks}")
    console.print(f"  Plays: {totals.total_plays}")
    console.print(f"  Artists: {totals.total_artists}\n")

    if usage:
        console.print("[bold]Storage:[/bold]")
        console.print(f"  Used: {usage['used']} bytes")
        if usage["total"]:
            console.print(f"  Quota: {usage['total']} bytes ({usage['percentage']}%)")


@app.command()
def top(
    config: Optional[Path] = ConfigOption,
    period: str = typer.Option("all", "--period", "-p", help="today, yesterday, week, month, year or all"),
    sort_by: str = typer.Option("play_count", "--sort", "-s", help="play_count or total_seconds"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of tracks")
):
    """List the most played tracks."""
    selected = _period(period)

    async def query(service):
        return service.get_top_tracks(sort_by=sort_by, limit=limit, period=selected)

    try:
        tracks = run_query(config, query)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if not tracks:
        console.print("[yellow]No listening data for this period[/yellow]")
        return

    table = Table(title=f"Top Tracks ({selected.value})")
    table.add_column("#", justify="right")
    table.add_column("Title", style="green")
    table.add_column("Artist", style="cyan")
    table.add_column("Plays", justify="right")
    table.add_column("Time", justify="right")

    for rank, entry in enumerate(tracks, start=1):
        title = entry.track.title if entry.track else entry.stats.track_id
        artist = entry.track.artist_name if entry.track else "Unknown Artist"
        table.add_row(
            str(rank),
            title,
            artist,
            str(entry.stats.play_count),
            format_duration(entry.stats.total_seconds)
        )

    console.print(table)


@app.command()
def daily(
    config: Optional[Path] = ConfigOption,
    period: str = typer.Option("month", "--period", "-p", help="today, yesterday, week, month, year or all")
):
    """Show listening time per day."""
    selected = _period(period)

    async def query(service):
        return service.get_daily_stats(selected)

    days = run_query(config, query)
    if not days:
        console.print("[yellow]No listening data for this period[/yellow]")
        return

    table = Table(title=f"Daily Listening ({selected.value})")
    table.add_column("Date", style="cyan")
    table.add_column("Time", justify="right")
    table.add_column("Sessions", justify="right")
    table.add_column("Tracks", justify="right")

    for day in days:
        table.add_row(day.date, format_duration(day.total_seconds), str(day.sessions_count), str(day.tracks_played))

    console.print(table)


@app.command()
def patterns(
    config: Optional[Path] = ConfigOption,
    year: Optional[int] = typer.Option(None, "--year", "-y", help="Calendar year (default: current)")
):
    """Show listening time by hour, weekday and month."""
    year = year or datetime.now().year

    async def query(service):
        return service.get_listening_patterns(year)

    result = run_query(config, query)

    weekdays = Table(title=f"By Weekday ({year})")
    for name in DAY_NAMES:
        weekdays.add_column(name, justify="right")
    weekdays.add_row(*(format_duration(s) for s in result.by_day_of_week))
    console.print(weekdays)

    months = Table(title=f"By Month ({year})")
    for name in MONTH_NAMES:
        months.add_column(name, justify="right")
    months.add_row(*(format_duration(s) for s in result.by_month))
    console.print(months)

    hours = Table(title=f"By Hour ({year})")
    hours.add_column("Hour", justify="right")
    hours.add_column("Time", justify="right")
    for hour, seconds in enumerate(result.by_hour):
        if seconds:
            hours.add_row(f"{hour:02d}:00", format_duration(seconds))
    console.print(hours)


@app.command()
def recap(
    config: Optional[Path] = ConfigOption,
    year: Optional[int] = typer.Option(None, "--year", "-y", help="Calendar year (default: current)")
):
    """Generate and save the yearly recap."""
    year = year or datetime.now().year

    async def query(service):
        return await service.generate_recap(year)

    try:
        data = run_query(config, query)
    except Exception as e:
        console.print(f"[red]Failed to generate recap: {e}[/red]")
        raise typer.Exit(1)

    summary = data["summary"]
    console.print(f"[cyan]Your {year} in music[/cyan]\n")
    console.print(f"Listening time: {format_duration(summary['total_seconds'])}")
    console.print(f"Tracks: {summary['total_tracks']}")
    console.print(f"Artists: {summary['total_artists']}")
    console.print(f"Plays: {summary['total_plays']}")

    if summary["most_active_hour"] is not None:
        console.print(f"Most active hour: {summary['most_active_hour']:02d}:00")
    if summary["most_active_day"] is not None:
        console.print(f"Most active day: {DAY_NAMES[summary['most_active_day']]}")
    if summary["most_active_month"] is not None:
        console.print(f"Most active month: {MONTH_NAMES[summary['most_active_month']]}")

    if data["top_artists"]:
        table = Table(title="Top Artists")
        table.add_column("Artist", style="cyan")
        table.add_column("Time", justify="right")
        table.add_column("Tracks", justify="right")
        for artist in data["top_artists"]:
            table.add_row(artist["name"], format_duration(artist["total_seconds"]), str(artist["track_count"]))
        console.print(table)


@app.command()
def tracking(
    state: str = typer.Argument(..., help="on or off"),
    config: Optional[Path] = ConfigOption
):
    """Turn listening tracking on or off."""
    if state not in ("on", "off"):
        console.print("[red]Error: state must be 'on' or 'off'[/red]")
        raise typer.Exit(1)

    enabled = state == "on"

    async def query(service):
        await service.set_tracking_enabled(enabled)

    try:
        run_query(config, query)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Tracking {'enabled' if enabled else 'disabled'}[/green]")


@app.command()
def reset(
    config: Optional[Path] = ConfigOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")
):
    """Delete all listening data. Settings are kept.

    Stop a running tracker first, or it writes its in-memory stats back.
    """
    if not yes and not typer.confirm("Delete all listening data?", default=False):
        console.print("[yellow]Cancelled[/yellow]")
        return

    async def query(service):
        await service.reset_data()

    try:
        run_query(config, query)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print("[green]Listening data deleted[/green]")


@app.command()
def init_config(
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output path for config file"
    )
):
    """Initialize a configuration file with defaults."""
    if output is None:
        output = get_config_dir() / 'config.yaml'

    if output.exists():
        overwrite = typer.confirm(
            f"Config file already exists at {output}. Overwrite?",
            default=False
        )
        if not overwrite:
            console.print("[yellow]Cancelled[/yellow]")
            return

    settings = Settings()
    settings.save(output)

    console.print(f"[green]Configuration file created: {output}[/green]")
    console.print("\nSet enrichment.client_id to resolve full track metadata")


if __name__ == "__main__":
    app()
