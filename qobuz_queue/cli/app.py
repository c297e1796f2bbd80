"""
Defines the command-line interface for the application using Typer.

Every command rebuilds the queue from the database, acts on it, and flushes
the changes back before exiting. A running `run` holds its queue in memory:
jobs added by other invocations are picked up by the next `run`, and a job
cancelled or cleared elsewhere is dropped from the database for good (the
running process never writes a deleted row back) although an attempt already
in progress there is allowed to finish.
"""

import asyncio
import getpass
import logging
import os
import sys
import time
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from qobuz_queue import __version__
from qobuz_queue.admission.limiter import AdmissionLimiter, LimiterConfig
from qobuz_queue.core.driver import QueueDriver
from qobuz_queue.core.queue_engine import QueueEngine
from qobuz_queue.core.submitter import JobSubmitter
from qobuz_queue.exceptions import ConfigurationError
from qobuz_queue.media.fetcher import HttpFetchExecutor
from qobuz_queue.models.config import QueueConfig
from qobuz_queue.models.job import ContentType, JobPriority, JobStatus
from qobuz_queue.models.stats import QueueStats
from qobuz_queue.storage.config_manager import ConfigManager
from qobuz_queue.storage.mirror import PersistenceMirror, restore_engine
from qobuz_queue.storage.queue_store import QueueStore
from qobuz_queue.utils.references import parse_reference, read_references

from .formatters import (
    print_config,
    print_jobs_table,
    print_run_summary,
    print_stats_table,
    print_submit_results,
)
from .progress_view import QueueProgressView

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("qobuz_queue")

app = typer.Typer(
    name="qobuz-queue",
    help=(
        "A persistent, concurrent download queue for Qobuz content. Use"
        " 'qobuz-queue <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "qobuz-queue"


def get_config_file() -> Path:
    return get_config_dir() / "config.ini"


def _cli_identity() -> str:
    return f"cli:{getpass.getuser()}"


def _load_config(cli_options: dict | None = None) -> QueueConfig:
    options = {k: v for k, v in (cli_options or {}).items() if v is not None}
    return ConfigManager(get_config_file()).load_config(options)


def _open_queue(
    config: QueueConfig,
) -> tuple[QueueEngine, QueueStore, PersistenceMirror]:
    """Builds an engine holding the persisted queue, mirrored back to disk."""
    store = QueueStore(Path(config.config_path))
    engine = QueueEngine(
        max_concurrent=config.max_concurrent, default_max_retries=config.max_retries
    )
    restore_engine(engine, store)
    mirror = PersistenceMirror(store, flush_interval=config.flush_interval)
    mirror.attach(engine)
    return engine, store, mirror


def _flush_or_fail(mirror: PersistenceMirror) -> None:
    if not mirror.flush():
        console.print("[red]✗ Could not save the queue to the database.[/red]")
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Qobuz Download Queue CLI"""
    if version:
        console.print(f"[bold]qobuz-queue[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("qobuz_queue").setLevel(log_level)

    if show_config:
        config_file = get_config_file()
        if not config_file.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]qobuz-queue init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        config_manager = ConfigManager(config_file)
        config_manager.load_config()
        print_config(config_file, config_manager._get_config_as_dict())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    quality: int | None = typer.Option(
        None,
        "-q",
        "--quality",
        help="Default quality. 1: MP3 320, 2: CD, 3: Hi-Res (24/96), 4: Hi-Res+.",
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous downloads."
    ),
    output_dir: str | None = typer.Option(
        None, "-o", "--output-dir", help="Directory downloaded files are saved to."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Write a configuration file with default settings."""
    config_file = get_config_file()
    if (
        config_file.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        key: value
        for key, value in {
            "quality": quality,
            "max_concurrent": workers,
            "output_dir": output_dir,
        }.items()
        if value is not None
    }
    try:
        config = QueueConfig(**settings, config_path=str(config_file.parent))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings:\n{e}") from e
    ConfigManager(config_file).save_new_config(
        {key: getattr(config, key) for key in settings}
    )
    console.print(f"[bold green]✓ Configuration saved to '{config_file}'[/bold green]")
    console.print("Ready to queue! Try: [cyan]qobuz-queue add <URL>[/cyan]")


def _read_references_from_stdin() -> list[str]:
    """Reads references from stdin, one per line."""
    if sys.stdin.isatty():
        console.print(
            "[yellow]⚠️  No input detected on stdin. Please pipe references or"
            " redirect a file.[/yellow]"
        )
        raise typer.Exit(code=1)

    try:
        references = read_references(sys.stdin)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Input interrupted.[/yellow]")
        raise typer.Exit(code=1) from None

    if not references:
        console.print("[yellow]⚠️  No valid references found in stdin.[/yellow]")
        raise typer.Exit(code=1)
    return references


@app.command()
def add(
    references: list[str] | None = typer.Argument(  # noqa: B008
        None, help="Qobuz URLs, `type:id` pairs, or bare IDs with --type."
    ),
    content_type: ContentType | None = typer.Option(
        None, "--type", "-t", help="Content type for bare IDs."
    ),
    quality: int | None = typer.Option(
        None, "-q", "--quality", help="Override the configured quality (1-4)."
    ),
    priority: JobPriority = typer.Option(
        JobPriority.NORMAL, "--priority", "-p", help="Dispatch priority."
    ),
    retries: int | None = typer.Option(
        None, "--retries", help="Maximum retries for these jobs."
    ),
    url: str | None = typer.Option(
        None, "--url", help="Direct asset URL for a single reference."
    ),
    stdin: bool = typer.Option(
        False, "--stdin", help="Read references from standard input, one per line."
    ),
):
    """Add items to the download queue."""
    refs = list(references or [])
    if stdin:
        refs.extend(_read_references_from_stdin())
    if not refs:
        console.print(
            "[red]✗ No references provided.[/red] "
            "Use: [cyan]qobuz-queue add <URL>[/cyan] or [cyan]--stdin[/cyan]"
        )
        raise typer.Exit(code=1)
    if url and len(refs) != 1:
        console.print("[red]✗ --url can only be used with a single reference.[/red]")
        raise typer.Exit(code=1)

    config = _load_config({"quality": quality, "max_retries": retries})
    engine, _, mirror = _open_queue(config)
    limiter = AdmissionLimiter(
        LimiterConfig(
            max_requests=config.rate_limit_requests,
            window=config.rate_limit_window,
            block_duration=config.rate_limit_block,
        )
    )
    submitter = JobSubmitter.from_config(engine, config, limiter)

    if url:
        parsed_type, content_id = parse_reference(refs[0], content_type)
        result = submitter.submit(
            _cli_identity(),
            parsed_type,
            content_id,
            priority=priority,
            metadata={"url": url, "source": "cli"},
            max_retries=retries,
        )
        result.reference = refs[0]
        results = [result]
    else:
        results = submitter.submit_many(
            _cli_identity(),
            refs,
            default_type=content_type,
            priority=priority,
            source="cli",
            max_retries=retries,
        )

    _flush_or_fail(mirror)
    print_submit_results(results)
    if not any(result.accepted for result in results):
        raise typer.Exit(code=1)


@app.command(name="list")
def list_command(
    status: JobStatus | None = typer.Option(
        None, "--status", "-s", help="Only show jobs with this status."
    ),
):
    """Show the jobs in the queue."""
    config = _load_config()
    store = QueueStore(Path(config.config_path))
    jobs = sorted(store.load_all(status), key=lambda job: job.sort_key())
    print_jobs_table(jobs)


@app.command()
def stats():
    """Show queue counts by status."""
    config = _load_config()
    store = QueueStore(Path(config.config_path))
    print_stats_table(
        QueueStats.from_jobs(store.load_all(), max_concurrent=config.max_concurrent)
    )


@app.command()
def cancel(job_id: str = typer.Argument(..., help="The job to cancel.")):
    """Cancel a job, even one that is downloading."""
    config = _load_config()
    engine, _, mirror = _open_queue(config)
    if not engine.cancel(job_id):
        console.print(f"[yellow]No unfinished job with ID '{job_id}'.[/yellow]")
        raise typer.Exit(code=1)
    _flush_or_fail(mirror)
    console.print(f"[green]✓ Cancelled {job_id}.[/green]")


@app.command()
def remove(job_id: str = typer.Argument(..., help="The job to remove.")):
    """Remove a job that is not downloading."""
    config = _load_config()
    engine, store, mirror = _open_queue(config)
    if engine.remove(job_id):
        _flush_or_fail(mirror)
    elif any(job.id == job_id for job in store.load_all(JobStatus.FAILED)):
        store.delete_many([job_id])
    else:
        console.print(f"[yellow]No removable job with ID '{job_id}'.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Removed {job_id}.[/green]")


@app.command()
def clear(
    completed: bool = typer.Option(
        False, "--completed", help="Remove finished and failed jobs."
    ),
    pending: bool = typer.Option(False, "--pending", help="Remove pending jobs."),
    everything: bool = typer.Option(
        False, "--all", help="Remove everything from the queue."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Remove jobs from the queue in bulk."""
    if not (completed or pending or everything):
        console.print(
            "[red]✗ Nothing to clear.[/red] Use [cyan]--completed[/cyan],"
            " [cyan]--pending[/cyan] or [cyan]--all[/cyan]."
        )
        raise typer.Exit(code=1)
    if everything and not force and not typer.confirm(
        "Are you sure you want to clear the entire queue?"
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    config = _load_config()
    engine, store, mirror = _open_queue(config)
    removed = 0
    if everything:
        removed = engine.clear() + len(store.load_all(JobStatus.FAILED))
        _flush_or_fail(mirror)
        store.clear()
    else:
        if pending:
            removed += engine.clear_pending()
        if completed:
            removed += engine.clear_completed()
            terminal = [job.id for job in store.load_all() if job.status.is_terminal]
            if terminal and store.delete_many(terminal):
                removed += len(terminal)
        _flush_or_fail(mirror)
    console.print(f"[green]✓ Removed {removed} jobs.[/green]")


@app.command()
def run(
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous downloads."
    ),
    output_dir: str | None = typer.Option(
        None, "-o", "--output-dir", help="Directory downloaded files are saved to."
    ),
    exit_when_empty: bool = typer.Option(
        False, "--exit-when-empty", help="Stop once no work is left."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", help="Disable the live progress display."
    ),
):
    """Process the queue until interrupted."""
    config = _load_config({"max_concurrent": workers, "output_dir": output_dir})

    async def _run_async():
        engine, _, mirror = _open_queue(config)
        executor = HttpFetchExecutor(
            Path(config.output_dir).expanduser(), config.max_concurrent
        )
        driver = QueueDriver.from_config(engine, executor, config)
        console.print(
            f"[bold cyan]🎵 Processing {engine.stats().pending} queued jobs with"
            f" {config.max_concurrent} workers...[/bold cyan]"
        )
        start_time = time.monotonic()
        await mirror.start()
        try:
            async with QueueProgressView(console, engine, quiet=quiet):
                await driver.run(exit_when_empty=exit_when_empty)
        finally:
            await executor.close()
            await mirror.stop()
        print_run_summary(engine.stats(), time.monotonic() - start_time)

    asyncio.run(_run_async())


@app.command()
def vacuum():
    """Optimize the queue database."""
    config = _load_config()
    console.print("[cyan]Optimizing queue database...[/cyan]")
    if QueueStore(Path(config.config_path)).vacuum():
        console.print("[green]✓ Database optimized.[/green]")
    else:
        console.print("[red]✗ Optimization failed.[/red]")
        raise typer.Exit(code=1)

