"""
Functions for formatting and displaying queue data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from qobuz_queue.core.submitter import SubmitResult, SubmitStatus
from qobuz_queue.models.config import get_quality_info
from qobuz_queue.models.job import Job, JobStatus
from qobuz_queue.models.stats import QueueStats
from qobuz_queue.utils.formatting import format_age, format_duration, truncate

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.DOWNLOADING: "cyan",
    JobStatus.PROCESSING: "blue",
    JobStatus.UPLOADING: "magenta",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}

SUBMIT_STYLES = {
    SubmitStatus.QUEUED: "[green]✓ queued[/green]",
    SubmitStatus.DUPLICATE: "[yellow]○ already queued[/yellow]",
    SubmitStatus.RATE_LIMITED: "[red]✗ rate limited[/red]",
    SubmitStatus.INVALID: "[red]✗ invalid[/red]",
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file (--show-config).",
            "• Run `qobuz-queue init --force` to recreate it with defaults.",
        ],
        "InvalidReferenceError": [
            "• Use a Qobuz URL such as https://play.qobuz.com/album/<id>.",
            "• Or a `type:id` pair, e.g. `track:12345678`.",
        ],
        "CircuitBreakerError": [
            "• Too many downloads failed in a row; the queue is cooling down.",
            "• Check your internet connection.",
            "• Reduce `--workers` if you are being rate-limited.",
        ],
        "OperationalError": [
            "• The queue database may be locked by another running process.",
            "• Run `qobuz-queue vacuum` once no other instance is running.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration."""
    console = Console()
    content = "\n".join(f"{key} = {value}" for key, value in sorted(config_data.items()))
    console.print(
        Panel(
            content or "[dim](defaults)[/dim]",
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def _status_cell(job: Job) -> str:
    style = STATUS_STYLES.get(job.status, "white")
    label = job.status.value
    if job.status.is_active:
        label = f"{label} {job.progress}%"
    return f"[{style}]{label}[/{style}]"


def print_jobs_table(jobs: list[Job], title: str = "Download Queue"):
    """Displays jobs, one per row."""
    console = Console()
    if not jobs:
        console.print("[dim]The queue is empty.[/dim]")
        return

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Type")
    table.add_column("Item", style="cyan")
    table.add_column("Quality")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Added")

    for job in jobs:
        quality = get_quality_info(job.quality)
        item = truncate(job.display_name, 48)
        if job.error and job.status is not JobStatus.COMPLETED:
            item += f"\n[red]{truncate(job.error, 48)}[/red]"
        table.add_row(
            job.id,
            job.content_type.value,
            item,
            f"[{quality['color']}]{quality['short']}[/{quality['color']}]",
            job.priority.value,
            _status_cell(job),
            f"{job.retry_count}/{job.max_retries}",
            format_age(job.added_at),
        )
    console.print(table)


def print_stats_table(stats: QueueStats):
    """Displays queue counts by status."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()

    table.add_row("Total:", str(stats.total))
    for status in JobStatus:
        count = getattr(stats, status.value)
        if count:
            style = STATUS_STYLES[status]
            table.add_row(f"{status.value.title()}:", f"[{style}]{count}[/{style}]")
    if stats.max_concurrent:
        table.add_row("In Flight:", f"{stats.in_flight}/{stats.max_concurrent}")
    if stats.paused:
        table.add_row("Scheduler:", "[yellow]paused[/yellow]")

    console.print(Panel(table, title="[bold]📊 Queue Statistics[/bold]", expand=False))


def print_submit_results(results: list[SubmitResult]):
    """Displays the outcome of each submitted reference."""
    console = Console()
    table = Table(box=box.SIMPLE)
    table.add_column("Reference", style="cyan")
    table.add_column("Result")
    table.add_column("Details", style="dim")

    for result in results:
        if result.accepted and result.job is not None:
            details = f"{result.job.id} (position {result.position})"
        elif result.status is SubmitStatus.RATE_LIMITED:
            details = f"retry in {format_duration(result.retry_after)}"
        else:
            details = result.error or ""
        table.add_row(result.reference or "-", SUBMIT_STYLES[result.status], details)
    console.print(table)


def print_run_summary(stats: QueueStats, duration_s: float):
    """Displays a summary after the driver loop exits."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right", width=16)
    table.add_column()
    table.add_row("✓ Completed:", f"[bold green]{stats.completed}[/bold green]")
    if stats.failed:
        table.add_row("✗ Failed:", f"[bold red]{stats.failed}[/bold red]")
    if stats.pending:
        table.add_row("○ Pending:", f"[yellow]{stats.pending}[/yellow]")
    table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    console.print()
    console.print(
        Panel(
            table,
            title="🎵 [bold]Queue Run Finished[/bold]",
            border_style="green" if not stats.failed else "yellow",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
