"""
Rich Live display for a running queue: session counters, overall progress
and one progress bar per in-flight job, fed by engine events.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.text import Text

from qobuz_queue.core.events import EventKind, QueueEvent
from qobuz_queue.core.queue_engine import QueueEngine
from qobuz_queue.models.config import get_quality_info
from qobuz_queue.models.job import Job
from qobuz_queue.utils.formatting import format_duration, truncate

log = logging.getLogger(__name__)


class QueueProgressView:
    """Observer of a `QueueEngine` that renders its activity live."""

    def __init__(self, console: Console, engine: QueueEngine, quiet: bool = False):
        self.console = console
        self.engine = engine
        self.quiet = quiet

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=24),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            TextColumn("{task.fields[status]}"),
            "•",
            TimeElapsedColumn(),
            console=console,
            transient=False,
        )
        self.overall_progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=console,
        )

        self._live: Live | None = None
        self._layout: Layout | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._overall_task_id: TaskID | None = None
        self._job_tasks: dict[str, TaskID] = {}
        self._stats = {
            "total": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "retried": 0,
            "peak_concurrent": 0,
            "start_time": None,
        }

    def get_statistics(self) -> dict:
        return self._stats.copy()

    # ---------------------------------------------------------------- events

    def on_event(self, event: QueueEvent) -> None:
        job = event.job
        if event.kind is EventKind.ADDED:
            self._stats["total"] += 1
        elif event.kind is EventKind.STARTED and job is not None:
            self._add_job_task(job)
        elif event.kind is EventKind.PROGRESS and job is not None:
            self._update_job_task(job)
        elif event.kind is EventKind.RETRYING and job is not None:
            self._stats["retried"] += 1
            self._remove_job_task(job.id)
            self._log(
                f"[yellow]↻ Retrying {job.display_name}: {job.error}[/yellow]"
            )
        elif event.kind is EventKind.COMPLETED and job is not None:
            self._stats["completed"] += 1
            self._remove_job_task(job.id)
            self._log(f"[green]✓ {job.display_name}[/green]")
        elif event.kind is EventKind.FAILED and job is not None:
            if event.is_cancellation:
                self._stats["cancelled"] += 1
                self._log(f"[dim]⊘ Cancelled {job.display_name}[/dim]")
            else:
                self._stats["failed"] += 1
                self._log(f"[red]✗ {job.display_name}: {event.error}[/red]")
            self._remove_job_task(job.id)
        elif event.kind is EventKind.REMOVED and job is not None:
            self._stats["total"] = max(0, self._stats["total"] - 1)
        self._update_overall()
        self._refresh()

    def _log(self, message: str) -> None:
        if self.quiet:
            return
        log.info(message)

    def _describe(self, job: Job) -> str:
        quality = get_quality_info(job.quality)
        color = quality["color"]
        return (
            f"{truncate(job.display_name, 48)} "
            f"[{color}]{quality['short']}[/{color}]"
        )

    def _add_job_task(self, job: Job) -> None:
        if self.quiet or job.id in self._job_tasks:
            return
        self._job_tasks[job.id] = self.progress.add_task(
            self._describe(job), total=100, completed=job.progress, status=job.status.value
        )
        self._stats["peak_concurrent"] = max(
            self._stats["peak_concurrent"], len(self._job_tasks)
        )

    def _update_job_task(self, job: Job) -> None:
        task_id = self._job_tasks.get(job.id)
        if task_id is None:
            return
        self.progress.update(
            task_id,
            completed=job.progress,
            description=self._describe(job),
            status=job.status.value,
        )

    def _remove_job_task(self, job_id: str) -> None:
        task_id = self._job_tasks.pop(job_id, None)
        if task_id is not None:
            self.progress.remove_task(task_id)

    def _update_overall(self) -> None:
        if self._overall_task_id is None:
            return
        done = self._stats["completed"] + self._stats["failed"] + self._stats["cancelled"]
        self.overall_progress.update(
            self._overall_task_id, total=max(self._stats["total"], 1), completed=done
        )

    # --------------------------------------------------------------- display

    def _build_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="stats", size=7),
            Layout(name="progress", ratio=1),
        )
        return layout

    def _header_panel(self) -> Panel:
        elapsed = 0.0
        if self._stats["start_time"]:
            elapsed = (datetime.now() - self._stats["start_time"]).total_seconds()
        banner = Text()
        banner.append("🎵 Qobuz Queue ", style="bold cyan")
        banner.append("│ ", style="dim")
        banner.append(f"Session: {format_duration(elapsed)}", style="yellow")
        if self.engine.is_paused:
            banner.append(" │ ", style="dim")
            banner.append("paused", style="bold yellow")
        return Panel(banner, border_style="cyan")

    def _stats_panel(self) -> Panel:
        counters = Table.grid(padding=(0, 2))
        counters.add_column(style="bold cyan", justify="right")
        counters.add_column(style="white")
        counters.add_column(style="bold cyan", justify="right")
        counters.add_column(style="white")
        counters.add_row(
            "Completed:",
            f"[green]{self._stats['completed']}[/green]",
            "Failed:",
            f"[red]{self._stats['failed']}[/red]",
        )
        counters.add_row(
            "In Flight:",
            f"[cyan]{self.engine.in_flight_count}/{self.engine.max_concurrent}[/cyan]",
            "Retries:",
            f"[yellow]{self._stats['retried']}[/yellow]",
        )
        combined = Table.grid()
        combined.add_row(counters)
        if self._overall_task_id is not None:
            combined.add_row(self.overall_progress)
        return Panel(
            combined, title="[bold]📊 This Session[/bold]", border_style="blue"
        )

    def _jobs_panel(self) -> Panel:
        if not self._job_tasks:
            return Panel(
                Text(
                    "No job in flight yet.",
                    style="dim italic",
                    justify="center",
                ),
                title="[bold]📥 Active Downloads[/bold]",
                border_style="green",
            )
        return Panel(
            self.progress,
            title=f"[bold]📥 Active Downloads ({len(self._job_tasks)})[/bold]",
            border_style="green",
        )

    def _refresh(self) -> None:
        if self.quiet or not self._layout:
            return
        self._layout["header"].update(self._header_panel())
        self._layout["stats"].update(self._stats_panel())
        self._layout["progress"].update(self._jobs_panel())

    async def __aenter__(self):
        self._stats["start_time"] = datetime.now()
        self._stats["total"] = self.engine.stats().total
        self._unsubscribe = self.engine.subscribe(self.on_event)
        if self.quiet:
            return self
        self._overall_task_id = self.overall_progress.add_task(
            "Queue", total=max(self._stats["total"], 1), start=True
        )
        self._layout = self._build_layout()
        self._refresh()
        self._live = Live(
            self._layout,
            console=self.console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._live:
            await asyncio.sleep(0.2)
            self._live.stop()
            self._live = None
