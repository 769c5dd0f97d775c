"""
Rich-based terminal dashboard for a live speed test.

Number formatting lives in ``engine.stats``; this module only does
presentation via the ``rich`` library.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from rich.console import Console
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

from engine.progress import ProgressUpdate, Stage
from engine.stats import format_latency, format_speed

console = Console()

_STAGE_LABELS = {
    Stage.LATENCY: "Latency",
    Stage.DOWNLOAD: "Download",
    Stage.UPLOAD: "Upload",
}


# ---------------------------------------------------------------------------
# Histogram helper
# ---------------------------------------------------------------------------

_BARS = "▁▂▃▄▅▆▇█"


def create_histogram(values: List[float]) -> str:
    """Return a single-line Unicode bar chart, one bar per value."""
    if not values:
        return "No data"

    lo, hi = min(values), max(values)
    span = hi - lo if hi > lo else 1.0
    top = len(_BARS) - 1
    return "".join(_BARS[min(int((v - lo) / span * top), top)] for v in values)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------

def print_header(server_url: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Speedtest[/bold cyan]\n"
            f"[dim]{server_url}[/dim]",
            border_style="cyan",
        )
    )
    console.print()


def print_server_info(health) -> None:  # noqa: ANN001 (ServerHealth)
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="bold")
    table.add_row("Status:", health.status)
    table.add_row("Version:", health.version)
    table.add_row("Uptime:", f"{health.uptime_s:.0f} s")
    table.add_row("Active tests:", str(health.active_sessions))
    console.print(Panel(table, title="[bold]Server[/bold]", border_style="blue"))


def print_final_results(summary, samples: Optional[Dict[Stage, List[float]]] = None) -> None:  # noqa: ANN001
    """Print the headline numbers and, when available, a speed histogram per stage."""
    console.print()
    console.print(
        Panel.fit(
            f"[bold white]   Ping:[/bold white]  [bold yellow]{format_latency(summary.ping_ms)}[/bold yellow]\n"
            f"[bold white]   Download:[/bold white]  [bold green]{format_speed(summary.download_mbps)}[/bold green]\n"
            f"[bold white]   Upload:[/bold white]  [bold blue]{format_speed(summary.upload_mbps)}[/bold blue]\n\n"
            f"[dim]{summary.message}[/dim]",
            title="[bold]Results[/bold]",
            border_style="cyan",
        )
    )

    for stage, color in ((Stage.DOWNLOAD, "green"), (Stage.UPLOAD, "blue")):
        values = (samples or {}).get(stage) or []
        if values:
            console.print(
                Panel(
                    f"[{color}]{create_histogram(values)}[/{color}]\n"
                    f"[dim]Min: {min(values):.1f} Mbps  Max: {max(values):.1f} Mbps[/dim]",
                    title=f"{_STAGE_LABELS[stage]} Over Time",
                )
            )
    console.print()


def print_rejection(reason: str, retry_after: float) -> None:
    console.print(
        f"[yellow]Server refused the test: {reason}. "
        f"Try again in {retry_after:.0f} s.[/yellow]"
    )


def print_failure(reason: str) -> None:
    console.print(f"\n[red]Test failed: {reason}[/red]")


# ---------------------------------------------------------------------------
# Progress display
# ---------------------------------------------------------------------------

class ProgressDisplay:
    """One ``rich`` progress bar per stage, driven by stream updates."""

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description:<8}"),
            BarColumn(bar_width=40),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[bold cyan]{task.fields[value]}[/bold cyan]"),
            TimeElapsedColumn(),
            console=console,
        )
        self._tasks: Dict[Stage, TaskID] = {}
        self.samples: Dict[Stage, List[float]] = {}

    def start(self) -> None:
        self.progress.start()

    def update(self, update: ProgressUpdate) -> None:
        if update.stage is Stage.COMPLETE:
            return
        task_id = self._tasks.get(update.stage)
        if task_id is None:
            task_id = self.progress.add_task(_STAGE_LABELS[update.stage], total=100, value="")
            self._tasks[update.stage] = task_id

        if update.stage is Stage.LATENCY:
            value = format_latency(update.rate_or_latency) if update.rate_or_latency > 0 else "..."
        else:
            value = format_speed(update.rate_or_latency) if update.rate_or_latency > 0 else "..."
            if 0.0 < update.progress < 1.0:
                self.samples.setdefault(update.stage, []).append(update.rate_or_latency)
        self.progress.update(task_id, completed=update.progress * 100, value=value)

    def stop(self) -> None:
        self.progress.stop()
