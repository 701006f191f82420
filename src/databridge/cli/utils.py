"""
Utility functions for CLI commands.

Helpers for coloured messages, rich tables and progress bars.
"""

from typing import Any

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from databridge.migration.orchestrator import ExecutionStatus

console = Console()

_STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "running": "cyan",
    "pending": "white",
}


def echo_success(message: str) -> None:
    """Print success message in green."""
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    """Print error message in red."""
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_info(message: str) -> None:
    """Print info message in blue."""
    click.secho(f"ℹ {message}", fg="blue")


def format_duration(duration_ms: int | None) -> str:
    """
    Format a duration in milliseconds in human-readable form.

    Returns:
        Formatted duration string (e.g., "2m 15s"), "-" when unknown
    """
    if duration_ms is None:
        return "-"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remaining = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {remaining}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {remaining}s"


def print_execution(status: ExecutionStatus) -> None:
    """Print the stage table of an execution."""
    table = Table(title=f"Execution {status.execution_id} ({status.status}, {status.progress}%)")
    for column in ("#", "Stage", "Status", "Attempts", "Processed", "Failed", "Duration", "Error"):
        table.add_column(column)

    for stage in status.stages:
        style = _STATUS_STYLES.get(stage.status, "white")
        table.add_row(
            str(stage.stage_order),
            stage.stage_name,
            f"[{style}]{stage.status}[/{style}]",
            str(stage.attempts),
            f"{stage.records_processed:,}",
            f"{stage.records_failed:,}",
            format_duration(stage.duration_ms),
            stage.error or "",
        )
    console.print(table)


def print_stats(stats: dict[str, Any], title: str = "Summary") -> None:
    """Print a flat dictionary as a two-column table."""
    table = Table(title=title)
    table.add_column("Metric")
    table.add_column("Value")
    for key, value in stats.items():
        table.add_row(key.replace("_", " ").title(), str(value))
    console.print(table)


def create_progress_bar() -> Progress:
    """Create a progress bar with standard formatting."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    )
