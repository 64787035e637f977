"""
Rich Terminal Display Components.

Provides console UI for:
- Export summary reports
- Token status tables
- Status messages
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table


console = Console()

ACTION_STYLES = {
    "append": "[green]append[/green]",
    "create": "[cyan]create[/cyan]",
    "delete+create": "[yellow]delete+create[/yellow]",
}


def print_summary(stats: dict[str, Any]) -> None:
    """Print a summary table after an export run."""
    title = "Export Summary (dry-run)" if stats.get("dry_run") else "Export Summary"
    table = Table(title=title, border_style="green")

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Duration", f"{stats.get('duration', 0):.1f}s")
    table.add_row("Full Resync", "yes" if stats.get("full_resync") else "no")
    table.add_row(
        "Time-Series",
        f"{stats.get('exported_time_series_count', 0)}/{stats.get('changed_time_series_count', 0)}",
    )
    table.add_row("Points Exported", f"{stats.get('exported_point_count', 0):,}")
    table.add_row("Points Trimmed", f"{stats.get('trimmed_point_count', 0):,}")
    table.add_row("Points Filtered", f"{stats.get('filtered_point_count', 0):,}")
    table.add_row("Fetch Requests", f"{stats.get('fetch_requests', 0):,}")
    table.add_row("Next Token", stats.get("next_token") or "N/A")
    table.add_row("Token Saved", "yes" if stats.get("token_saved") else "no")

    console.print(table)


def print_actions(actions: dict[str, str]) -> None:
    """Print the reconcile action taken for each time-series."""
    if not actions:
        return

    table = Table(title="Time-Series", border_style="blue")
    table.add_column("Identifier")
    table.add_column("Action")

    for identifier, action in actions.items():
        table.add_row(identifier, ACTION_STYLES.get(action, action))

    console.print(table)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
