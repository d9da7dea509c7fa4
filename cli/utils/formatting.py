"""Rich Formatting Utilities for CLI Output"""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "queued": "yellow",
    "processing": "blue",
    "succeeded": "green",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_job_table(job: dict[str, Any]) -> Table:
    """Create a formatted table for one job's status"""
    status = job.get("status", "")
    table = Table(title=f"Job {job.get('jobId', '')}", box=box.ROUNDED, show_header=False)

    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    table.add_row("Type", job.get("type", ""))
    table.add_row("Status", f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]")
    table.add_row("Vendor", job.get("vendorId", ""))
    table.add_row("Attempts", str(job.get("attempts", 0)))
    table.add_row("Created", job.get("createdAt", "-"))
    table.add_row("Updated", job.get("updatedAt", "-"))
    if job.get("errorCode"):
        table.add_row("Error code", f"[red]{job['errorCode']}[/red]")
    if job.get("error"):
        table.add_row("Error", job["error"])

    return table


def create_result_panel(result: Any) -> Panel:
    """Render a job result as pretty JSON"""
    return Panel(
        json.dumps(result, indent=2, default=str),
        title="Result",
        border_style="green",
    )
