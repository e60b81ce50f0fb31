"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "PENDING": "yellow",
    "PROCESSING": "cyan",
    "COMPLETED": "green",
    "FAILED": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Summary panel for a job status response"""
    status = job.get("status", "UNKNOWN")
    lines = [
        f"• Job ID: [cyan]{job.get('job_id', 'N/A')}[/cyan]",
        f"• URL: [blue]{job.get('url', 'N/A')}[/blue]",
        f"• Status: {format_status(status)}",
    ]
    if job.get("error"):
        lines.append(f"• Error: [red]{job['error']}[/red]")

    return Panel(
        "\n".join(lines),
        title="Analysis Job",
        border_style=STATUS_STYLES.get(status, "blue"),
    )


def create_results_table(results: dict[str, Any]) -> Table:
    """Table of extracted page metadata"""
    table = Table(title="Page Analysis", box=box.ROUNDED)

    table.add_column("Property", justify="left", style="cyan", no_wrap=True)
    table.add_column("Value", justify="left", style="white")

    table.add_row("HTML version", str(results.get("html_version", "N/A")))
    table.add_row("Title", str(results.get("page_title", "N/A")))

    headings = results.get("headings_count", {})
    table.add_row(
        "Headings",
        "  ".join(f"{level}: {headings.get(level, 0)}" for level in sorted(headings)) or "N/A",
    )
    table.add_row("Internal links", str(results.get("internal_links_count", 0)))
    table.add_row("External links", str(results.get("external_links_count", 0)))
    table.add_row("Login form", "yes" if results.get("has_login_form") else "no")

    return table


def create_health_panel(health: dict[str, Any], base_url: str) -> Panel:
    """Panel for the readiness endpoint response"""
    storage = health.get("storage", {})
    queue = health.get("queue", {})
    counts = queue.get("counts", {})
    ok = health.get("ok", False)

    storage_line = (
        f"[green]connected[/green] ({storage.get('response_time_ms', '?')}ms)"
        if storage.get("connected")
        else f"[red]down[/red] ({storage.get('error', 'unknown error')})"
    )
    queue_line = (
        ", ".join(f"{state}: {count}" for state, count in counts.items())
        if queue.get("connected")
        else f"[red]unavailable[/red] ({queue.get('error', 'unknown error')})"
    )

    return Panel(
        f"{'🚀 [green]Ready[/green]' if ok else '🚫 [red]Not ready[/red]'}\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Storage: {storage_line}\n"
        f"• Queue: {queue_line}\n"
        f"• API URL: [blue]{base_url}[/blue]",
        title="System Status",
        border_style="green" if ok else "red",
    )
