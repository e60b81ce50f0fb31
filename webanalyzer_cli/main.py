"""Web Page Analyzer CLI - Main Entry Point"""

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel

from .client.base import WebAnalyzerError
from .client.endpoints import AnalyzerClient
from .commands import config
from .utils.config_manager import config as config_manager
from .utils.formatting import (
    create_health_panel,
    create_job_panel,
    create_results_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()

app = typer.Typer(
    name="webanalyzer",
    help="🔎 Web Page Analyzer - submit URLs and inspect analysis results",
    rich_markup_mode="rich",
)

app.add_typer(config.app, name="config")


def _fail(error: WebAnalyzerError):
    print_error(str(error))
    if error.details:
        console.print(f"[dim]{error.details}[/dim]")
    raise typer.Exit(1)


def _show_job(job: dict):
    console.print(create_job_panel(job))
    if job.get("results"):
        console.print(create_results_table(job["results"]))


@app.command()
def analyse(
    url: str = typer.Argument(..., help="URL to analyse"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Poll until the job finishes"),
):
    """🚀 Submit a URL for analysis"""
    try:
        with AnalyzerClient() as client:
            submitted = client.analyse(url)
            job_id = submitted["job_id"]
            print_success(f"{submitted.get('message', 'Job queued')}: {job_id}")

            if not wait:
                print_info(f"Check progress with: webanalyzer results {job_id}")
                return

            with console.status("Waiting for analysis to finish..."):
                job = client.wait_for_results(
                    job_id,
                    interval_s=float(config_manager.get("poll.interval_seconds", 2)),
                    timeout_s=float(config_manager.get("poll.timeout_seconds", 120)),
                )
    except WebAnalyzerError as e:
        _fail(e)

    _show_job(job)
    if job.get("status") not in ("COMPLETED", "FAILED"):
        print_warning("Job still running; poll again later")
    elif job["status"] == "FAILED":
        raise typer.Exit(1)


@app.command()
def results(job_id: str = typer.Argument(..., help="19-digit job ID")):
    """📋 Show the status and results of a job"""
    try:
        with AnalyzerClient() as client:
            job = client.get_results(job_id)
    except WebAnalyzerError as e:
        _fail(e)

    _show_job(job)


@app.command()
def status():
    """📊 Check API readiness and queue depth"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with AnalyzerClient() as client:
            health = client.health_check()
    except WebAnalyzerError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]webanalyzer config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    console.print(create_health_panel(health, base_url))


@app.command()
def sweep():
    """🧹 Run one cleanup pass against the configured database"""
    from webanalyzer.config.logging import setup_logging
    from webanalyzer.config.settings import settings
    from webanalyzer.infra.database import Database
    from webanalyzer.jobs.queue import QueueAdapter
    from webanalyzer.jobs.store import JobStore
    from webanalyzer.jobs.sweeper import CleanupSweeper

    async def _run() -> dict:
        database = Database(settings)
        try:
            store = JobStore(settings, database)
            sweeper = CleanupSweeper(settings, store, QueueAdapter(settings, database))
            await sweeper.force_run()
            return sweeper.get_stats()
        finally:
            await database.close()

    setup_logging()
    stats = asyncio.run(_run())
    if stats.get("last_error"):
        print_error(f"Cleanup pass failed: {stats['last_error']}")
        raise typer.Exit(1)

    print_success(
        f"Cleanup pass completed: {stats['last_run_cleaned']} job(s) failed "
        f"in {stats['last_run_duration_ms']}ms"
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"🔎 [bold cyan]Web Page Analyzer CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
