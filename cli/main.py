"""ERP Job Gateway CLI - Main Entry Point"""

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel

from .client.base import GatewayAPIError, GatewayClient
from .utils.formatting import create_job_table, create_result_panel, print_error, print_info

console = Console()

# Create main Typer app
app = typer.Typer(
    name="erp-gateway",
    help="ERP Job Gateway CLI",
    rich_markup_mode="rich",
)

BaseUrlOption = typer.Option(
    "http://localhost:8080", "--base-url", envvar="ERP_GATEWAY_URL", help="Gateway base URL"
)
ApiKeyOption = typer.Option(
    None, "--api-key", envvar="ERP_GATEWAY_API_KEY", help="Value for the X-API-Key header"
)


@app.command()
def worker():
    """Run the queue worker until interrupted"""
    from erp_gateway.config.logging import setup_logging
    from erp_gateway.config.settings import settings
    from erp_gateway.infra.runtime import run_worker

    setup_logging()
    print_info(
        f"Starting worker on queue [cyan]{settings.queue_name}[/cyan] "
        f"({settings.queue_backend.value})"
    )
    try:
        asyncio.run(run_worker(settings))
    except KeyboardInterrupt:
        print_info("Worker stopped")


@app.command()
def job(
    job_id: str = typer.Argument(..., help="Job id returned at enqueue time"),
    base_url: str = BaseUrlOption,
    api_key: str | None = ApiKeyOption,
):
    """Show a job's status and result"""
    try:
        with GatewayClient(base_url, api_key=api_key) as client:
            data = client.get_job(job_id)
    except GatewayAPIError as e:
        print_error(str(e))
        raise typer.Exit(1) from None

    console.print(create_job_table(data))
    if data.get("result") is not None:
        console.print(create_result_panel(data["result"]))


@app.command()
def status(base_url: str = BaseUrlOption, api_key: str | None = ApiKeyOption):
    """Check gateway status and store connectivity"""
    print_info(f"Checking connection to: {base_url}")

    try:
        with GatewayClient(base_url, api_key=api_key) as client:
            health = client.health_check()
    except GatewayAPIError as e:
        print_error(f"Failed to connect: {e}")
        raise typer.Exit(1) from None

    store = health.get("store") or {}
    healthy = bool(health.get("ok"))
    console.print(
        Panel(
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Queue backend: [magenta]{health.get('queue_backend', 'unknown')}[/magenta]\n"
            f"• Store: {'[green]connected[/green]' if store.get('connected') else '[red]unavailable[/red]'}",
            title="Gateway Status",
            border_style="green" if healthy else "red",
        )
    )
    if not healthy:
        raise typer.Exit(1)


@app.command()
def version():
    """Show version information"""
    from . import __version__

    console.print(
        Panel(
            f"[bold cyan]ERP Job Gateway CLI[/bold cyan]\n\n• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
