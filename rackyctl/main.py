"""rackyctl - Main Entry Point"""

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import RackyAPIError, RackyClient
from .commands import config, jobs, queues
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info, print_warning

console = Console()

app = typer.Typer(
    name="rackyctl",
    help="🐇 Racky job queue admin CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(queues.app, name="queues")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API, database and broker status"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with RackyClient(base_url) as client:
            health = client.health_check()
    except RackyAPIError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                "🚫 [red]Connection Failed[/red]\n\n"
                "Make sure the Racky Jobs API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                "You can update the API URL with:\n"
                "[cyan]rackyctl config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    database = health.get("database", {})
    broker = health.get("broker", {})
    db_state = "[green]connected[/green]" if database.get("connected") else "[red]down[/red]"
    broker_state = "[green]connected[/green]" if broker.get("connected") else "[red]disconnected[/red]"

    lines = [
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]",
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]",
        f"• Database: {db_state}",
        f"• Broker: {broker_state}",
        f"• Reconnect attempts: {broker.get('reconnect_attempts', 0)}",
        f"• Consumers: {broker.get('consumers', 0)}",
    ]
    if broker.get("fatal_error"):
        lines.append(f"• Fatal: [red]{broker['fatal_error']}[/red]")

    ok = bool(health.get("ok"))
    console.print(
        Panel(
            "\n".join(lines),
            title="System Status",
            border_style="green" if ok else "red",
        )
    )

    if not ok:
        print_warning("System is degraded")
        raise typer.Exit(1)


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"🐇 [bold cyan]rackyctl[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.command()
def quickstart():
    """🚀 Quick start guide"""
    console.print(
        Panel(
            "[bold]1. Check Status[/bold]\n"
            "   [dim]rackyctl status[/dim]\n\n"
            "[bold]2. Submit a Job[/bold]\n"
            "   [dim]rackyctl jobs submit marketplace-sync marketplace-sync "
            "-d '{\"userId\": \"u1\", \"workspaceId\": \"w1\"}'[/dim]\n\n"
            "[bold]3. Follow It[/bold]\n"
            "   [dim]rackyctl jobs show <job-id>[/dim]\n"
            "   [dim]rackyctl jobs history <job-id>[/dim]\n\n"
            "[bold]4. Watch the Queue[/bold]\n"
            "   [dim]rackyctl queues stats marketplace-sync[/dim]\n"
            "   [dim]rackyctl queues health marketplace-sync[/dim]\n\n"
            "[bold yellow]Tip:[/bold yellow] Use [cyan]--help[/cyan] with any command for more options!",
            title="Quick Start Guide",
            border_style="green",
        )
    )


def _version_callback(value: bool):
    if value:
        from . import __version__

        console.print(f"rackyctl v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """
    🐇 rackyctl - inspect and operate the Racky job queue

    Submit jobs, follow their status and history, and check queue health
    through the Racky Jobs admin API.
    """


if __name__ == "__main__":
    app()
