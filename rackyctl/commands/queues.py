"""Queue Commands - stats, health and consumer control"""

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from ..client.endpoints import RackyAPIError, RackyClient
from ..utils.config_manager import config
from ..utils.formatting import (
    create_errors_table,
    create_health_table,
    create_processors_table,
    create_stats_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="queues", help="Queue stats, health and consumer control")


@app.command("stats")
def queue_stats(queue_alias: str = typer.Argument(..., help="Queue alias")):
    """📊 Show job counts for a queue"""
    base_url = config.get("api.base_url")

    try:
        with RackyClient(base_url) as client:
            stats = client.get_queue_stats(queue_alias)
    except RackyAPIError as e:
        print_error(f"Failed to get queue stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_table(queue_alias, stats))


@app.command("health")
def queue_health(
    queue_alias: str = typer.Argument(..., help="Queue alias"),
    record: bool = typer.Option(
        False, "--record", "-r", help="Persist a health snapshot"
    ),
):
    """🩺 Show health of the queues behind an alias"""
    base_url = config.get("api.base_url")

    try:
        with RackyClient(base_url) as client:
            health = client.get_queue_health(queue_alias, record=record)
    except RackyAPIError as e:
        print_error(f"Failed to get queue health: {e}")
        raise typer.Exit(1) from None

    console.print(create_health_table(health.get("queues", [])))
    if record:
        print_info("Snapshot recorded")

    if health.get("healthy"):
        print_success(f"{queue_alias} is healthy")
    else:
        print_warning(f"{queue_alias} has issues")
        raise typer.Exit(1)


@app.command("errors")
def queue_errors(
    queue_alias: str = typer.Argument(..., help="Queue alias"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of error groups"),
):
    """🧯 Show the most frequent job failures for a queue"""
    base_url = config.get("api.base_url")

    try:
        with RackyClient(base_url) as client:
            data = client.get_queue_errors(queue_alias, limit=limit)
    except RackyAPIError as e:
        print_error(f"Failed to get queue errors: {e}")
        raise typer.Exit(1) from None

    errors = data.get("errors", [])
    if not errors:
        print_success(
            f"No failed jobs on {queue_alias} in the last {data.get('window_minutes')} minutes"
        )
        return

    console.print(create_errors_table(queue_alias, errors))


@app.command("pause")
def pause_queue(
    queue_alias: str = typer.Argument(..., help="Queue alias"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """⏸️ Stop new deliveries to the API process's consumers"""
    if not yes and not Confirm.ask(f"Pause consumers for {queue_alias}?"):
        console.print("Pause cancelled.")
        return

    base_url = config.get("api.base_url")

    try:
        with RackyClient(base_url) as client:
            result = client.pause_queue(queue_alias)
    except RackyAPIError as e:
        print_error(f"Failed to pause queue: {e}")
        raise typer.Exit(1) from None

    print_success(
        f"Paused {queue_alias} ({result.get('consumers_cancelled', 0)} consumers cancelled)"
    )


@app.command("resume")
def resume_queue(queue_alias: str = typer.Argument(..., help="Queue alias")):
    """▶️ Resume paused processors of a queue"""
    base_url = config.get("api.base_url")

    try:
        with RackyClient(base_url) as client:
            result = client.resume_queue(queue_alias)
    except RackyAPIError as e:
        print_error(f"Failed to resume queue: {e}")
        raise typer.Exit(1) from None

    resumed = result.get("processors_resumed", 0)
    if resumed:
        print_success(f"Resumed {resumed} processors on {queue_alias}")
    else:
        print_info(f"No paused processors on {queue_alias}")


@app.command("processors")
def list_processors():
    """🧩 List processors registered in the API process"""
    base_url = config.get("api.base_url")

    try:
        with RackyClient(base_url) as client:
            data = client.list_processors()
    except RackyAPIError as e:
        print_error(f"Failed to list processors: {e}")
        raise typer.Exit(1) from None

    processors = data.get("processors", [])
    if not processors:
        console.print(
            Panel(
                "No processors are registered in this process.\n"
                "Workers run in [cyan]racky-worker[/cyan] and report there.",
                title="Processors",
                border_style="yellow",
            )
        )
    else:
        console.print(create_processors_table(processors))

    broker = data.get("broker", {})
    state = "[green]connected[/green]" if broker.get("connected") else "[red]disconnected[/red]"
    console.print(f"Broker: {state}")
