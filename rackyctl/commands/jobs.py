"""Job Commands - inspect and submit jobs"""

import json

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import RackyAPIError, RackyClient
from ..utils.config_manager import config
from ..utils.formatting import (
    create_history_table,
    create_job_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="jobs", help="Inspect and submit jobs")


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    payload: bool = typer.Option(
        False, "--payload", "-p", help="Include the job payload"
    ),
):
    """🔎 Show the status of a job"""
    base_url = config.get("api.base_url")
    show_payload = payload or bool(config.get("display.show_payload", False))

    try:
        with RackyClient(base_url) as client:
            job = client.get_job(job_id)
    except RackyAPIError as e:
        if e.status_code == 404:
            print_warning(f"Job {job_id} not found")
        else:
            print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job, show_payload=show_payload))


@app.command("history")
def job_history(job_id: str = typer.Argument(..., help="Job ID")):
    """📜 Show the lifecycle events of a job"""
    base_url = config.get("api.base_url")

    try:
        with RackyClient(base_url) as client:
            history = client.get_job_history(job_id)
    except RackyAPIError as e:
        print_error(f"Failed to get job history: {e}")
        raise typer.Exit(1) from None

    events = history.get("events", [])
    console.print(create_history_table(events))
    print_info(f"{len(events)} events")


@app.command("submit")
def submit_job(
    queue_alias: str = typer.Argument(..., help="Queue alias (e.g. marketplace-sync)"),
    job_type: str = typer.Argument(..., help="Job type (e.g. marketplace-sync)"),
    data: str = typer.Option(
        ..., "--data", "-d", help="JSON payload, must include userId and workspaceId"
    ),
    priority: str | None = typer.Option(
        None, "--priority", help="LOW, NORMAL, HIGH or CRITICAL"
    ),
    delay: int | None = typer.Option(None, "--delay", help="Delay in milliseconds"),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", help="Override the default attempt limit"
    ),
):
    """📤 Submit a job to a queue"""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON payload: {e}")
        raise typer.Exit(1) from None

    if not isinstance(payload, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    job_type = job_type.lower().replace("_", "-")
    base_url = config.get("api.base_url")
    final_priority = (priority or config.get("defaults.priority", "NORMAL")).upper()

    try:
        with RackyClient(base_url) as client:
            handle = client.submit_job(
                queue_alias,
                job_type,
                payload,
                priority=final_priority,
                delay=delay,
                max_attempts=max_attempts,
            )
    except RackyAPIError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None

    if handle.get("placeholder"):
        console.print(
            Panel(
                f"[yellow]{handle.get('_message', 'Broker unavailable')}[/yellow]\n\n"
                f"Placeholder ID: [dim]{handle.get('job_id')}[/dim]\n"
                "The job was not persisted and will not run.",
                title="Job Not Enqueued",
                border_style="yellow",
            )
        )
        raise typer.Exit(2)

    print_success(f"Job {handle.get('job_id')} queued")
    console.print(
        f"• Queue: [cyan]{handle.get('queue_name')}[/cyan]\n"
        f"• Routing key: [dim]{handle.get('routing_key')}[/dim]\n"
        f"• Priority: {handle.get('priority')}"
    )
