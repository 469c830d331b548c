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
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
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


def format_status(status: str | None) -> str:
    style = STATUS_STYLES.get(status or "", "white")
    return f"[{style}]{status or '-'}[/{style}]"


def create_job_panel(job: dict[str, Any], show_payload: bool = False) -> Panel:
    """Create formatted panel for a single job status"""
    progress = job.get("progress")
    if isinstance(progress, dict):
        progress_str = json.dumps(progress)
    else:
        progress_str = f"{progress or 0}%"

    lines = [
        f"• Type: [magenta]{job.get('job_type', '-')}[/magenta]",
        f"• Queue: [cyan]{job.get('queue_name', '-')}[/cyan]",
        f"• Status: {format_status(job.get('status'))}",
        f"• Progress: [yellow]{progress_str}[/yellow]",
        f"• Attempts: {job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
        f"• Priority: {job.get('priority', '-')}",
        f"• Created: [dim]{job.get('created_on') or '-'}[/dim]",
        f"• Started: [dim]{job.get('processed_on') or '-'}[/dim]",
        f"• Finished: [dim]{job.get('finished_on') or '-'}[/dim]",
    ]
    if job.get("failed_reason"):
        lines.append(f"• Error: [red]{job['failed_reason']}[/red]")
    if job.get("result") is not None:
        lines.append(f"• Result: [green]{json.dumps(job['result'])}[/green]")
    if show_payload:
        lines.append(f"\n[bold]Payload[/bold]\n{json.dumps(job.get('data', {}), indent=2)}")

    return Panel(
        "\n".join(lines),
        title=f"Job {job.get('job_id', '')}",
        border_style=STATUS_STYLES.get(job.get("status", ""), "blue"),
    )


def create_history_table(events: list[dict[str, Any]]) -> Table:
    """Create formatted table for a job's lifecycle events"""
    table = Table(title="Job History", box=box.ROUNDED)

    table.add_column("#", justify="right", style="dim")
    table.add_column("Event", justify="left", style="bold")
    table.add_column("Timestamp", justify="left", style="cyan")
    table.add_column("Attempt", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Detail", justify="left", style="white")

    for index, event in enumerate(events, start=1):
        previous = event.get("previous_status")
        new = event.get("new_status")
        if previous and new:
            transition = f"{previous} → {new}"
        else:
            transition = new or "-"

        detail = event.get("error_message") or ""
        if not detail and event.get("progress") is not None:
            detail = f"progress {event['progress']}"

        table.add_row(
            str(index),
            event.get("event", ""),
            str(event.get("timestamp", "")),
            str(event.get("attempt") or "-"),
            transition,
            detail,
        )

    return table


def create_stats_table(queue_alias: str, stats: dict[str, Any]) -> Table:
    """Create formatted table for queue counts"""
    table = Table(title=f"Queue Stats: {queue_alias}", box=box.ROUNDED)

    table.add_column("Waiting", justify="right", style="yellow")
    table.add_column("Active", justify="right", style="cyan")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Delayed", justify="right", style="dim")

    table.add_row(
        str(stats.get("waiting", 0)),
        str(stats.get("active", 0)),
        str(stats.get("completed", 0)),
        str(stats.get("failed", 0)),
        str(stats.get("delayed", 0)),
    )
    return table


def create_errors_table(queue_alias: str, errors: list[dict[str, Any]]) -> Table:
    """Create formatted table for the most frequent job errors"""
    table = Table(title=f"Top Errors: {queue_alias}", box=box.ROUNDED)

    table.add_column("Count", justify="right", style="red")
    table.add_column("Job Type", justify="left", style="magenta")
    table.add_column("Error", justify="left")

    for item in errors:
        table.add_row(
            str(item.get("count", 0)),
            item.get("job_type") or "-",
            item.get("error") or "-",
        )
    return table


def create_health_table(queues: list[dict[str, Any]]) -> Table:
    """Create formatted table for per-queue health"""
    table = Table(title="Queue Health", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan", no_wrap=True)
    table.add_column("Healthy", justify="center")
    table.add_column("Consumers", justify="right")
    table.add_column("Rate/min", justify="right")
    table.add_column("Error rate", justify="right")
    table.add_column("Issues", justify="left", style="yellow")

    for queue in queues:
        metrics = queue.get("metrics", {})
        table.add_row(
            queue.get("queue_name", ""),
            "[green]yes[/green]" if queue.get("is_healthy") else "[red]no[/red]",
            str(queue.get("consumers") or 0),
            f"{metrics.get('processing_rate', 0):.2f}",
            f"{metrics.get('error_rate', 0):.1%}",
            ", ".join(queue.get("issues", [])) or "-",
        )

    return table


def create_processors_table(processors: list[dict[str, Any]]) -> Table:
    """Create formatted table for registered processors"""
    table = Table(title="Processors", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan")
    table.add_column("Job Type", justify="left", style="magenta")
    table.add_column("Concurrency", justify="right")
    table.add_column("Consumers", justify="right")
    table.add_column("State", justify="center")

    for processor in processors:
        table.add_row(
            processor.get("queue_name", ""),
            processor.get("job_type", ""),
            str(processor.get("concurrency", 0)),
            str(processor.get("active_consumers", 0)),
            "[yellow]paused[/yellow]" if processor.get("paused") else "[green]running[/green]",
        )

    return table
