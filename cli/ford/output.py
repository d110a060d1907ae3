"""Rich console output utilities for the Ford CLI."""

import json
import logging
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from schemas.pipeline_state import Checkpoint

console = Console()
error_console = Console(stderr=True)


STATUS_COLORS = {
    "generating": "cyan",
    "validating": "yellow",
    "pending_review": "blue",
    "approved": "green",
    "merged": "green",
    "rejected": "red",
    "halted": "red",
    "sent": "green",
    "failed": "red",
    "skipped": "dim",
}


def setup_logging(level: str = "INFO") -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=error_console, rich_tracebacks=True)],
        force=True,
    )


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]![/yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]→[/blue] {message}")


def print_json(data: Any) -> None:
    """Print formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def print_key_value(key: str, value: Any, key_style: str = "bold") -> None:
    """Print a key-value pair."""
    console.print(f"[{key_style}]{key}:[/{key_style}] {value}")


def colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def print_snapshot(checkpoint: Checkpoint) -> None:
    """Print queue, clusters and change requests from a checkpoint."""
    payload = checkpoint.payload
    mode = "[red]SAFE MODE[/red]" if payload.safe_mode else "[green]admitting[/green]"
    console.print(
        Panel(
            f"{mode}\n[dim]{payload.safe_mode_reason or ''}[/dim]",
            title="[bold cyan]Ford Status[/bold cyan]",
            subtitle=f"[dim]checkpoint #{checkpoint.sequence} at {checkpoint.timestamp:%Y-%m-%d %H:%M:%S}[/dim]",
            border_style="cyan",
        )
    )

    clusters = {c.id: c for c in payload.clusters}

    console.print("\n[bold]Queue[/bold]")
    if not payload.queue:
        print_info("Queue is empty.")
    else:
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Cluster", style="cyan")
        table.add_column("Severity", justify="right")
        table.add_column("Theme")
        for position, entry in enumerate(payload.queue, start=1):
            cluster = clusters.get(entry.cluster_id)
            table.add_row(
                str(position),
                entry.cluster_id[:12],
                f"{entry.severity:.1f}",
                cluster.common_theme if cluster else "-",
            )
        console.print(table)

    console.print("\n[bold]Clusters[/bold]")
    print_clusters(payload.clusters)

    console.print("\n[bold]Change requests[/bold]")
    if not payload.change_requests:
        print_info("No active change requests.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Awaiting")
    table.add_column("Issue", justify="right")
    table.add_column("PR", justify="right")
    table.add_column("Title")
    for cr in payload.change_requests:
        title = cr.issue_title[:40] + "..." if len(cr.issue_title) > 43 else cr.issue_title
        awaiting = f"{cr.awaiting.value} ({cr.resume_token[:8]})" if cr.awaiting and cr.resume_token else "-"
        table.add_row(
            cr.id[:12],
            colored(cr.status.value),
            awaiting,
            f"#{cr.issue_number}" if cr.issue_number else "-",
            f"#{cr.pr_number}" if cr.pr_number else "-",
            title,
        )
    console.print(table)


def print_clusters(clusters: list[Any]) -> None:
    if not clusters:
        print_info("No clusters.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Category")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Severity", justify="right")
    table.add_column("Theme")
    for c in sorted(clusters, key=lambda c: -c.average_severity):
        table.add_row(
            c.id[:12],
            c.category.value,
            c.status.value,
            str(c.size),
            f"{c.average_severity:.1f}",
            c.common_theme or "-",
        )
    console.print(table)


def print_checkpoints(checkpoints: list[Checkpoint]) -> None:
    """Print checkpoints as a table, oldest first."""
    if not checkpoints:
        print_info("No checkpoints found.")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Seq", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Timestamp")
    table.add_column("Queued", justify="right")
    table.add_column("CRs", justify="right")
    table.add_column("Reason")
    for cp in checkpoints:
        summary = cp.summary()
        table.add_row(
            str(summary["sequence"]),
            summary["id"][:12],
            summary["timestamp"][:19],
            str(summary["queued"]),
            str(summary["change_requests"]),
            summary["reason"],
        )
    console.print(table)


def print_ledger(entries: list[Any]) -> None:
    """Print notification ledger entries."""
    if not entries:
        print_info("Notification ledger is empty.")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Feedback", style="cyan")
    table.add_column("PR", justify="right")
    table.add_column("Status")
    table.add_column("Timestamp")
    table.add_column("Detail")
    for e in entries:
        table.add_row(
            e.feedback_id[:12],
            f"#{e.pr_number}",
            colored(e.status.value),
            e.timestamp.isoformat()[:19],
            e.detail or "",
        )
    console.print(table)


def print_alerts(alerts: list[dict[str, Any]]) -> None:
    if not alerts:
        return
    console.print("\n[bold]Recent alerts[/bold]")
    for alert in alerts:
        color = "red" if alert.get("level") == "critical" else "yellow"
        console.print(
            f"  [{color}]{alert.get('level', '?').upper()}[/{color}] "
            f"[dim]{alert.get('at', '')[:19]}[/dim] {alert.get('title', '')}"
        )
