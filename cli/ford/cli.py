"""Ford CLI.

Operator interface to a running (or stopped) orchestrator. Read commands
inspect the durable state directory; decision commands drop signals into
the inbox, which the orchestrator consumes on its next tick.
"""

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from cli.ford.output import (
    console,
    print_alerts,
    print_checkpoints,
    print_error,
    print_info,
    print_json,
    print_ledger,
    print_snapshot,
    print_success,
    print_warning,
    setup_logging,
)

app = typer.Typer(
    name="ford",
    help="Ford - feedback to fix orchestration",
    no_args_is_help=True,
)

# Config sub-app
config_app = typer.Typer(
    name="config",
    help="Manage configuration settings.",
)
app.add_typer(config_app, name="config")


def _state_dir() -> Path:
    from pipeline.config import get_config
    from tools.errors import ConfigError

    try:
        config = get_config()
    except ConfigError as e:
        print_error(f"Invalid configuration: {e}")
        raise typer.Exit(1)
    setup_logging(config.log_level)
    return config.state_path()


def _submit(signal) -> None:
    from orchestrator.signals import SignalInbox

    path = SignalInbox(_state_dir()).submit(signal)
    print_success(f"Signal {signal.kind.value} for {signal.target_id[:12]} queued")
    print_info(f"Inbox file: {path}")


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print the raw checkpoint payload"),
) -> None:
    """Show queue, clusters, change requests and alerts from the latest checkpoint."""
    from orchestrator.alerts import AdminAlerts
    from orchestrator.checkpoints import CheckpointStore
    from orchestrator.signals import SignalInbox

    state_dir = _state_dir()
    checkpoint = CheckpointStore(state_dir).latest()
    if checkpoint is None:
        print_warning(f"No checkpoints in {state_dir}")
        raise typer.Exit(1)

    if as_json:
        print_json(checkpoint.model_dump(mode="json"))
        return

    print_snapshot(checkpoint)
    pending = SignalInbox(state_dir).pending()
    if pending:
        print_info(f"{len(pending)} signal(s) waiting in the inbox")
    print_alerts(AdminAlerts(state_dir).load(limit=5))


@app.command()
def checkpoints(
    prune: bool = typer.Option(False, "--prune", help="Delete checkpoints beyond the retention count"),
    keep: Optional[int] = typer.Option(None, "--keep", help="Override the retention count"),
) -> None:
    """List checkpoints (oldest first)."""
    from orchestrator.checkpoints import CheckpointStore
    from pipeline.config import get_config

    store = CheckpointStore(_state_dir(), retention=get_config().storage.checkpoint_retention)
    if prune:
        removed = store.prune(keep)
        print_success(f"Pruned {removed} checkpoint(s)")
    print_checkpoints(store.list_checkpoints())


@app.command()
def ledger(
    feedback_id: Optional[str] = typer.Option(None, "--feedback", help="Filter by feedback item"),
    pr_number: Optional[int] = typer.Option(None, "--pr", help="Filter by PR number"),
) -> None:
    """Show the notification ledger."""
    from orchestrator.notifications import NotificationLedger

    print_ledger(NotificationLedger(_state_dir()).entries(feedback_id, pr_number))


@app.command("approve-cluster")
def approve_cluster(
    cluster_id: str = typer.Argument(..., help="Cluster to approve"),
    scope: Optional[list[str]] = typer.Option(
        None,
        "--scope",
        "-s",
        help="Directory the fix may touch (repeatable)",
    ),
    actor: str = typer.Option("user", "--actor", help="Who is deciding"),
) -> None:
    """Approve a cluster for implementation."""
    from orchestrator.signals import Signal, SignalKind

    _submit(Signal(kind=SignalKind.CLUSTER_DECISION, target_id=cluster_id, actor=actor, scope=scope or []))


@app.command("reject-cluster")
def reject_cluster(
    cluster_id: str = typer.Argument(..., help="Cluster to reject"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    actor: str = typer.Option("user", "--actor"),
) -> None:
    """Reject a cluster."""
    from orchestrator.signals import ApprovalResult, Signal, SignalKind

    _submit(
        Signal(
            kind=SignalKind.CLUSTER_DECISION,
            target_id=cluster_id,
            result=ApprovalResult.REJECTED,
            actor=actor,
            notes=notes,
        )
    )


@app.command()
def approve(
    cr_id: str = typer.Argument(..., help="Change request awaiting review"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Resumption token"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    actor: str = typer.Option("user", "--actor"),
) -> None:
    """Approve a change request's pull request."""
    from orchestrator.signals import Signal, SignalKind

    _submit(Signal(kind=SignalKind.REVIEW, target_id=cr_id, token=token, actor=actor, notes=notes))


@app.command()
def reject(
    cr_id: str = typer.Argument(..., help="Change request awaiting review"),
    token: Optional[str] = typer.Option(None, "--token", "-t"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    actor: str = typer.Option("user", "--actor"),
) -> None:
    """Reject a change request's pull request."""
    from orchestrator.signals import ApprovalResult, Signal, SignalKind

    _submit(
        Signal(
            kind=SignalKind.REVIEW,
            target_id=cr_id,
            result=ApprovalResult.REJECTED,
            token=token,
            actor=actor,
            notes=notes,
        )
    )


@app.command("approve-deletion")
def approve_deletion(
    cr_id: str = typer.Argument(..., help="Change request awaiting deletion approval"),
    deny: bool = typer.Option(False, "--deny", help="Reject the deletions (halts the change request)"),
    token: Optional[str] = typer.Option(None, "--token", "-t"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    actor: str = typer.Option("user", "--actor"),
) -> None:
    """Approve (or deny) a change that deletes more lines than allowed."""
    from orchestrator.signals import ApprovalResult, Signal, SignalKind

    _submit(
        Signal(
            kind=SignalKind.DELETION_APPROVAL,
            target_id=cr_id,
            result=ApprovalResult.REJECTED if deny else ApprovalResult.APPROVED,
            token=token,
            actor=actor,
            notes=notes,
        )
    )


@app.command()
def cancel(
    cr_id: str = typer.Argument(..., help="Change request to cancel"),
    reason: str = typer.Option("cancelled by operator", "--reason", "-r"),
    actor: str = typer.Option("user", "--actor"),
) -> None:
    """Cancel a change request at any non-terminal state."""
    from orchestrator.signals import Signal, SignalKind

    _submit(Signal(kind=SignalKind.CANCEL, target_id=cr_id, actor=actor, notes=reason))


@config_app.command("show")
def config_show(
    section: Optional[str] = typer.Argument(
        None,
        help="Config section to show (gateway, policy, scheduler, etc.)",
    ),
) -> None:
    """Show current configuration.

    Examples:
        ford config show            # Show all config
        ford config show scheduler  # Show one section
    """
    from pipeline.config import find_config_file, get_config
    from tools.errors import ConfigError

    config_path = find_config_file()
    if config_path:
        print_info(f"Config file: {config_path}")
    else:
        print_warning("No ford.toml found (using defaults)")

    try:
        config = get_config()
    except ConfigError as e:
        print_error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    data = config.to_dict()
    sections = {k: v for k, v in data.items() if isinstance(v, dict)}

    if section:
        section_lower = section.lower()
        if section_lower not in sections:
            print_error(f"Unknown section: {section}")
            print_info(f"Available: {', '.join(sections)}")
            raise typer.Exit(1)
        sections = {section_lower: sections[section_lower]}
    else:
        print_info(f"log_level = {config.log_level}")

    for name, values in sections.items():
        console.print(f"\n[bold][{name}][/bold]")
        table = Table(show_header=False)
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in values.items():
            value_str = str(value)
            if len(value_str) > 60:
                value_str = value_str[:57] + "..."
            table.add_row(key, value_str)
        console.print(table)


@config_app.command("init")
def config_init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing ford.toml",
    ),
) -> None:
    """Create a default ford.toml file."""
    from pipeline.config import CONFIG_FILENAME, DEFAULT_CONFIG_TOML

    config_path = Path.cwd() / CONFIG_FILENAME

    if config_path.exists() and not force:
        print_warning(f"Config file already exists: {config_path}")
        print_info("Use --force to overwrite")
        raise typer.Exit(1)

    config_path.write_text(DEFAULT_CONFIG_TOML)
    print_success(f"Created config file: {config_path}")


@app.command()
def version() -> None:
    """Show Ford version."""
    from cli.ford import __version__

    console.print(f"Ford v{__version__}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
