"""Status command for msgvault CLI."""

import json
from datetime import datetime

import typer

from msgvault.config import get_settings
from msgvault.engine import RunLock
from msgvault.errors import StateStoreCorruption
from msgvault.sync import SyncStateStore


def _format_time_ago(timestamp: datetime | None) -> str:
    """Format a timestamp as 'X minutes ago' style string."""
    if timestamp is None:
        return "Never"

    now = datetime.utcnow()
    diff = now - timestamp

    seconds = int(diff.total_seconds())
    if seconds < 60:
        return f"{seconds} seconds ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


def status_command(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show backup status.

    Displays the committed checkpoint, record counts by delivery status,
    and whether a cycle is running right now.
    """
    settings = get_settings()
    running_pid = RunLock(settings.lock_path).holder()

    if not settings.state_db_path.exists():
        stats = {"pending": 0, "acknowledged": 0, "rejected": 0, "total": 0, "checkpoint": 0}
        last_commit = None
    else:
        try:
            with SyncStateStore(settings.state_db_path, settings.device_id) as store:
                stats = store.get_stats()
                last_commit = store.current_checkpoint().updated_at
        except StateStoreCorruption as e:
            if output_json:
                typer.echo(json.dumps({"status": "corrupted", "message": str(e)}))
            else:
                typer.echo(f"Sync state is corrupted: {e}")
            raise typer.Exit(2)

    status_data = {
        "device_id": settings.device_id,
        "cycle_running": running_pid is not None,
        "pid": running_pid,
        "checkpoint": stats["checkpoint"],
        "last_commit": last_commit.isoformat() if last_commit else None,
        "acknowledged": stats["acknowledged"],
        "pending": stats["pending"],
        "rejected": stats["rejected"],
    }

    if output_json:
        typer.echo(json.dumps(status_data))
    else:
        typer.echo("")
        typer.echo("msgvault Backup Status")
        typer.echo("----------------------")
        typer.echo(f"Device: {settings.device_id}")
        if running_pid:
            typer.echo(f"State: Cycle running (PID: {running_pid})")
        else:
            typer.echo("State: Idle")
        typer.echo(f"Checkpoint: message #{stats['checkpoint']}")
        typer.echo(f"Last commit: {_format_time_ago(last_commit)}")
        typer.echo(f"Backed up: {stats['acknowledged']} messages")
        typer.echo(f"Pending: {stats['pending']} messages")
        if stats["rejected"] > 0:
            typer.echo(f"Rejected: {stats['rejected']} messages (quarantined)")
        typer.echo("")
