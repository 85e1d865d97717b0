"""Configuration management CLI commands."""

import json

import typer

from msgvault.config import get_settings

config_app = typer.Typer(
    name="config",
    help="Configuration management - view settings and exclusion rules.",
    no_args_is_help=True,
)


@config_app.command()
def show(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show current configuration (the auth token is never printed)."""
    settings = get_settings()

    config_data = {
        "server_url": settings.server_url,
        "api_version": settings.api_version,
        "auth_token_set": bool(settings.auth_token),
        "device_id": settings.device_id,
        "inbox_kind": settings.inbox_kind,
        "inbox_path": str(settings.inbox_location),
        "batch_max_records": settings.batch_max_records,
        "batch_max_bytes": settings.batch_max_bytes,
        "max_in_flight": settings.max_in_flight,
        "max_attempts": settings.max_attempts,
        "request_timeout": settings.request_timeout,
        "cycle_interval": settings.cycle_interval,
        "exclusions_file": str(settings.exclusions_path),
        "data_dir": str(settings.data_path),
        "log_level": settings.log_level,
    }

    if output_json:
        typer.echo(json.dumps(config_data, indent=2))
    else:
        typer.echo("")
        typer.echo("msgvault Configuration")
        typer.echo("----------------------")
        typer.echo(f"Server URL: {settings.api_base_url}")
        typer.echo(f"Auth token: {'set' if settings.auth_token else 'not set'}")
        typer.echo(f"Device ID: {settings.device_id}")
        typer.echo(f"Inbox: {settings.inbox_kind} at {settings.inbox_location}")
        typer.echo(
            f"Batches: up to {settings.batch_max_records} messages / "
            f"{settings.batch_max_bytes} bytes, {settings.max_in_flight} in flight"
        )
        typer.echo(f"Retries: {settings.max_attempts} attempts, {settings.request_timeout}s timeout")
        typer.echo(f"Cycle interval: {settings.cycle_interval}s")
        typer.echo(f"Exclusions file: {settings.exclusions_path}")
        typer.echo(f"Data directory: {settings.data_path}")
        typer.echo(f"Log level: {settings.log_level}")
        typer.echo("")
        typer.echo("Set values using environment variables with MSGVAULT_ prefix")
        typer.echo("Example: MSGVAULT_BATCH_MAX_RECORDS=50")


@config_app.command(name="exclusions")
def list_exclusions(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """List sender exclusion rules."""
    settings = get_settings()
    exclusions = settings.load_exclusions()

    if output_json:
        typer.echo(json.dumps(exclusions, indent=2))
        return

    typer.echo("")
    typer.echo("Backup Exclusions")
    typer.echo("-----------------")
    typer.echo("")
    typer.echo("Excluded senders:")
    for sender in sorted(exclusions["senders"]) or ["(none)"]:
        typer.echo(f"  - {sender}")
    typer.echo("")
    typer.echo("Excluded body patterns:")
    for pattern in sorted(exclusions["body_patterns"]) or ["(none)"]:
        typer.echo(f"  - {pattern}")
    typer.echo("")
    typer.echo(f"Edit {settings.exclusions_path} to change these rules.")
