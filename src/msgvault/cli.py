"""msgvault CLI - Command-line interface for the backup agent."""

import typer

from msgvault import __version__
from msgvault.cli_commands.config import config_app
from msgvault.cli_commands.status import status_command
from msgvault.cli_commands.sync import sync_app

app = typer.Typer(
    name="msgvault",
    help="msgvault - Back up device SMS messages to a remote vault.",
    no_args_is_help=True,
)

# Register subcommands
app.add_typer(sync_app, name="sync")
app.add_typer(config_app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"msgvault {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """msgvault - Back up device SMS messages to a remote vault."""
    pass


# Register status as a direct command on the main app
app.command(name="status")(status_command)


if __name__ == "__main__":
    app()
