"""CLI command modules for the msgvault agent."""

from msgvault.cli_commands.config import config_app
from msgvault.cli_commands.status import status_command
from msgvault.cli_commands.sync import sync_app

__all__ = ["config_app", "status_command", "sync_app"]
