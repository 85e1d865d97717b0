"""msgvault - device agent that backs up SMS messages to a remote vault."""

__version__ = "0.1.0"
