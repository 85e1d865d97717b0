"""msgvault configuration settings using pydantic-settings."""

import logging
import socket
from functools import cached_property
from pathlib import Path

import yaml
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the msgvault backup agent.

    Settings are loaded from environment variables with the MSGVAULT_ prefix.
    For example, MSGVAULT_BATCH_MAX_RECORDS=50 sets batch_max_records to 50.
    """

    model_config = SettingsConfigDict(
        env_prefix="MSGVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )

    # Server settings
    server_url: str = "https://api.messagevault.example.com"
    api_version: str = "v1"
    auth_token: str | None = None
    request_timeout: float = 30.0  # seconds per network attempt

    # Device identity; defaults to the host name
    device_id: str = ""

    # Inbox source
    inbox_kind: str = "android_db"  # android_db | json_export
    inbox_path: Path = Path("~/.local/share/msgvault/mmssms.db")

    # Batching and transmission
    batch_max_records: int = 100
    batch_max_bytes: int = 256 * 1024
    max_in_flight: int = 2
    max_attempts: int = 5
    initial_backoff: float = 1.0  # seconds
    max_backoff: float = 60.0  # seconds

    # Scheduling
    cycle_interval: int = 24 * 60 * 60  # seconds between scheduled cycles

    # File paths
    exclusions_file: Path = Path("~/.config/msgvault/exclusions.yaml")
    data_dir: Path = Path("~/.local/share/msgvault")

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    @field_validator("device_id")
    @classmethod
    def default_device_id(cls, v: str) -> str:
        """Fall back to the host name when no device id is configured."""
        v = v.strip()
        return v or socket.gethostname()

    @field_validator("inbox_kind")
    @classmethod
    def validate_inbox_kind(cls, v: str) -> str:
        """Ensure the inbox source kind is known."""
        valid_kinds = {"android_db", "json_export"}
        if v not in valid_kinds:
            raise ValueError(f"inbox_kind must be one of {valid_kinds}")
        return v

    @field_validator("batch_max_records", "batch_max_bytes", "max_in_flight", "max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure batching and retry limits are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("initial_backoff", "max_backoff")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        """Ensure backoff delays are not negative."""
        if v < 0:
            raise ValueError("backoff delays cannot be negative")
        return v

    @field_validator("request_timeout")
    @classmethod
    def validate_request_timeout(cls, v: float) -> float:
        """Ensure the per-attempt timeout is positive."""
        if v <= 0:
            raise ValueError("request_timeout must be positive")
        return v

    @field_validator("cycle_interval")
    @classmethod
    def validate_cycle_interval(cls, v: int) -> int:
        """Ensure cycle interval is at least a minute."""
        if v < 60:
            raise ValueError("cycle_interval must be at least 60 seconds")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @cached_property
    def exclusions_path(self) -> Path:
        """Return expanded exclusions file path."""
        return self.exclusions_file.expanduser()

    @cached_property
    def data_path(self) -> Path:
        """Return expanded data directory path."""
        return self.data_dir.expanduser()

    @cached_property
    def inbox_location(self) -> Path:
        """Return expanded inbox path."""
        return self.inbox_path.expanduser()

    @property
    def state_db_path(self) -> Path:
        """Sync state database for this device."""
        return self.data_path / f"state-{self.device_id}.db"

    @property
    def lock_path(self) -> Path:
        """Run-lock file for this device."""
        return self.data_path / f"cycle-{self.device_id}.lock"

    @property
    def api_base_url(self) -> str:
        """Server URL including the API version segment."""
        return f"{self.server_url.rstrip('/')}/{self.api_version.strip('/')}"

    @property
    def health_url(self) -> str:
        """Unversioned health endpoint of the backup service."""
        return f"{self.server_url.rstrip('/')}/health"

    def load_exclusions(self) -> dict[str, list[str]]:
        """Load sender exclusion rules from YAML file.

        Returns a dictionary with:
        - senders: sender substrings whose messages are never backed up
        - body_patterns: body substrings whose messages are never backed up

        If the file doesn't exist or can't be parsed, nothing is excluded.
        """
        empty: dict[str, list[str]] = {"senders": [], "body_patterns": []}

        if not self.exclusions_path.exists():
            return empty

        try:
            with open(self.exclusions_path, encoding="utf-8") as f:
                user_exclusions = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logging.warning(f"Failed to load exclusions from {self.exclusions_path}: {e}")
            return empty

        if not isinstance(user_exclusions, dict):
            logging.warning(f"Ignoring exclusions file {self.exclusions_path}: not a mapping")
            return empty

        return {
            "senders": [str(s) for s in user_exclusions.get("senders") or []],
            "body_patterns": [str(p) for p in user_exclusions.get("body_patterns") or []],
        }
