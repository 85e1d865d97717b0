"""Structured JSON logging for the msgvault agent.

Provides audit-friendly logging with contextual fields for canonicalization,
transmission and checkpoint events. Message bodies and sender numbers are
never logged; records are identified by fingerprint and sequence id.

Usage:
    from msgvault.logging import setup_logging, get_logger

    setup_logging("INFO", device_id="pixel-7")
    log = get_logger("msgvault.sync")
    log.info("batch_sent", extra={"batch_size": 100})
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from msgvault import __version__

_device_id: str | None = None


class VaultJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds agent context to all log records."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        """Add standard fields to every log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        log_record["agent_version"] = __version__
        if _device_id:
            log_record["device_id"] = _device_id

        if "message" not in log_record and record.getMessage():
            log_record["message"] = record.getMessage()

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        """Format time as ISO 8601."""
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return dt.isoformat()


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    device_id: str | None = None,
    max_bytes: int = 10_000_000,  # 10MB
    backup_count: int = 5,
) -> None:
    """Configure root logger with JSON formatting.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for rotating file handler
        device_id: Identity of the device whose inbox is backed up
        max_bytes: Max size per log file for rotation
        backup_count: Number of backup files to keep
    """
    if device_id:
        set_device_id(device_id)

    formatter = VaultJsonFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # JSON to stderr for easy parsing
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


@lru_cache(maxsize=32)
def get_logger(name: str) -> logging.Logger:
    """Get a named logger.

    Args:
        name: Logger name (e.g., 'msgvault.sync', 'msgvault.state')

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def set_device_id(device_id: str) -> None:
    """Set the device identifier for log context."""
    global _device_id
    _device_id = device_id


def source_logger() -> logging.Logger:
    """Get logger for inbox reads and canonicalization."""
    return get_logger("msgvault.source")


def sync_logger() -> logging.Logger:
    """Get logger for batching and transmission."""
    return get_logger("msgvault.sync")


def state_logger() -> logging.Logger:
    """Get logger for sync state changes."""
    return get_logger("msgvault.state")


# --- Audit Event Functions ---


def log_record_malformed(
    logger: logging.Logger,
    sequence_id: int,
    field: str,
) -> None:
    """Log a record skipped because a required field is missing.

    Args:
        logger: Logger instance
        sequence_id: Device-local sequence id of the message
        field: Name of the missing or invalid field
    """
    logger.warning(
        "Malformed record skipped",
        extra={
            "event": "record_malformed",
            "sequence_id": sequence_id,
            "field": field,
        },
    )


def log_record_excluded(
    logger: logging.Logger,
    sequence_id: int,
    pattern: str,
) -> None:
    """Log a record left out by a sender exclusion rule."""
    logger.debug(
        "Record excluded",
        extra={
            "event": "record_excluded",
            "sequence_id": sequence_id,
            "pattern": pattern,
        },
    )


def log_batch_acknowledged(
    logger: logging.Logger,
    idempotency_key: str,
    accepted: int,
    rejected: int,
    attempts: int,
) -> None:
    """Log a batch the server acknowledged.

    Args:
        logger: Logger instance
        idempotency_key: Key of the batch
        accepted: Number of fingerprints durably stored
        rejected: Number of fingerprints refused by the server
        attempts: Send attempts it took
    """
    logger.info(
        "Batch acknowledged",
        extra={
            "event": "batch_acknowledged",
            "idempotency_key": idempotency_key,
            "accepted": accepted,
            "rejected": rejected,
            "attempts": attempts,
        },
    )


def log_batch_failed(
    logger: logging.Logger,
    idempotency_key: str,
    state: str,
    error: str,
    attempts: int,
) -> None:
    """Log a batch that ended rejected or with retries exhausted.

    Args:
        logger: Logger instance
        idempotency_key: Key of the batch
        state: Terminal batch state (rejected, failed)
        error: Error message (sanitized - no message content)
        attempts: Send attempts made
    """
    logger.warning(
        "Batch not acknowledged",
        extra={
            "event": "batch_failed",
            "idempotency_key": idempotency_key,
            "state": state,
            "error": error,
            "attempts": attempts,
        },
    )


def log_checkpoint_advanced(
    logger: logging.Logger,
    old_checkpoint: int,
    new_checkpoint: int,
) -> None:
    """Log a checkpoint advance."""
    logger.info(
        "Checkpoint advanced",
        extra={
            "event": "checkpoint_advanced",
            "old_checkpoint": old_checkpoint,
            "new_checkpoint": new_checkpoint,
        },
    )


def log_cycle_finished(
    logger: logging.Logger,
    report: dict,
) -> None:
    """Log the summary of a sync cycle.

    Args:
        logger: Logger instance
        report: CycleReport.to_dict() output
    """
    level = logging.INFO if report.get("outcome") == "completed" else logging.WARNING
    logger.log(level, "Sync cycle finished", extra={"event": "cycle_finished", **report})
