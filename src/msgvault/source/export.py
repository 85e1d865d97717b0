"""Reader for JSON backup files written by the Message Vault mobile app."""

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from msgvault.errors import SourceUnavailable
from msgvault.logging import source_logger
from msgvault.models import RawMessage, SyncCheckpoint
from msgvault.source.base import InboxSource

logger = source_logger()


class JsonExportSource(InboxSource):
    """Reads messages from a local JSON backup file.

    Expected layout (snake_case, as the app serializes it):

        {"messages": [{"id": 1, "address": "+15550100", "body": "hi",
                       "date": 1700000000000, "type": 1, "read_state": 1,
                       "message_status": 0, "thread_id": 3}, ...]}

    Entries without a usable integer id cannot be placed in sequence and
    are dropped here; everything else is handed to the canonicalizer as-is.
    """

    name = "json_export"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> list[dict[str, Any]]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SourceUnavailable(f"Cannot read inbox export {self.path}: {e}") from e

        messages = data.get("messages") if isinstance(data, dict) else None
        if messages is None:
            return []
        if not isinstance(messages, list):
            raise SourceUnavailable(f"Inbox export {self.path} has no message list")
        usable = [m for m in messages if isinstance(m, dict) and isinstance(m.get("id"), int)]
        if len(usable) < len(messages):
            logger.warning(
                "Dropped export entries without an id: path=%s, count=%d",
                self.path, len(messages) - len(usable),
            )
        return usable

    def read_since(self, checkpoint: SyncCheckpoint) -> Iterator[RawMessage]:
        entries = sorted(self._load(), key=lambda m: m["id"])
        for entry in entries:
            if entry["id"] <= checkpoint.sequence_id:
                continue
            yield RawMessage(
                sequence_id=entry["id"],
                sender=entry.get("address"),
                timestamp=entry.get("date"),
                body=entry.get("body"),
                message_type=entry.get("type") or 1,
                read=entry.get("read_state") or 0,
                status=entry.get("message_status") or 0,
                thread_id=entry.get("thread_id"),
            )
