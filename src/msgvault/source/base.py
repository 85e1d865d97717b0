"""Inbox source interface."""

from abc import ABC, abstractmethod
from collections.abc import Iterator

from msgvault.models import RawMessage, SyncCheckpoint


class InboxSource(ABC):
    """Read-only, resumable view of the device inbox.

    Implementations yield messages lazily in ascending sequence id order,
    starting strictly after the checkpoint, without gaps between the
    checkpoint and the newest available message. Query failures raise
    SourceUnavailable and are not retried here.
    """

    name: str = "inbox"

    @abstractmethod
    def read_since(self, checkpoint: SyncCheckpoint) -> Iterator[RawMessage]:
        """Yield messages with sequence_id > checkpoint.sequence_id."""

    def close(self) -> None:
        """Release any resources held by the source."""
