"""Data model for the message backup pipeline."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import cached_property
from typing import Any


class RecordStatus(Enum):
    """Delivery status of a fingerprint in the sync state store."""

    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"


class BatchState(Enum):
    """State of a batch in the transmit state machine."""

    FORMED = "formed"
    PENDING_SEND = "pending_send"
    RETRYING = "retrying"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    FAILED = "failed"  # retries exhausted, records stay pending

    @property
    def is_terminal(self) -> bool:
        return self in (BatchState.ACKNOWLEDGED, BatchState.REJECTED, BatchState.FAILED)


@dataclass(frozen=True)
class RawMessage:
    """A message as read from the device inbox.

    Fields mirror the Android SMS provider columns. Anything may be missing;
    the canonicalizer decides what is usable.
    """

    sequence_id: int
    sender: str | None
    timestamp: int | None  # epoch milliseconds
    body: str | None
    message_type: int = 1  # 1 inbox, 2 sent
    read: int = 0
    status: int = 0
    thread_id: int | None = None


@dataclass(frozen=True)
class CanonicalRecord:
    """A normalized, fingerprinted message ready for transmission."""

    fingerprint: str
    sender: str
    timestamp: int
    body: str
    sequence_id: int
    message_type: int = 1
    thread_id: int | None = None

    def to_wire(self) -> dict[str, Any]:
        """Render the record as sent to the backup service."""
        return {
            "fingerprint": self.fingerprint,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "body": self.body,
            "sequence_id": self.sequence_id,
            "message_type": self.message_type,
            "thread_id": self.thread_id,
        }

    @cached_property
    def wire_size(self) -> int:
        """Size in bytes of the UTF-8 JSON wire form."""
        return len(json.dumps(self.to_wire(), ensure_ascii=False).encode("utf-8"))


@dataclass(frozen=True, order=True)
class SyncCheckpoint:
    """Highest sequence id fully committed to the remote service."""

    sequence_id: int = 0
    updated_at: datetime | None = field(default=None, compare=False)


@dataclass(frozen=True)
class DeliveryBatch:
    """An ordered group of records submitted in one transmission attempt."""

    records: tuple[CanonicalRecord, ...]

    def __post_init__(self) -> None:
        if not self.records:
            raise ValueError("DeliveryBatch requires at least one record")

    def __len__(self) -> int:
        return len(self.records)

    @property
    def fingerprints(self) -> tuple[str, ...]:
        return tuple(r.fingerprint for r in self.records)

    @property
    def first_sequence_id(self) -> int:
        return self.records[0].sequence_id

    @property
    def last_sequence_id(self) -> int:
        return self.records[-1].sequence_id

    @property
    def byte_size(self) -> int:
        return sum(r.wire_size for r in self.records)

    @cached_property
    def idempotency_key(self) -> str:
        """Stable key derived from the ordered fingerprints.

        Identical across retries, so the server can recognise a resend.
        """
        digest = hashlib.sha256("\n".join(self.fingerprints).encode("utf-8"))
        return digest.hexdigest()


@dataclass(frozen=True)
class AckReceipt:
    """What the server durably stored for a batch."""

    idempotency_key: str
    accepted: frozenset[str] = frozenset()
    rejected: dict[str, str] = field(default_factory=dict)  # fingerprint -> reason


@dataclass
class TransmitResult:
    """Outcome of sending one batch, after any retries."""

    state: BatchState
    receipt: AckReceipt | None = None
    error: str | None = None
    status_code: int | None = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.state == BatchState.ACKNOWLEDGED


class CycleOutcome(Enum):
    """Overall result of one sync cycle."""

    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class CycleReport:
    """Summary of one sync cycle, returned by the pipeline."""

    outcome: CycleOutcome = CycleOutcome.COMPLETED
    reason: str | None = None
    checkpoint_before: int = 0
    checkpoint_after: int = 0
    read: int = 0
    malformed: int = 0
    excluded: int = 0
    duplicates: int = 0
    batches: int = 0
    transmitted: int = 0
    acknowledged: int = 0
    rejected: int = 0
    failed: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "checkpoint_before": self.checkpoint_before,
            "checkpoint_after": self.checkpoint_after,
            "read": self.read,
            "malformed": self.malformed,
            "excluded": self.excluded,
            "duplicates": self.duplicates,
            "batches": self.batches,
            "transmitted": self.transmitted,
            "acknowledged": self.acknowledged,
            "rejected": self.rejected,
            "failed": self.failed,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
