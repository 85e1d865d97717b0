"""Shared fixtures: in-memory inbox, fake backup service, state stores."""

import json
import sqlite3
from collections.abc import Iterator
from pathlib import Path

import httpx
import pytest

from msgvault.canonical import Canonicalizer
from msgvault.engine import SyncPipeline
from msgvault.errors import SourceUnavailable
from msgvault.models import CanonicalRecord, DeliveryBatch, RawMessage, SyncCheckpoint
from msgvault.source import InboxSource
from msgvault.sync import BackoffPolicy, SyncStateStore, Transmitter

DEVICE_ID = "test-device"
API_BASE = "https://vault.test/v1"
BASE_TIMESTAMP = 1_700_000_000_000


def make_raw(sequence_id: int, **overrides) -> RawMessage:
    """A well-formed message whose content is unique per sequence id."""
    fields = {
        "sequence_id": sequence_id,
        "sender": "+1 555 0100",
        "timestamp": BASE_TIMESTAMP + sequence_id * 1000,
        "body": f"message {sequence_id}",
    }
    fields.update(overrides)
    return RawMessage(**fields)


class ListInbox(InboxSource):
    """Inbox backed by a list, with switchable failures."""

    name = "memory"

    def __init__(self, messages: list[RawMessage] | None = None) -> None:
        self.messages = list(messages or [])
        self.unavailable = False
        self.fail_after: int | None = None
        self.reads: list[int] = []

    def read_since(self, checkpoint: SyncCheckpoint) -> Iterator[RawMessage]:
        self.reads.append(checkpoint.sequence_id)
        if self.unavailable:
            raise SourceUnavailable("inbox permission revoked")
        return self._iter(checkpoint)

    def _iter(self, checkpoint: SyncCheckpoint) -> Iterator[RawMessage]:
        yielded = 0
        for message in sorted(self.messages, key=lambda m: m.sequence_id):
            if message.sequence_id <= checkpoint.sequence_id:
                continue
            if self.fail_after is not None and yielded >= self.fail_after:
                raise SourceUnavailable("inbox query failed mid-read")
            yielded += 1
            yield message


class FakeBackupServer:
    """Backup service double that deduplicates by fingerprint."""

    def __init__(self) -> None:
        self.stored: dict[str, dict] = {}
        self.requests: list[dict] = []
        self.headers: list[httpx.Headers] = []
        self.timeout_sequences: set[int] = set()
        self.reject_fingerprints: dict[str, str] = {}
        self.drop_fingerprints: set[str] = set()
        self.status_code: int | None = None
        self.lose_acks = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)

        if self.status_code is not None:
            return httpx.Response(self.status_code, text="refused")

        sequence_ids = {r["sequence_id"] for r in body["records"]}
        if sequence_ids & self.timeout_sequences:
            raise httpx.ReadTimeout("read timed out", request=request)

        accepted, rejected = [], []
        for record in body["records"]:
            fingerprint = record["fingerprint"]
            if fingerprint in self.reject_fingerprints:
                rejected.append(
                    {"fingerprint": fingerprint, "reason": self.reject_fingerprints[fingerprint]}
                )
            elif fingerprint in self.drop_fingerprints:
                continue
            else:
                self.stored.setdefault(fingerprint, record)
                accepted.append(fingerprint)
        if self.lose_acks:
            # Stored, but the response never reaches the device
            raise httpx.ReadTimeout("connection dropped", request=request)
        return httpx.Response(200, json={"accepted": accepted, "rejected": rejected})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def sent_sequence_ids(self) -> list[int]:
        return [r["sequence_id"] for body in self.requests for r in body["records"]]

    def stored_sequence_ids(self) -> set[int]:
        return {r["sequence_id"] for r in self.stored.values()}


@pytest.fixture
def raw_message():
    return make_raw


@pytest.fixture
def make_records():
    """Canonical records for the given sequence ids."""
    canonicalizer = Canonicalizer()

    def _make(*sequence_ids: int) -> list[CanonicalRecord]:
        return [canonicalizer.parse(make_raw(i)) for i in sequence_ids]

    return _make


@pytest.fixture
def make_batch(make_records):
    def _make(*sequence_ids: int) -> DeliveryBatch:
        return DeliveryBatch(records=tuple(make_records(*sequence_ids)))

    return _make


@pytest.fixture
def inbox() -> ListInbox:
    return ListInbox([make_raw(i) for i in range(1, 6)])


@pytest.fixture
def server() -> FakeBackupServer:
    return FakeBackupServer()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / f"state-{DEVICE_ID}.db"


@pytest.fixture
def store(state_path: Path) -> Iterator[SyncStateStore]:
    s = SyncStateStore(state_path, DEVICE_ID)
    yield s
    s.close()


@pytest.fixture
def open_store(state_path: Path):
    """Opens the shared state file again, as a restarted process would."""

    def _open(device_id: str = DEVICE_ID) -> SyncStateStore:
        return SyncStateStore(state_path, device_id)

    return _open


@pytest.fixture
def fast_policy() -> BackoffPolicy:
    return BackoffPolicy(max_attempts=2, initial_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def make_transmitter(server: FakeBackupServer, fast_policy: BackoffPolicy):
    def _make(**kwargs) -> Transmitter:
        kwargs.setdefault("policy", fast_policy)
        kwargs.setdefault("transport", server.transport())
        return Transmitter(API_BASE, DEVICE_ID, **kwargs)

    return _make


@pytest.fixture
def make_pipeline(inbox: ListInbox, state_path: Path, make_transmitter):
    """Builds pipelines sharing one inbox, server and state file.

    Each call opens a fresh store handle, as a restarted process would.
    """

    def _make(**kwargs) -> SyncPipeline:
        kwargs.setdefault("batch_max_records", 3)
        return SyncPipeline(
            source=kwargs.pop("source", inbox),
            store=kwargs.pop("store", None) or SyncStateStore(state_path, DEVICE_ID),
            transmitter=kwargs.pop("transmitter", None) or make_transmitter(),
            **kwargs,
        )

    return _make


def build_android_db(path: Path, rows: list[tuple]) -> Path:
    """Create a minimal Android telephony database with an sms table."""
    conn = sqlite3.connect(str(path))
    conn.execute("""
        CREATE TABLE sms (
            _id INTEGER PRIMARY KEY,
            thread_id INTEGER,
            address TEXT,
            date INTEGER,
            read INTEGER DEFAULT 0,
            status INTEGER DEFAULT -1,
            type INTEGER,
            body TEXT
        )
    """)
    conn.executemany(
        "INSERT INTO sms (_id, thread_id, address, date, read, status, type, body) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        rows,
    )
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def android_db(tmp_path: Path) -> Path:
    rows = [
        (i, 7, "+1 (555) 010-0200", BASE_TIMESTAMP + i, 1, -1, 1, f"sms body {i}")
        for i in (1, 2, 3, 5, 8)
    ]
    return build_android_db(tmp_path / "mmssms.db", rows)
