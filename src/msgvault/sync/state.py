"""SQLite-backed sync state: per-fingerprint delivery status and checkpoint."""

import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from msgvault.errors import StateStoreCorruption
from msgvault.logging import state_logger
from msgvault.models import AckReceipt, DeliveryBatch, RecordStatus, SyncCheckpoint

logger = state_logger()

SCHEMA_VERSION = "1"


class SyncStateStore:
    """Durable record of what has been sent and what the server has kept.

    One SQLite file per device holds the fingerprint -> status mapping and
    the checkpoint. Every mutation that touches both runs in a single
    transaction, so after a crash either all of it is visible or none is.
    The store is single-writer: the pipeline's run-lock guarantees only one
    cycle writes at a time.
    """

    def __init__(self, db_path: Path, device_id: str) -> None:
        """Open (or create on first run) the state store.

        Args:
            db_path: Path to the SQLite database file
            device_id: Identity of the device whose inbox this state tracks

        Raises:
            StateStoreCorruption: the file exists but is unreadable or
                inconsistent
        """
        self.db_path = Path(db_path)
        self.device_id = device_id
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except sqlite3.Error as e:
            raise StateStoreCorruption(f"Cannot open state store {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row

        try:
            with self._guard():
                if self._is_initialized():
                    self.verify()
                else:
                    self._create_tables()
        except StateStoreCorruption:
            self._conn.close()
            raise

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Map SQLite failures onto StateStoreCorruption."""
        try:
            yield
        except sqlite3.DatabaseError as e:
            raise StateStoreCorruption(f"State store {self.db_path} failed: {e}") from e

    def _is_initialized(self) -> bool:
        cursor = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE 'sync_%'"
        )
        tables = {row["name"] for row in cursor.fetchall()}
        if not tables:
            return False
        missing = {"sync_meta", "sync_checkpoint", "sync_records"} - tables
        if missing:
            raise StateStoreCorruption(f"State store is missing tables: {sorted(missing)}")
        return True

    def _create_tables(self) -> None:
        """Create schema, device identity and a zero checkpoint atomically."""
        now = datetime.utcnow().isoformat()
        with self._conn:
            # DDL does not open a transaction implicitly
            self._conn.execute("BEGIN")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_checkpoint (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    sequence_id INTEGER NOT NULL,
                    updated_at TEXT
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_records (
                    fingerprint TEXT PRIMARY KEY,
                    sequence_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    batch_key TEXT,
                    attempts INTEGER DEFAULT 0,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_status_sequence
                ON sync_records (status, sequence_id)
            """)
            self._conn.executemany(
                "INSERT INTO sync_meta (key, value) VALUES (?, ?)",
                [
                    ("schema_version", SCHEMA_VERSION),
                    ("device_id", self.device_id),
                    ("created_at", now),
                ],
            )
            self._conn.execute(
                "INSERT INTO sync_checkpoint (id, sequence_id, updated_at) VALUES (1, 0, NULL)"
            )
        logger.info("Created sync state store: path=%s", self.db_path)

    def verify(self) -> None:
        """Check the store is readable and self-consistent.

        Raises:
            StateStoreCorruption: on any integrity or consistency failure
        """
        with self._guard():
            result = self._conn.execute("PRAGMA integrity_check").fetchone()
            if result is None or result[0] != "ok":
                raise StateStoreCorruption(f"Integrity check failed: {result[0] if result else None}")

            meta = {
                row["key"]: row["value"]
                for row in self._conn.execute("SELECT key, value FROM sync_meta")
            }
            if meta.get("schema_version") != SCHEMA_VERSION:
                raise StateStoreCorruption(
                    f"Unsupported schema version: {meta.get('schema_version')}"
                )
            if meta.get("device_id") != self.device_id:
                raise StateStoreCorruption(
                    f"State store belongs to device {meta.get('device_id')!r}, "
                    f"not {self.device_id!r}"
                )

            rows = self._conn.execute("SELECT sequence_id FROM sync_checkpoint").fetchall()
            if len(rows) != 1:
                raise StateStoreCorruption("Checkpoint row missing or duplicated")
            if rows[0]["sequence_id"] is None or rows[0]["sequence_id"] < 0:
                raise StateStoreCorruption(f"Invalid checkpoint: {rows[0]['sequence_id']}")

            valid = tuple(s.value for s in RecordStatus)
            bad = self._conn.execute(
                f"SELECT COUNT(*) FROM sync_records WHERE status NOT IN ({','.join('?' * len(valid))})",
                valid,
            ).fetchone()[0]
            if bad:
                raise StateStoreCorruption(f"{bad} records have an unknown status")

    # --- Read path ---

    def status_of(self, fingerprint: str) -> RecordStatus | None:
        """Delivery status of a fingerprint, or None if never seen."""
        with self._guard():
            row = self._conn.execute(
                "SELECT status FROM sync_records WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        if row is None:
            return None
        try:
            return RecordStatus(row["status"])
        except ValueError as e:
            raise StateStoreCorruption(f"Unknown status for {fingerprint}: {row['status']}") from e

    def is_pending(self, fingerprint: str) -> bool:
        return self.status_of(fingerprint) == RecordStatus.PENDING

    def is_acknowledged(self, fingerprint: str) -> bool:
        return self.status_of(fingerprint) == RecordStatus.ACKNOWLEDGED

    def current_checkpoint(self) -> SyncCheckpoint:
        """Read the committed checkpoint."""
        with self._guard():
            row = self._conn.execute(
                "SELECT sequence_id, updated_at FROM sync_checkpoint WHERE id = 1"
            ).fetchone()
        if row is None:
            raise StateStoreCorruption("Checkpoint row missing")
        return SyncCheckpoint(
            sequence_id=row["sequence_id"],
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
        )

    def pending_fingerprints(self) -> list[str]:
        """Fingerprints sent but never acknowledged, oldest first."""
        with self._guard():
            cursor = self._conn.execute(
                "SELECT fingerprint FROM sync_records WHERE status = 'pending' "
                "ORDER BY sequence_id ASC"
            )
            return [row["fingerprint"] for row in cursor.fetchall()]

    def get_stats(self) -> dict[str, int]:
        """Get record counts by status plus the checkpoint."""
        with self._guard():
            cursor = self._conn.execute(
                "SELECT status, COUNT(*) AS count FROM sync_records GROUP BY status"
            )
            stats = {"pending": 0, "acknowledged": 0, "rejected": 0, "total": 0}
            for row in cursor.fetchall():
                stats[row["status"]] = row["count"]
                stats["total"] += row["count"]
        stats["checkpoint"] = self.current_checkpoint().sequence_id
        return stats

    # --- Write path ---

    def mark_pending(self, batch: DeliveryBatch) -> None:
        """Record batch membership before it is sent.

        Acknowledged and rejected records are never downgraded; records
        already pending get their attempt count bumped.
        """
        now = datetime.utcnow().isoformat()
        with self._guard(), self._conn:
            self._conn.executemany(
                """
                INSERT INTO sync_records
                    (fingerprint, sequence_id, status, batch_key, attempts, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, 1, ?, ?)
                ON CONFLICT (fingerprint) DO UPDATE SET
                    sequence_id = MIN(sync_records.sequence_id, excluded.sequence_id),
                    batch_key = excluded.batch_key,
                    attempts = sync_records.attempts + 1,
                    updated_at = excluded.updated_at
                WHERE sync_records.status = 'pending'
                """,
                [
                    (r.fingerprint, r.sequence_id, batch.idempotency_key, now, now)
                    for r in batch.records
                ],
            )

    def mark_acknowledged(
        self,
        batch: DeliveryBatch,
        new_checkpoint: int,
        fingerprints: Iterable[str] | None = None,
    ) -> SyncCheckpoint:
        """Acknowledge records and advance the checkpoint in one transaction.

        Args:
            batch: The batch the server answered for
            new_checkpoint: Checkpoint to advance to (never lowers it)
            fingerprints: Subset of the batch the server stored; defaults to
                the whole batch

        Returns:
            The checkpoint after the commit
        """
        selected = batch.fingerprints if fingerprints is None else fingerprints
        outcomes = {fp: (RecordStatus.ACKNOWLEDGED, None) for fp in selected}
        return self._settle(batch, outcomes, new_checkpoint)

    def mark_rejected(
        self,
        batch: DeliveryBatch,
        reasons: dict[str, str],
        new_checkpoint: int,
    ) -> SyncCheckpoint:
        """Quarantine refused records and advance the checkpoint atomically."""
        outcomes = {fp: (RecordStatus.REJECTED, reason) for fp, reason in reasons.items()}
        return self._settle(batch, outcomes, new_checkpoint)

    def record_receipt(
        self,
        batch: DeliveryBatch,
        receipt: AckReceipt,
        new_checkpoint: int,
    ) -> SyncCheckpoint:
        """Apply a server receipt: accepted and rejected records plus the
        checkpoint advance, all in one transaction.

        Batch members the receipt does not mention stay pending.
        """
        outcomes: dict[str, tuple[RecordStatus, str | None]] = {
            fp: (RecordStatus.ACKNOWLEDGED, None) for fp in receipt.accepted
        }
        for fp, reason in receipt.rejected.items():
            outcomes[fp] = (RecordStatus.REJECTED, reason)
        return self._settle(batch, outcomes, new_checkpoint)

    def advance_checkpoint(self, new_checkpoint: int) -> SyncCheckpoint:
        """Advance the checkpoint alone (records settled without sending)."""
        with self._guard(), self._conn:
            self._write_checkpoint(new_checkpoint)
        return self.current_checkpoint()

    def _settle(
        self,
        batch: DeliveryBatch,
        outcomes: dict[str, tuple[RecordStatus, str | None]],
        new_checkpoint: int,
    ) -> SyncCheckpoint:
        rows = [r for r in batch.records if r.fingerprint in outcomes]
        now = datetime.utcnow().isoformat()

        with self._guard(), self._conn:
            self._conn.executemany(
                """
                INSERT INTO sync_records
                    (fingerprint, sequence_id, status, batch_key, attempts, error,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT (fingerprint) DO UPDATE SET
                    status = excluded.status,
                    batch_key = excluded.batch_key,
                    error = excluded.error,
                    updated_at = excluded.updated_at
                WHERE sync_records.status != 'acknowledged'
                """,
                [
                    (
                        r.fingerprint,
                        r.sequence_id,
                        outcomes[r.fingerprint][0].value,
                        batch.idempotency_key,
                        outcomes[r.fingerprint][1],
                        now,
                        now,
                    )
                    for r in rows
                ],
            )
            self._write_checkpoint(new_checkpoint)

        logger.debug(
            "Records settled: count=%d, batch=%s", len(rows), batch.idempotency_key
        )
        return self.current_checkpoint()

    def _write_checkpoint(self, new_checkpoint: int) -> None:
        # Caller owns the transaction
        self._conn.execute(
            """
            UPDATE sync_checkpoint
            SET sequence_id = ?, updated_at = ?
            WHERE id = 1 AND sequence_id < ?
            """,
            (new_checkpoint, datetime.utcnow().isoformat(), new_checkpoint),
        )

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> "SyncStateStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
