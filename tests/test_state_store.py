"""Tests for the SQLite sync state store."""

import sqlite3

import pytest

from msgvault.errors import StateStoreCorruption
from msgvault.models import AckReceipt, RecordStatus


class TestFreshStore:
    """Test a newly created store."""

    def test_starts_at_zero_checkpoint(self, store):
        """A new store starts at checkpoint zero."""
        checkpoint = store.current_checkpoint()

        assert checkpoint.sequence_id == 0
        assert checkpoint.updated_at is None

    def test_unknown_fingerprint_has_no_status(self, store):
        """Verify unseen fingerprints have no status."""
        assert store.status_of("0" * 64) is None
        assert store.is_pending("0" * 64) is False
        assert store.get_stats() == {
            "pending": 0,
            "acknowledged": 0,
            "rejected": 0,
            "total": 0,
            "checkpoint": 0,
        }


class TestDeliveryStatus:
    """Test record status transitions."""

    def test_mark_pending(self, store, make_batch):
        """Verify batch members are recorded as pending."""
        batch = make_batch(1, 2)

        store.mark_pending(batch)

        assert all(store.is_pending(fp) for fp in batch.fingerprints)
        assert store.pending_fingerprints() == list(batch.fingerprints)
        assert store.current_checkpoint().sequence_id == 0

    def test_acknowledge_advances_checkpoint_atomically(self, store, make_batch):
        """Verify acknowledgment and checkpoint are committed together."""
        batch = make_batch(1, 2, 3)
        store.mark_pending(batch)

        checkpoint = store.mark_acknowledged(batch, new_checkpoint=3)

        assert checkpoint.sequence_id == 3
        assert checkpoint.updated_at is not None
        assert all(store.is_acknowledged(fp) for fp in batch.fingerprints)
        assert store.pending_fingerprints() == []

    def test_acknowledge_subset(self, store, make_batch):
        """Only the acknowledged subset leaves pending."""
        batch = make_batch(1, 2)
        store.mark_pending(batch)

        store.mark_acknowledged(batch, new_checkpoint=1, fingerprints=[batch.fingerprints[0]])

        assert store.is_acknowledged(batch.fingerprints[0])
        assert store.is_pending(batch.fingerprints[1])

    def test_record_receipt_splits_outcomes(self, store, make_batch):
        """Verify a receipt splits into acknowledged, rejected and still pending."""
        batch = make_batch(1, 2, 3)
        store.mark_pending(batch)
        fp1, fp2, fp3 = batch.fingerprints
        receipt = AckReceipt(
            idempotency_key=batch.idempotency_key,
            accepted=frozenset({fp1}),
            rejected={fp2: "body too long"},
        )

        store.record_receipt(batch, receipt, new_checkpoint=2)

        assert store.status_of(fp1) == RecordStatus.ACKNOWLEDGED
        assert store.status_of(fp2) == RecordStatus.REJECTED
        assert store.status_of(fp3) == RecordStatus.PENDING
        assert store.get_stats()["checkpoint"] == 2

    def test_pending_never_downgrades_acknowledged(self, store, make_batch):
        """Re-marking an acknowledged record pending leaves it acknowledged."""
        batch = make_batch(1)
        store.mark_acknowledged(batch, new_checkpoint=1)

        store.mark_pending(batch)

        assert store.is_acknowledged(batch.fingerprints[0])

    def test_rejection_never_overwrites_acknowledged(self, store, make_batch):
        """A late rejection does not overwrite an acknowledgment."""
        batch = make_batch(1)
        store.mark_acknowledged(batch, new_checkpoint=1)

        store.mark_rejected(batch, {batch.fingerprints[0]: "late rejection"}, new_checkpoint=1)

        assert store.is_acknowledged(batch.fingerprints[0])

    def test_stats(self, store, make_batch):
        """Verify counts by status include the checkpoint."""
        batch = make_batch(1, 2, 3)
        store.mark_pending(batch)
        store.mark_rejected(batch, {batch.fingerprints[2]: "bad"}, new_checkpoint=0)
        store.mark_acknowledged(batch, new_checkpoint=1, fingerprints=[batch.fingerprints[0]])

        stats = store.get_stats()

        assert stats == {
            "pending": 1,
            "acknowledged": 1,
            "rejected": 1,
            "total": 3,
            "checkpoint": 1,
        }


class TestCheckpoint:
    """Test checkpoint monotonicity."""

    def test_never_moves_backwards(self, store, make_batch):
        """Verify a lower checkpoint never replaces a higher one."""
        store.advance_checkpoint(5)

        store.advance_checkpoint(3)
        store.mark_acknowledged(make_batch(1), new_checkpoint=1)

        assert store.current_checkpoint().sequence_id == 5

    def test_failed_commit_leaves_nothing_behind(self, store, make_batch, monkeypatch):
        """Statuses and checkpoint commit together or not at all."""
        batch = make_batch(1, 2)
        store.mark_pending(batch)

        def broken_write(new_checkpoint):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_write_checkpoint", broken_write)

        with pytest.raises(StateStoreCorruption):
            store.mark_acknowledged(batch, new_checkpoint=2)

        monkeypatch.undo()
        assert all(store.is_pending(fp) for fp in batch.fingerprints)
        assert store.current_checkpoint().sequence_id == 0


class TestPersistence:
    """Test state across process restarts."""

    def test_state_survives_reopen(self, open_store, make_batch):
        """Verify records and checkpoint survive closing and reopening."""
        acked = make_batch(1, 2)
        pending = make_batch(3)
        with open_store() as store:
            store.mark_pending(acked)
            store.mark_acknowledged(acked, new_checkpoint=2)
            store.mark_pending(pending)

        with open_store() as store:
            assert store.current_checkpoint().sequence_id == 2
            assert store.is_acknowledged(acked.fingerprints[0])
            assert store.is_pending(pending.fingerprints[0])


class TestCorruption:
    """Unusable state is reported, never silently reset."""

    def test_garbage_file(self, state_path, open_store):
        """A file that is not SQLite is reported as corruption."""
        state_path.parent.mkdir(parents=True, exist_ok=True)
        state_path.write_bytes(b"this is not a sqlite database" * 100)

        with pytest.raises(StateStoreCorruption):
            open_store()

    def test_other_device(self, open_store):
        """Verify a store created for another device is refused."""
        open_store().close()

        with pytest.raises(StateStoreCorruption, match="belongs to device"):
            open_store("another-phone")

    def test_unknown_status(self, state_path, open_store, make_batch):
        """Verify an unknown record status is reported as corruption."""
        with open_store() as store:
            store.mark_pending(make_batch(1))

        conn = sqlite3.connect(str(state_path))
        conn.execute("UPDATE sync_records SET status = 'lost'")
        conn.commit()
        conn.close()

        with pytest.raises(StateStoreCorruption, match="unknown status"):
            open_store()

    def test_missing_table(self, state_path, open_store):
        """A missing table is reported as corruption."""
        open_store().close()

        conn = sqlite3.connect(str(state_path))
        conn.execute("DROP TABLE sync_checkpoint")
        conn.commit()
        conn.close()

        with pytest.raises(StateStoreCorruption, match="missing tables"):
            open_store()

    def test_negative_checkpoint(self, state_path, open_store):
        """Verify a negative checkpoint is reported as corruption."""
        open_store().close()

        conn = sqlite3.connect(str(state_path))
        conn.execute("UPDATE sync_checkpoint SET sequence_id = -4")
        conn.commit()
        conn.close()

        with pytest.raises(StateStoreCorruption, match="Invalid checkpoint"):
            open_store()
