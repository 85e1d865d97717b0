"""Grouping of canonical records into bounded delivery batches."""

from collections.abc import Iterable, Iterator

from msgvault.models import CanonicalRecord, DeliveryBatch


class Batcher:
    """Accumulates records into batches capped by count and wire size.

    A record larger than the byte budget on its own still goes out, as a
    batch of one; it cannot be split.

    Example:
        batcher = Batcher(max_records=100, max_bytes=256 * 1024)
        for record in records:
            batch = batcher.add(record)
            if batch:
                send(batch)
        last = batcher.flush()
    """

    def __init__(self, max_records: int = 100, max_bytes: int = 256 * 1024) -> None:
        if max_records < 1 or max_bytes < 1:
            raise ValueError("batch limits must be positive")
        self.max_records = max_records
        self.max_bytes = max_bytes
        self._records: list[CanonicalRecord] = []
        self._bytes = 0

    def add(self, record: CanonicalRecord) -> DeliveryBatch | None:
        """Add a record; return a full batch if this one did not fit."""
        ready = None
        if self._records and (
            len(self._records) >= self.max_records
            or self._bytes + record.wire_size > self.max_bytes
        ):
            ready = self.flush()

        self._records.append(record)
        self._bytes += record.wire_size

        if ready is None and len(self._records) >= self.max_records:
            ready = self.flush()
        return ready

    def flush(self) -> DeliveryBatch | None:
        """Return whatever is buffered as a batch, if anything."""
        if not self._records:
            return None
        batch = DeliveryBatch(records=tuple(self._records))
        self._records = []
        self._bytes = 0
        return batch

    def batches(self, records: Iterable[CanonicalRecord]) -> Iterator[DeliveryBatch]:
        """Batch a whole stream."""
        for record in records:
            batch = self.add(record)
            if batch:
                yield batch
        last = self.flush()
        if last:
            yield last
