"""Sync pipeline: read -> canonicalize -> dedup -> transmit -> commit."""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Iterable
from datetime import datetime

from msgvault.canonical import Canonicalizer
from msgvault.config import Settings
from msgvault.engine.lock import RunLock
from msgvault.errors import (
    CycleInProgress,
    MalformedRecord,
    RejectedRecord,
    SourceUnavailable,
    StateStoreCorruption,
)
from msgvault.filters import SenderExclusionFilter
from msgvault.logging import (
    log_batch_acknowledged,
    log_batch_failed,
    log_checkpoint_advanced,
    log_cycle_finished,
    log_record_excluded,
    log_record_malformed,
)
from msgvault.models import (
    BatchState,
    CycleOutcome,
    CycleReport,
    DeliveryBatch,
    RecordStatus,
    TransmitResult,
)
from msgvault.source import InboxSource, source_from_settings
from msgvault.sync import BackoffPolicy, Batcher, SyncStateStore, Transmitter
from msgvault.sync.transmitter import AUTH_FAILURE_CODES

logger = logging.getLogger(__name__)


class CheckpointTracker:
    """Tracks which sequence ids read in a cycle are settled.

    Sequence ids are observed in read order. An id observed without a
    fingerprint (malformed, excluded, already acknowledged) is settled at
    once; the rest settle when their fingerprint does. The checkpoint may
    only move through the contiguous settled prefix, so a batch still in
    flight or failed holds back everything read after it.
    """

    def __init__(self, start: int) -> None:
        self._high = start
        self._order: deque[tuple[int, str | None]] = deque()
        self._settled: set[str] = set()

    def observe(self, sequence_id: int, fingerprint: str | None = None) -> None:
        self._order.append((sequence_id, fingerprint))

    def settle(self, fingerprints: Iterable[str]) -> None:
        self._settled.update(fingerprints)

    def settled_through(self) -> int:
        """Highest sequence id with everything up to it settled."""
        while self._order:
            sequence_id, fingerprint = self._order[0]
            if fingerprint is not None and fingerprint not in self._settled:
                break
            self._order.popleft()
            self._high = max(self._high, sequence_id)
        return self._high


class SyncPipeline:
    """Runs backup cycles for one device.

    Coordinates the inbox source, canonicalizer, sync state store and
    transmitter. Only one cycle runs at a time; batches are sent
    concurrently up to ``max_in_flight`` but committed one at a time, and
    the checkpoint only advances once everything before it is settled.

    Example:
        pipeline = SyncPipeline.from_settings(get_settings())
        report = await pipeline.run_cycle()
        await pipeline.close()
    """

    def __init__(
        self,
        source: InboxSource,
        store: SyncStateStore,
        transmitter: Transmitter,
        canonicalizer: Canonicalizer | None = None,
        exclusions: SenderExclusionFilter | None = None,
        batch_max_records: int = 100,
        batch_max_bytes: int = 256 * 1024,
        max_in_flight: int = 2,
        run_lock: RunLock | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            source: Device inbox adapter
            store: Sync state store (owned by the pipeline from now on)
            transmitter: Batch sender
            canonicalizer: Parser for raw messages
            exclusions: Sender exclusion rules
            batch_max_records: Record cap per batch
            batch_max_bytes: Wire size cap per batch
            max_in_flight: Batches sent concurrently
            run_lock: Cross-process lock; in-process locking only if None
        """
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")

        self.source = source
        self.store = store
        self.transmitter = transmitter
        self.canonicalizer = canonicalizer or Canonicalizer()
        self.exclusions = exclusions or SenderExclusionFilter()
        self.batch_max_records = batch_max_records
        self.batch_max_bytes = batch_max_bytes
        self.max_in_flight = max_in_flight
        self._run_lock = run_lock

        self._cycle_lock = asyncio.Lock()
        self._halted: StateStoreCorruption | None = None
        self.last_report: CycleReport | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncPipeline":
        """Build a pipeline from configuration.

        Raises:
            StateStoreCorruption: the device's state store cannot be opened
        """
        store = SyncStateStore(settings.state_db_path, settings.device_id)
        transmitter = Transmitter(
            api_base_url=settings.api_base_url,
            device_id=settings.device_id,
            auth_token=settings.auth_token,
            policy=BackoffPolicy(
                max_attempts=settings.max_attempts,
                initial_delay=settings.initial_backoff,
                max_delay=settings.max_backoff,
            ),
            timeout=settings.request_timeout,
            health_url=settings.health_url,
        )
        return cls(
            source=source_from_settings(settings),
            store=store,
            transmitter=transmitter,
            exclusions=SenderExclusionFilter(settings.load_exclusions()),
            batch_max_records=settings.batch_max_records,
            batch_max_bytes=settings.batch_max_bytes,
            max_in_flight=settings.max_in_flight,
            run_lock=RunLock(settings.lock_path),
        )

    @property
    def halted(self) -> bool:
        return self._halted is not None

    async def run_cycle(self) -> CycleReport:
        """Run one backup cycle.

        Returns:
            CycleReport describing what happened. Source and batch failures
            are reported through ``outcome`` and ``reason``.

        Raises:
            StateStoreCorruption: the local state is unusable; this and every
                later call fail until the store is repaired
        """
        if self._halted is not None:
            raise StateStoreCorruption(f"Pipeline halted: {self._halted}")

        if self._cycle_lock.locked():
            return self._skipped("cycle_in_progress")

        async with self._cycle_lock:
            try:
                if self._run_lock:
                    self._run_lock.acquire()
            except CycleInProgress as e:
                logger.info("Cycle skipped: %s", e)
                return self._skipped("cycle_in_progress")

            try:
                report = await self._run()
            except StateStoreCorruption as e:
                self._halted = e
                logger.error("Sync state store corrupted, halting: %s", e)
                raise
            finally:
                if self._run_lock:
                    self._run_lock.release()

        self.last_report = report
        return report

    def _skipped(self, reason: str) -> CycleReport:
        report = CycleReport(outcome=CycleOutcome.SKIPPED, reason=reason)
        report.finished_at = datetime.utcnow()
        return report

    async def _run(self) -> CycleReport:
        checkpoint = self.store.current_checkpoint()
        report = CycleReport(
            checkpoint_before=checkpoint.sequence_id,
            checkpoint_after=checkpoint.sequence_id,
        )
        cycle = _Cycle(self, report, CheckpointTracker(checkpoint.sequence_id))

        try:
            messages = iter(self.source.read_since(checkpoint))
            first = next(messages, None)
        except SourceUnavailable as e:
            logger.error("Inbox unavailable: source=%s, error=%s", self.source.name, e)
            return self._finish(report, CycleOutcome.FAILED, "source_unavailable")

        stream = messages if first is None else itertools.chain([first], messages)

        try:
            await cycle.process(stream)
        except SourceUnavailable as e:
            # Batches already handed off keep their results
            logger.error(
                "Inbox became unavailable mid-cycle: source=%s, error=%s", self.source.name, e
            )
            await cycle.drain()
            cycle.advance_checkpoint()
            return self._finish(report, CycleOutcome.FAILED, "source_unavailable")
        finally:
            await cycle.cancel_outstanding()

        cycle.advance_checkpoint()

        if cycle.refusal is not None:
            return self._finish(report, CycleOutcome.FAILED, cycle.refusal)
        if report.failed:
            return self._finish(report, CycleOutcome.PARTIAL, "transmit_failed")
        return self._finish(report, CycleOutcome.COMPLETED, None)

    def _finish(
        self, report: CycleReport, outcome: CycleOutcome, reason: str | None
    ) -> CycleReport:
        report.outcome = outcome
        report.reason = reason
        report.checkpoint_after = self.store.current_checkpoint().sequence_id
        report.finished_at = datetime.utcnow()
        log_cycle_finished(logger, report.to_dict())
        return report

    async def close(self) -> None:
        """Release the transmitter, store and source."""
        await self.transmitter.close()
        self.store.close()
        self.source.close()


class _Cycle:
    """Working state of a single run_cycle call."""

    def __init__(self, pipeline: SyncPipeline, report: CycleReport, tracker: CheckpointTracker):
        self.pipeline = pipeline
        self.store = pipeline.store
        self.report = report
        self.tracker = tracker
        self.batcher = Batcher(pipeline.batch_max_records, pipeline.batch_max_bytes)
        # Reason code once the server refuses a whole batch; nothing more is sent
        self.refusal: str | None = None

        self._seen: set[str] = set()
        self._slots = asyncio.Semaphore(pipeline.max_in_flight)
        self._commit_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    async def process(self, messages: Iterable) -> None:
        """Canonicalize, filter and dispatch every message, then wait."""
        report = self.report
        for raw, outcome in self.pipeline.canonicalizer.canonicalize(messages):
            if self.refusal is not None:
                # Unread messages stay above the checkpoint for the next cycle
                break
            report.read += 1

            if isinstance(outcome, MalformedRecord):
                report.malformed += 1
                log_record_malformed(logger, outcome.sequence_id, outcome.field)
                self.tracker.observe(raw.sequence_id)
                continue

            record = outcome
            excluded, pattern = self.pipeline.exclusions.should_exclude(record)
            if excluded:
                report.excluded += 1
                log_record_excluded(logger, record.sequence_id, pattern or "")
                self.tracker.observe(record.sequence_id)
                continue

            status = self.store.status_of(record.fingerprint)
            if status in (RecordStatus.ACKNOWLEDGED, RecordStatus.REJECTED):
                report.duplicates += 1
                self.tracker.observe(record.sequence_id)
                continue

            if record.fingerprint in self._seen:
                # Same content earlier in this cycle; settles with it
                report.duplicates += 1
                self.tracker.observe(record.sequence_id, record.fingerprint)
                continue

            self._seen.add(record.fingerprint)
            self.tracker.observe(record.sequence_id, record.fingerprint)

            batch = self.batcher.add(record)
            if batch:
                await self._dispatch(batch)

        batch = self.batcher.flush()
        if batch and self.refusal is None:
            await self._dispatch(batch)

        await self.drain()

    async def _dispatch(self, batch: DeliveryBatch) -> None:
        if self.refusal is not None:
            return
        async with self._commit_lock:
            self.store.mark_pending(batch)
        self.report.batches += 1

        # Blocks reading while max_in_flight batches are outstanding
        await self._slots.acquire()
        if self.refusal is not None:
            # Refused while waiting for a slot; stays pending, unsent
            self._slots.release()
            self.report.failed += len(batch)
            return
        task = asyncio.create_task(self._deliver(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, batch: DeliveryBatch) -> None:
        try:
            self.report.transmitted += len(batch)
            result = await self.pipeline.transmitter.send(batch)
        finally:
            self._slots.release()

        async with self._commit_lock:
            self._commit(batch, result)

    def _commit(self, batch: DeliveryBatch, result: TransmitResult) -> None:
        """Apply a batch outcome to the store. Caller holds the commit lock."""
        report = self.report

        if result.state == BatchState.ACKNOWLEDGED and result.receipt is not None:
            receipt = result.receipt
            self.tracker.settle(receipt.accepted)
            self.tracker.settle(receipt.rejected)
            committed = self.store.record_receipt(batch, receipt, self.tracker.settled_through())
            self._checkpointed(committed.sequence_id)

            report.acknowledged += len(receipt.accepted)
            report.rejected += len(receipt.rejected)
            # Members the server did not mention stay pending
            report.failed += len(batch) - len(receipt.accepted) - len(receipt.rejected)
            log_batch_acknowledged(
                logger,
                batch.idempotency_key,
                len(receipt.accepted),
                len(receipt.rejected),
                result.attempts,
            )
            for fingerprint, reason in receipt.rejected.items():
                logger.warning("%s", RejectedRecord(fingerprint, reason))
            return

        log_batch_failed(
            logger,
            batch.idempotency_key,
            result.state.value,
            result.error or "",
            result.attempts,
        )

        if result.state == BatchState.REJECTED and self.refusal is None:
            # The server named no record, so nothing is quarantined. The batch
            # stays pending and holds the checkpoint until a later cycle.
            if result.status_code in AUTH_FAILURE_CODES:
                self.refusal = "auth_failed"
            else:
                self.refusal = "batch_rejected"
            logger.error(
                "Batch refused, stopping cycle: batch=%s, status=%s, reason=%s",
                batch.idempotency_key, result.status_code, self.refusal,
            )

        # Retries exhausted or refused: records stay pending for the next cycle
        report.failed += len(batch)

    def _checkpointed(self, new_checkpoint: int) -> None:
        if new_checkpoint > self.report.checkpoint_after:
            log_checkpoint_advanced(logger, self.report.checkpoint_after, new_checkpoint)
            self.report.checkpoint_after = new_checkpoint

    def advance_checkpoint(self) -> None:
        """Commit whatever settled without a batch (malformed, excluded, duplicates)."""
        target = self.tracker.settled_through()
        if target > self.store.current_checkpoint().sequence_id:
            self._checkpointed(self.store.advance_checkpoint(target).sequence_id)

    async def drain(self) -> None:
        """Wait for all in-flight batches."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def cancel_outstanding(self) -> None:
        """Cancel in-flight batches; their records stay pending."""
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
