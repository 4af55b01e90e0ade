"""
BatchProcessor - size/time bounded micro-batching of change events.

Events are buffered until either ``batch_size`` events have arrived or the
flush timer fires, whichever comes first. A flushed batch is partitioned by
record type, enriched, and each partition is written to the sink on its own:
a failing partition is logged and does not affect the others.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set

from cdc_etl.cdc.models import ChangeEvent, RecordType
from cdc_etl.streaming.enrichment import RecordEnricher
from cdc_etl.types.records import EnrichedRecord

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome of one processed batch"""
    size: int
    written: Dict[RecordType, int] = field(default_factory=dict)
    failed: Dict[RecordType, str] = field(default_factory=dict)
    skipped: int = 0
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, object]:
        return {
            "size": self.size,
            "written": {rt.value: n for rt, n in self.written.items()},
            "failed": {rt.value: msg for rt, msg in self.failed.items()},
            "skipped": self.skipped,
            "duration": self.duration,
        }


def partition_by_record_type(batch: List[ChangeEvent]) -> Dict[RecordType, List[ChangeEvent]]:
    """Group events by record type, keeping their order. Unknown collections are left out."""
    partitions: Dict[RecordType, List[ChangeEvent]] = {}
    for event in batch:
        record_type = event.record_type
        if record_type is not None:
            partitions.setdefault(record_type, []).append(event)
    return partitions


class BatchProcessor:
    def __init__(self, sink, enricher: Optional[RecordEnricher] = None,
                 batch_size: int = 10, flush_interval: float = 10.0):
        """
        Args:
            sink: Object with ``async upsert_batch(record_type, records)``
            enricher: Enrichment router; a default one is created when omitted
            batch_size: Number of buffered events that triggers a flush
            flush_interval: Seconds between timer-driven flushes
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.sink = sink
        self.enricher = enricher or RecordEnricher()
        self.batch_size = batch_size
        self.flush_interval = flush_interval

        self.buffer: List[ChangeEvent] = []
        self.lock = asyncio.Lock()
        self.in_flight: Set[asyncio.Task] = set()
        self.timer_task: Optional[asyncio.Task] = None
        self.running = False

        self.batches_processed = 0
        self.events_processed = 0
        self.last_result: Optional[BatchResult] = None

    def start(self):
        """Start the periodic flush timer."""
        if self.running:
            return
        self.running = True
        self.timer_task = asyncio.create_task(self._flush_periodically(), name="batch-flush-timer")
        logger.info("Batch processor started (size=%d, interval=%.1fs)", self.batch_size, self.flush_interval)

    async def _flush_periodically(self):
        while self.running:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    async def add(self, event: ChangeEvent) -> Optional[asyncio.Task]:
        """
        Buffer an event. Returns the processing task when this event filled
        the batch, otherwise None.
        """
        async with self.lock:
            self.buffer.append(event)
            if len(self.buffer) < self.batch_size:
                return None
            batch, self.buffer = self.buffer, []
        logger.debug("Batch size threshold reached (%d events)", len(batch))
        return self._dispatch(batch)

    async def flush(self) -> Optional[asyncio.Task]:
        """Process whatever is buffered. A no-op on an empty buffer."""
        async with self.lock:
            if not self.buffer:
                return None
            batch, self.buffer = self.buffer, []
        return self._dispatch(batch)

    def _dispatch(self, batch: List[ChangeEvent]) -> asyncio.Task:
        task = asyncio.create_task(self.process_batch(batch))
        self.in_flight.add(task)
        task.add_done_callback(self.in_flight.discard)
        return task

    async def process_batch(self, batch: List[ChangeEvent]) -> BatchResult:
        """Partition, enrich and write one batch."""
        started = time.time()
        result = BatchResult(size=len(batch))
        logger.info("Processing batch of %d events", len(batch))

        partitions = partition_by_record_type(batch)
        result.skipped = len(batch) - sum(len(events) for events in partitions.values())
        if result.skipped:
            logger.warning("Skipped %d event(s) from unknown collections", result.skipped)

        for record_type, events in partitions.items():
            try:
                records = self._enrich(events)
                if not records:
                    continue
                result.written[record_type] = await self.sink.upsert_batch(record_type, records)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error processing %s partition (%d events): %s", record_type.value, len(events), e)
                result.failed[record_type] = str(e)

        result.duration = time.time() - started
        self.batches_processed += 1
        self.events_processed += len(batch)
        self.last_result = result
        logger.info("Batch done in %.3fs: written=%s failed=%s",
                    result.duration,
                    {rt.value: n for rt, n in result.written.items()},
                    sorted(rt.value for rt in result.failed))
        return result

    def _enrich(self, events: List[ChangeEvent]) -> List[EnrichedRecord]:
        records = []
        for event in events:
            try:
                record = self.enricher.enrich(event)
            except Exception as e:
                logger.error("Error enriching %s/%s, using default enrichment: %s",
                             event.collection, event.document_key, e)
                record = self.enricher.enrich(replace(event, full_document=None))
            if record is not None:
                records.append(record)
        return records

    async def stop(self, drain_timeout: float = 10.0):
        """
        Stop the timer, flush the buffer and wait up to ``drain_timeout`` for
        in-flight batches. Batches still running after that are cancelled.
        """
        self.running = False
        if self.timer_task is not None:
            self.timer_task.cancel()
            await asyncio.gather(self.timer_task, return_exceptions=True)
            self.timer_task = None

        await self.flush()

        pending = set(self.in_flight)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=drain_timeout)
        if pending:
            logger.warning("Abandoning %d in-flight batch(es) after %.1fs drain timeout",
                           len(pending), drain_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Batch processor stopped")

    def status(self) -> Dict[str, object]:
        return {
            "buffered": len(self.buffer),
            "inFlight": len(self.in_flight),
            "batchesProcessed": self.batches_processed,
            "eventsProcessed": self.events_processed,
            "lastBatch": self.last_result.to_dict() if self.last_result else None,
        }
