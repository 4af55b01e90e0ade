"""
ETLPipeline - wires change detection, the durable queue, batching and the
warehouse sink together and owns their start/stop order.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from cdc_etl.backends.duckdb_backend import create_backend_from_uri
from cdc_etl.cdc.change_detector import ChangeDetector
from cdc_etl.cdc.models import ChangeEvent, ChangeNotification
from cdc_etl.cdc.source_store import PushSourceStore, SourceStore, create_source_store
from cdc_etl.config import PipelineConfig
from cdc_etl.streaming.batch_processor import BatchProcessor
from cdc_etl.streaming.enrichment import RecordEnricher
from cdc_etl.transport.redis_queue import RedisQueueTransport
from cdc_etl.warehouse.sink_writer import WarehouseWriter

logger = logging.getLogger(__name__)


class ETLPipeline:
    """The four pipeline stages plus their lifecycle"""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        source: Optional[SourceStore] = None,
        transport: Optional[RedisQueueTransport] = None,
        writer: Optional[WarehouseWriter] = None,
    ):
        self.config = config or PipelineConfig()
        self.source = source or create_source_store(self.config.source_uri, self.config.source_order_key)
        self.transport = transport or RedisQueueTransport(
            uri=self.config.queue_uri,
            queue_name=self.config.queue_name,
            reconnect_delay=self.config.reconnect_delay,
        )
        self.writer = writer or WarehouseWriter(
            create_backend_from_uri(self.config.warehouse_path),
            self.config.warehouse_tables,
        )
        self.processor = BatchProcessor(
            self.writer,
            RecordEnricher(tax_rate=self.config.tax_rate, currency=self.config.currency),
            batch_size=self.config.batch_size,
            flush_interval=self.config.batch_interval,
        )
        self.detector = ChangeDetector(
            self.source,
            self.transport.publish_event,
            self.config.source_collections,
            poll_interval=self.config.poll_interval,
            poll_window=self.config.poll_window,
            dedup_max_keys=self.config.dedup_max_keys,
            dedup_trim_to=self.config.dedup_trim_to,
        )
        self.running = False

    @property
    def supports_push(self) -> bool:
        return isinstance(self.source, PushSourceStore)

    async def handle_message(self, body: bytes):
        """Queue consumer: decode and buffer. Raising makes the transport requeue the message."""
        event = ChangeEvent.from_json(body)
        logger.debug("Received %s change for %s/%s", event.operation_type.value, event.collection, event.document_key)
        await self.processor.add(event)

    async def start(self):
        """Sink first, then transport and consumer, batching, and finally detection."""
        if self.running:
            return
        logger.info("Starting CDC ETL pipeline")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.writer.initialize)

        await self.transport.start()
        await self.transport.subscribe(self.handle_message)
        self.processor.start()
        await self.detector.start()
        self.running = True
        logger.info("CDC ETL pipeline started (detector mode: %s)", self.detector.state.value)

    async def stop(self):
        """Stop in reverse: detection, consumer, in-flight batches, then every connection."""
        logger.info("Stopping CDC ETL pipeline")
        await self.detector.stop()
        await self.transport.cancel_consumer()
        await self.processor.stop(drain_timeout=self.config.drain_timeout)
        await self.transport.close()

        try:
            self.writer.close()
        except Exception as e:
            logger.error("Error closing warehouse: %s", e)
        try:
            await self.source.close()
        except Exception as e:
            logger.error("Error closing source store: %s", e)

        self.running = False
        logger.info("CDC ETL pipeline stopped")

    async def push_change(self, collection: str, notification: ChangeNotification):
        if not self.supports_push:
            raise RuntimeError(f"Source store {type(self.source).__name__} does not accept pushed changes")
        if collection not in self.detector.collections:
            raise ValueError(f"Collection {collection} is not watched")
        await self.source.push_change(collection, notification)

    async def health(self) -> Dict[str, Any]:
        try:
            source_ok = await self.source.ping()
        except Exception as e:
            logger.warning("Source health check failed: %s", e)
            source_ok = False
        try:
            warehouse_ok = self.writer.ping()
        except Exception as e:
            logger.warning("Warehouse health check failed: %s", e)
            warehouse_ok = False
        queue_ok = await self.transport.ping()

        return {
            "status": "healthy" if (source_ok and warehouse_ok and queue_ok) else "degraded",
            "source": "connected" if source_ok else "disconnected",
            "warehouse": "connected" if warehouse_ok else "disconnected",
            "queue": "connected" if queue_ok else "disconnected",
        }

    async def cdc_status(self) -> Dict[str, Any]:
        status = self.detector.status()
        status["queue"] = {
            "state": self.transport.state.value,
            **(await self.transport.queue_depth()),
        }
        status["batching"] = self.processor.status()
        status["warehouse"] = self.writer.backend.get_stats()
        return status
