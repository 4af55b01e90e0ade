"""
Change Detection System for the CDC pipeline

Watches N source collections and turns their mutations into ChangeEvents.
Two interchangeable strategies sit behind one interface:

- streaming: one live subscription per collection, changes pushed as they happen
- polling: a fixed-period scan of the most recent documents of each collection,
  de-duplicated against a bounded set of already-seen keys

Streaming is attempted first; if any subscription fails to open, the whole
detector falls back to polling.

Known limitation of polling: a document that is mutated and then pushed out of
the most-recent window before the next poll is never observed. Polling also
cannot tell inserts from updates, so every polled change is reported as
``insert``.
"""
import asyncio
import logging
from collections import OrderedDict
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from cdc_etl.cdc.models import ChangeEvent, OperationType
from cdc_etl.cdc.source_store import ChangeSubscription, SourceStore

logger = logging.getLogger(__name__)

Publisher = Callable[[ChangeEvent], Awaitable[None]]


class DetectorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STREAMING = "streaming"
    POLLING = "polling"
    CLOSED = "closed"


class DedupTracker:
    """
    Bounded memory of recently-seen document keys, per collection.

    When a collection holds more than ``max_keys`` keys it is trimmed to the
    ``trim_to`` most recently added ones. Only the poll task mutates it.
    """

    def __init__(self, max_keys: int = 1000, trim_to: int = 500):
        if trim_to > max_keys:
            raise ValueError("trim_to must not exceed max_keys")
        self.max_keys = max_keys
        self.trim_to = trim_to
        self._seen: Dict[str, "OrderedDict[str, None]"] = {}

    def seen_or_add(self, collection: str, key: str) -> bool:
        """Return True if ``key`` was already tracked, otherwise track it and return False."""
        keys = self._seen.setdefault(collection, OrderedDict())
        if key in keys:
            return True
        keys[key] = None
        if len(keys) > self.max_keys:
            while len(keys) > self.trim_to:
                keys.popitem(last=False)
        return False

    def discard(self, collection: str, key: str):
        keys = self._seen.get(collection)
        if keys is not None:
            keys.pop(key, None)

    def keys(self, collection: str) -> List[str]:
        return list(self._seen.get(collection, ()))

    def size(self, collection: str) -> int:
        return len(self._seen.get(collection, ()))

    def clear(self):
        self._seen.clear()


class ChangeDetector:
    def __init__(
        self,
        source: SourceStore,
        publisher: Publisher,
        collections: List[str],
        poll_interval: float = 5.0,
        poll_window: int = 100,
        dedup_max_keys: int = 1000,
        dedup_trim_to: int = 500,
    ):
        """
        Initialize the detector.

        Args:
            source: Source store offering live subscriptions and/or recent-K queries
            publisher: Coroutine that hands a ChangeEvent to the transport
            collections: Names of the collections to watch
            poll_interval: Seconds between poll cycles in polling mode
            poll_window: Number of most recent documents fetched per poll
        """
        self.source = source
        self.publisher = publisher
        self.collections = list(collections)
        self.poll_interval = poll_interval
        self.poll_window = poll_window
        self.dedup = DedupTracker(dedup_max_keys, dedup_trim_to)

        self.state = DetectorState.UNINITIALIZED
        self.subscriptions: Dict[str, ChangeSubscription] = {}
        self.stream_tasks: Dict[str, asyncio.Task] = {}
        self.poll_task: Optional[asyncio.Task] = None
        self.events_emitted = 0

    async def start(self):
        """Try streaming for every collection; fall back to polling for all of them."""
        if self.state is not DetectorState.UNINITIALIZED:
            raise RuntimeError(f"Detector cannot start from state {self.state.value}")

        logger.info("Starting change detection for %s", ", ".join(self.collections))
        try:
            await self._open_subscriptions()
        except Exception as e:
            logger.warning("Change streams unavailable (%s), falling back to polling", e)
            await self._close_subscriptions()
            self._start_polling()
            return

        self.state = DetectorState.STREAMING
        for collection, subscription in self.subscriptions.items():
            self.stream_tasks[collection] = asyncio.create_task(
                self._consume_subscription(collection, subscription),
                name=f"cdc-stream-{collection}",
            )
        logger.info("Change streams initialized for %d collections", len(self.subscriptions))

    async def _open_subscriptions(self):
        for collection in self.collections:
            logger.debug("Opening change stream for %s", collection)
            self.subscriptions[collection] = await self.source.watch(collection)

    def _start_polling(self):
        self.state = DetectorState.POLLING
        self.poll_task = asyncio.create_task(self._poll_periodically(), name="cdc-poll")
        logger.info("Polling every %.1fs for changes", self.poll_interval)

    async def _consume_subscription(self, collection: str, subscription: ChangeSubscription):
        try:
            async for notification in subscription:
                try:
                    event = notification.to_event(collection)
                except ValueError as e:
                    logger.error("Dropping malformed notification from %s: %s", collection, e)
                    continue
                logger.debug("Change detected in %s: %s %s", collection, event.operation_type.value, event.document_key)
                await self._emit(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A broken channel does not switch the detector to polling.
            logger.error("Change stream for %s failed: %s", collection, e)

    async def _poll_periodically(self):
        while self.state is DetectorState.POLLING:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """Run one poll cycle over every collection; returns the number of events emitted."""
        emitted = 0
        for collection in self.collections:
            emitted += await self._poll_collection(collection)
        return emitted

    async def _poll_collection(self, collection: str) -> int:
        try:
            documents = await self.source.fetch_recent(collection, self.poll_window)
        except Exception as e:
            logger.error("Error polling %s collection: %s", collection, e)
            return 0

        emitted = 0
        for doc in documents:
            if self.dedup.seen_or_add(collection, doc.key):
                continue
            event = ChangeEvent(
                collection=collection,
                operation_type=OperationType.INSERT,
                document_key=doc.key,
                full_document=doc.document,
                update_description={},
            )
            if await self._emit(event):
                emitted += 1
            else:
                # let the next cycle pick it up again
                self.dedup.discard(collection, doc.key)

        if emitted:
            logger.info("Poll detected %d document(s) in %s", emitted, collection)
        return emitted

    async def _emit(self, event: ChangeEvent) -> bool:
        try:
            await self.publisher(event)
        except Exception as e:
            logger.error("Error publishing %s change for %s/%s: %s",
                         event.operation_type.value, event.collection, event.document_key, e)
            return False
        self.events_emitted += 1
        return True

    async def _close_subscriptions(self):
        for collection, subscription in list(self.subscriptions.items()):
            try:
                await subscription.close()
            except Exception as e:
                logger.error("Error closing change stream for %s: %s", collection, e)
        self.subscriptions.clear()

    async def stop(self):
        """Stop timers and subscriptions; every close is attempted even if one fails."""
        previous = self.state
        self.state = DetectorState.CLOSED

        if self.poll_task is not None:
            self.poll_task.cancel()
            await asyncio.gather(self.poll_task, return_exceptions=True)
            self.poll_task = None

        if self.subscriptions:
            logger.info("Closing %d change streams", len(self.subscriptions))
        await self._close_subscriptions()

        for task in self.stream_tasks.values():
            task.cancel()
        if self.stream_tasks:
            await asyncio.gather(*self.stream_tasks.values(), return_exceptions=True)
        self.stream_tasks.clear()

        self.dedup.clear()
        if previous is not DetectorState.CLOSED:
            logger.info("Change detection stopped")

    def status(self) -> Dict[str, object]:
        return {
            "mode": self.state.value,
            "collections": list(self.collections),
            "eventsEmitted": self.events_emitted,
            "trackedKeys": {c: self.dedup.size(c) for c in self.collections},
        }
