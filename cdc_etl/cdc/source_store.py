"""
Source store collaborators for the change detector.

A source store offers two capabilities:
- a live subscription per collection that yields change notifications, and
- a query returning the most recent K documents of a collection, newest first.

Stores that cannot offer live subscriptions raise ``ChangeStreamUnavailable``
from ``watch``; the detector then falls back to polling.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

import ibis

from cdc_etl.cdc.models import ChangeNotification, OperationType, normalize_document_key

logger = logging.getLogger(__name__)


class ChangeStreamUnavailable(Exception):
    """Raised when a source store cannot open a live change subscription"""


@dataclass
class SourceDocument:
    key: str
    document: Dict[str, Any]


class ChangeSubscription(ABC):
    """An open live subscription; iterate it for notifications, close it when done."""

    @abstractmethod
    def __aiter__(self):
        pass

    @abstractmethod
    async def close(self):
        pass


class SourceStore(ABC):
    """Abstract base class for source stores"""

    @abstractmethod
    async def watch(self, collection: str) -> ChangeSubscription:
        """Open a live subscription for a collection"""
        pass

    @abstractmethod
    async def fetch_recent(self, collection: str, limit: int) -> List[SourceDocument]:
        """Return the most recent ``limit`` documents, newest first"""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def close(self):
        pass


class QueueSubscription(ChangeSubscription):
    """Subscription backed by an asyncio.Queue fed by a PushSourceStore"""

    _CLOSED = object()

    def __init__(self, store: "PushSourceStore", collection: str):
        self.store = store
        self.collection = collection
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while not self.closed:
            notification = await self.queue.get()
            if notification is self._CLOSED:
                break
            yield notification

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.store._detach(self)
        self.queue.put_nowait(self._CLOSED)


class PushSourceStore(SourceStore):
    """
    Source store that accepts externally pushed changes.
    This enables push-based CDC via webhooks or external event consumers.
    """

    def __init__(self, max_documents: int = 10000):
        self.max_documents = max_documents
        self.subscriptions: Dict[str, List[QueueSubscription]] = {}
        # insertion-ordered: oldest first
        self.documents: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def watch(self, collection: str) -> ChangeSubscription:
        subscription = QueueSubscription(self, collection)
        self.subscriptions.setdefault(collection, []).append(subscription)
        logger.info("Push source: listening for changes on %s", collection)
        return subscription

    def _detach(self, subscription: QueueSubscription):
        subscribers = self.subscriptions.get(subscription.collection, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    async def push_change(self, collection: str, notification: ChangeNotification):
        """Record a change from an external source and fan it out to live subscribers"""
        operation = str(notification.operation_type).lower()
        if operation not in {op.value for op in OperationType}:
            raise ValueError(f"Unknown operation type: {notification.operation_type!r}")
        self._apply(collection, notification)
        for subscription in list(self.subscriptions.get(collection, [])):
            await subscription.queue.put(notification)

    def _apply(self, collection: str, notification: ChangeNotification):
        documents = self.documents.setdefault(collection, {})
        key = normalize_document_key(notification.document_key)
        operation = str(notification.operation_type).lower()
        if operation == OperationType.DELETE.value:
            documents.pop(key, None)
        elif notification.full_document is not None and key not in documents:
            documents[key] = dict(notification.full_document)
            if len(documents) > self.max_documents:
                documents.pop(next(iter(documents)))
        elif notification.full_document is not None:
            # keep the original insertion position; only the content changes
            documents[key] = dict(notification.full_document)

    async def fetch_recent(self, collection: str, limit: int) -> List[SourceDocument]:
        documents = self.documents.get(collection, {})
        keys = list(documents.keys())[-limit:] if limit > 0 else []
        return [SourceDocument(key=key, document=documents[key]) for key in reversed(keys)]

    async def ping(self) -> bool:
        return True

    async def close(self):
        for subscribers in list(self.subscriptions.values()):
            for subscription in list(subscribers):
                await subscription.close()


class IbisSourceStore(SourceStore):
    """
    Query-only source store over any Ibis backend.

    Ibis exposes no change feed, so ``watch`` always raises and the detector
    polls via ``fetch_recent``, ordered by the insertion-order key column.
    """

    def __init__(self, connection, order_key: str = "_id"):
        self.connection = connection
        self.order_key = order_key

    async def watch(self, collection: str) -> ChangeSubscription:
        raise ChangeStreamUnavailable(
            f"Ibis backend {type(self.connection).__name__} does not offer change streams for {collection}"
        )

    def _fetch_recent_sync(self, collection: str, limit: int) -> List[SourceDocument]:
        table = self.connection.table(collection)
        if self.order_key not in table.columns:
            raise KeyError(f"Collection {collection} has no insertion-order column '{self.order_key}'")
        expr = table.order_by(ibis.desc(self.order_key)).limit(limit)
        rows = expr.to_pyarrow().to_pylist()
        return [SourceDocument(key=str(row[self.order_key]), document=row) for row in rows]

    async def fetch_recent(self, collection: str, limit: int) -> List[SourceDocument]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_sync, collection, limit)

    async def ping(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.connection.list_tables)
            return True
        except Exception as e:
            logger.warning("Source store ping failed: %s", e)
            return False

    async def close(self):
        disconnect = getattr(self.connection, "disconnect", None)
        if disconnect is not None:
            disconnect()


def connect_ibis(connection_uri: str):
    """Open an Ibis connection from a URI, defaulting to DuckDB."""
    if connection_uri.startswith(("postgres://", "postgresql://")):
        from urllib.parse import urlparse
        parsed = urlparse(connection_uri)
        return ibis.postgres.connect(
            host=parsed.hostname,
            port=parsed.port or 5432,
            user=parsed.username,
            password=parsed.password,
            database=parsed.path[1:]
        )
    if connection_uri.startswith("sqlite://"):
        return ibis.sqlite.connect(connection_uri.replace("sqlite://", ""))
    if connection_uri.startswith("duckdb://"):
        return ibis.duckdb.connect(connection_uri.replace("duckdb://", ""))
    return ibis.duckdb.connect(connection_uri)


def create_source_store(uri: str, order_key: str = "_id", connection: Optional[Any] = None) -> SourceStore:
    """
    Factory function to create a source store from a URI.

    Supports:
        - "push://" - in-process store fed by pushed notifications
        - ":memory:", "duckdb://...", "sqlite://...", "postgres://..." - Ibis backends
    """
    if uri.startswith("push://"):
        return PushSourceStore()
    return IbisSourceStore(connection or connect_ibis(uri), order_key=order_key)
