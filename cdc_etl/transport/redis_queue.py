"""
Redis-based durable queue between change detection and batch processing.

Uses the reliable-queue pattern: a consumer atomically moves the next message
from the queue list onto a processing list, hands it to the handler, then
either removes it (ack) or moves it back to the head of the queue (nack with
requeue). Anything left on the processing list when a connection is
(re)established was never acknowledged and is put back on the queue, so a
crash between delivery and ack results in redelivery.

Durability of the lists themselves is governed by the Redis server's
persistence settings (AOF/RDB).
"""
import asyncio
import base64
import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from cdc_etl.cdc.models import ChangeEvent

logger = logging.getLogger(__name__)

MessageHandler = Callable[[bytes], Awaitable[None]]

TRANSIENT_ERRORS = (RedisError, OSError)


class TransportError(Exception):
    """Raised when a message cannot be handed to the queue"""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class QueueMessage:
    """A delivered, not yet settled message"""
    raw: bytes
    message_id: str
    body: bytes
    persistent: bool
    timestamp: float


def encode_envelope(body: bytes, persistent: bool = True) -> bytes:
    envelope = {
        "message_id": uuid.uuid4().hex,
        "persistent": persistent,
        "content_type": "application/json",
        "timestamp": time.time(),
        "body": base64.b64encode(body).decode("ascii"),
    }
    return json.dumps(envelope).encode("utf-8")


def decode_envelope(raw: bytes) -> QueueMessage:
    envelope = json.loads(raw)
    return QueueMessage(
        raw=raw,
        message_id=envelope["message_id"],
        body=base64.b64decode(envelope["body"]),
        persistent=bool(envelope.get("persistent", True)),
        timestamp=float(envelope.get("timestamp", 0.0)),
    )


class RedisQueueTransport:
    """
    Durable queue client with manual acknowledgement and automatic reconnect.

    A single consumer is supported, with at most one unacknowledged message
    in flight.
    """

    def __init__(
        self,
        uri: str = "redis://localhost:6379/0",
        queue_name: str = "data-changes",
        reconnect_delay: float = 5.0,
        receive_timeout: float = 1.0,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        """
        Initialize the transport.

        Args:
            uri: Redis connection URI.
            queue_name: Name of the durable queue (a Redis list).
            reconnect_delay: Fixed delay in seconds between reconnect attempts.
            receive_timeout: Seconds a consumer blocks waiting for a message.
            client_factory: Builds a client from the URI; defaults to redis.asyncio.
        """
        self.uri = uri
        self.queue_name = queue_name
        self.processing_name = f"{queue_name}:processing"
        self.reconnect_delay = reconnect_delay
        self.receive_timeout = receive_timeout
        # decode_responses=False: envelopes are settled by exact byte value
        self.client_factory = client_factory or (lambda u: aioredis.Redis.from_url(u, decode_responses=False))

        self.client = None
        self.state = ConnectionState.DISCONNECTED
        self.closed = False
        self.handler: Optional[MessageHandler] = None
        self.consumer_task: Optional[asyncio.Task] = None
        self.reconnect_task: Optional[asyncio.Task] = None
        # serializes connects so at most one client is live
        self.connect_lock = asyncio.Lock()

    # ---- connection lifecycle ----

    async def connect(self):
        """Open a fresh client, recover unacknowledged messages and resume consuming."""
        async with self.connect_lock:
            await self._connect()

    async def ensure_connected(self):
        """Connect unless a usable connection exists; waits for a connect already in progress."""
        async with self.connect_lock:
            if self.state is ConnectionState.CONNECTED and self.client is not None:
                return
            await self._connect()

    async def _connect(self):
        self.state = ConnectionState.CONNECTING
        await self._close_client()
        client = self.client_factory(self.uri)
        try:
            await client.ping()
        except TRANSIENT_ERRORS:
            self.state = ConnectionState.DISCONNECTED
            await self._safe_close(client)
            raise

        self.client = client
        self.state = ConnectionState.CONNECTED
        recovered = await self.recover_inflight()
        if recovered:
            logger.warning("Requeued %d unacknowledged message(s) on %s", recovered, self.queue_name)
        logger.info("Connected to queue %s", self.queue_name)

        if self.handler is not None:
            self._start_consumer()

    async def start(self):
        """Connect, or keep retrying in the background if the broker is unreachable."""
        try:
            await self.connect()
        except TRANSIENT_ERRORS as e:
            logger.error("Failed to connect to queue at %s: %s", self.uri, e)
            self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self.closed:
            return
        if self.reconnect_task is not None and not self.reconnect_task.done():
            return
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_task = asyncio.create_task(self._reconnect_loop(), name=f"reconnect-{self.queue_name}")

    async def _reconnect_loop(self):
        while not self.closed:
            try:
                await self.ensure_connected()
                logger.info("Successfully reconnected to queue %s", self.queue_name)
                return
            except TRANSIENT_ERRORS as e:
                logger.error("Failed to reconnect to queue: %s; retrying in %.1fs", e, self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def _safe_close(self, client):
        try:
            await client.aclose()
        except Exception as e:
            logger.debug("Error closing redis client: %s", e)

    async def _close_client(self):
        if self.client is not None:
            client, self.client = self.client, None
            await self._safe_close(client)

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except TRANSIENT_ERRORS:
            return False

    async def close(self):
        """Stop consuming, stop reconnecting and release the connection."""
        self.closed = True
        await self.cancel_consumer()
        if self.reconnect_task is not None:
            self.reconnect_task.cancel()
            await asyncio.gather(self.reconnect_task, return_exceptions=True)
            self.reconnect_task = None
        await self._close_client()
        self.state = ConnectionState.DISCONNECTED
        logger.info("Queue connection closed")

    # ---- producer ----

    async def publish(self, body: bytes, persistent: bool = True):
        """
        Enqueue a message body.

        Raises:
            TransportError: no connection is open and an on-demand reconnect failed,
                or the write itself failed.
        """
        if self.state is not ConnectionState.CONNECTED or self.client is None:
            try:
                await self.ensure_connected()
            except TRANSIENT_ERRORS as e:
                self._schedule_reconnect()
                raise TransportError(f"Queue {self.queue_name} is unreachable: {e}") from e

        try:
            await self.client.lpush(self.queue_name, encode_envelope(body, persistent))
        except TRANSIENT_ERRORS as e:
            self._schedule_reconnect()
            raise TransportError(f"Failed to publish to {self.queue_name}: {e}") from e
        logger.debug("Message sent to queue %s", self.queue_name)

    async def publish_event(self, event: ChangeEvent):
        await self.publish(event.to_json(), persistent=True)

    # ---- consumer ----

    async def subscribe(self, handler: MessageHandler):
        """
        Register the single consumer. The handler is awaited for each message;
        returning acknowledges it, raising requeues it for redelivery.
        """
        if self.handler is not None:
            raise RuntimeError(f"A consumer is already registered on {self.queue_name}")
        self.handler = handler
        if self.state is ConnectionState.CONNECTED:
            self._start_consumer()
        logger.info("Started consuming from queue: %s", self.queue_name)

    def _start_consumer(self):
        if self.consumer_task is not None and not self.consumer_task.done():
            return
        self.consumer_task = asyncio.create_task(self._consume(), name=f"consumer-{self.queue_name}")

    async def cancel_consumer(self):
        self.handler = None
        task, self.consumer_task = self.consumer_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("Consumer on %s cancelled", self.queue_name)

    async def _consume(self):
        while self.handler is not None and not self.closed:
            try:
                message = await self.receive()
            except TRANSIENT_ERRORS as e:
                logger.error("Queue connection error while consuming: %s", e)
                self._schedule_reconnect()
                return
            if message is None:
                continue

            handler = self.handler
            if handler is None:
                # cancelled between receive and dispatch; recovered on next connect
                return
            try:
                await handler(message.body)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error processing message %s, requeueing", message.message_id)
                settle = self.nack(message, requeue=True)
            else:
                settle = self.ack(message)

            try:
                await settle
            except TRANSIENT_ERRORS as e:
                logger.error("Could not settle message %s: %s", message.message_id, e)
                self._schedule_reconnect()
                return

    async def receive(self) -> Optional[QueueMessage]:
        """Move the oldest queued message onto the processing list and return it."""
        raw = await self.client.blmove(
            self.queue_name, self.processing_name, self.receive_timeout, src="RIGHT", dest="LEFT"
        )
        if raw is None:
            return None
        try:
            return decode_envelope(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Discarding undecodable message on %s: %s", self.queue_name, e)
            await self.client.lrem(self.processing_name, 1, raw)
            return None

    async def ack(self, message: QueueMessage):
        await self.client.lrem(self.processing_name, 1, message.raw)

    async def nack(self, message: QueueMessage, requeue: bool = True):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_name, 1, message.raw)
            if requeue:
                # back to the consuming end, so it is redelivered next
                pipe.rpush(self.queue_name, message.raw)
            await pipe.execute()

    async def recover_inflight(self) -> int:
        """Return unacknowledged messages to the queue, oldest ending up first in line."""
        recovered = 0
        while True:
            raw = await self.client.lmove(self.processing_name, self.queue_name, src="LEFT", dest="RIGHT")
            if raw is None:
                return recovered
            recovered += 1

    async def queue_depth(self) -> Dict[str, int]:
        if self.client is None:
            return {"ready": 0, "unacked": 0}
        try:
            return {
                "ready": await self.client.llen(self.queue_name),
                "unacked": await self.client.llen(self.processing_name),
            }
        except TRANSIENT_ERRORS:
            return {"ready": 0, "unacked": 0}
