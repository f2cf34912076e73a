"""RabbitMQ helpers for connections, topology, and leasing deliveries.

This module wraps ``aio_pika`` to provide a consistent interface for:
- Establishing robust connections with optional TLS/mTLS support
- Declaring the bounded input queue and its dead-letter exchange/queue
- Leasing deliveries to the consumer loop and resolving them (ack/reject)
- Building persistent messages for publishing

Only the coordinating coroutine of the consumer loop calls ``ack``/``reject``
on a ``RabbitMessageSource``; processors never see the channel.
"""

import asyncio
import logging
import os
import ssl
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from rabbit_consumer.config import Settings
from rabbit_consumer.constants import DEAD_LETTER_ROUTING_KEY, OVERFLOW_REJECT_PUBLISH, QUEUE_TYPE_QUORUM
from rabbit_consumer.errors import BrokerChannelError, DoubleResolutionError
from rabbit_consumer.models import LeasedMessage


logger = logging.getLogger(__name__)


def _build_ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

    Honors ``RABBITMQ_SSL_*`` flags in ``Settings``. When verification is
    disabled (dev/local), hostname checks and certificate verification are
    relaxed.
    """
    scheme = urlsplit(settings.rabbitmq_url).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    cafile = settings.rabbitmq_ssl_ca_path or None
    context = ssl.create_default_context(cafile=cafile)

    # Client certs for mTLS if provided
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        context.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context.verify_mode = ssl.CERT_REQUIRED

    return context


async def connect(settings: Settings | None = None, amqp_url: str | None = None) -> AbstractRobustConnection:
    """Create a robust AMQP connection with optional TLS/mTLS and retry/backoff.

    The connection is the single long-lived resource owned by the consumer
    coordinator; open it once at startup and close it on shutdown.

    Environment overrides:
    - ``RABBITMQ_CONNECT_ATTEMPTS`` (default: 12)
    - ``RABBITMQ_CONNECT_BASE_DELAY_MS`` (default: 500)
    - ``RABBITMQ_CONNECT_MAX_DELAY_MS`` (default: 3000)

    Example:
        >>> conn = await connect()
        >>> async with conn:
        ...     channel = await conn.channel()
    """
    settings = settings or Settings()
    url = amqp_url or settings.rabbitmq_url
    ssl_context = _build_ssl_context(settings)

    max_attempts = int(os.getenv("RABBITMQ_CONNECT_ATTEMPTS", "12"))
    delay_ms = int(os.getenv("RABBITMQ_CONNECT_BASE_DELAY_MS", "500"))
    max_delay_ms = int(os.getenv("RABBITMQ_CONNECT_MAX_DELAY_MS", "3000"))

    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            if ssl_context is not None:
                # Underlying aiormq expects SSLOptions-type; our context aligns but stubs complain
                return await aio_pika.connect_robust(url, ssl=True, ssl_options=ssl_context)  # type: ignore[arg-type]
            return await aio_pika.connect_robust(url)
        except (AMQPError, OSError, asyncio.TimeoutError) as exc:
            last_exc = exc
            if attempt == max_attempts:
                break
            logger.warning(
                "RabbitMQ connect attempt %d/%d failed: %s; retrying in %dms",
                attempt, max_attempts, exc, delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(int(delay_ms * 2), max_delay_ms)
    assert last_exc is not None
    raise last_exc


def input_queue_arguments(settings: Settings) -> Dict[str, Any]:
    """Arguments for the bounded input queue.

    Publishes beyond ``x-max-length`` are nacked (``reject-publish``) instead of
    silently dropping the oldest message, and rejected-without-requeue
    deliveries are routed to the dead-letter exchange. A quorum queue stamps
    ``x-delivery-count`` on redeliveries so the requeue budget can run out.
    """
    return {
        "x-queue-type": QUEUE_TYPE_QUORUM,
        "x-max-length": settings.queue_max_length,
        "x-overflow": OVERFLOW_REJECT_PUBLISH,
        "x-dead-letter-exchange": settings.dead_letter_exchange,
        "x-dead-letter-routing-key": DEAD_LETTER_ROUTING_KEY,
    }


async def declare_ingest_topology(channel: AbstractChannel, settings: Settings) -> AbstractQueue:
    """Declare the input exchange/queue and the dead-letter exchange/queue.

    - Input: direct exchange bound to a durable, length-bounded queue
    - DLQ: direct exchange and unbounded durable queue for rejected deliveries

    Declarations are idempotent; arguments must match any existing queue.
    """
    dlx = await channel.declare_exchange(settings.dead_letter_exchange, ExchangeType.DIRECT, durable=True)
    dlq = await channel.declare_queue(settings.dead_letter_queue, durable=True)
    await dlq.bind(dlx, routing_key=DEAD_LETTER_ROUTING_KEY)

    exchange = await channel.declare_exchange(settings.input_exchange, ExchangeType.DIRECT, durable=True)
    queue = await channel.declare_queue(
        settings.input_queue,
        durable=True,
        arguments=input_queue_arguments(settings),
    )
    await queue.bind(exchange, routing_key=settings.routing_key)
    logger.info(
        "declared topology: %s -> %s (max-length=%d) dlx=%s -> %s",
        settings.input_exchange, settings.input_queue, settings.queue_max_length,
        settings.dead_letter_exchange, settings.dead_letter_queue,
    )
    return queue


def build_message(
    body: bytes,
    headers: Optional[Mapping[str, Any]] = None,
    message_id: Optional[str] = None,
    persistent: bool = True,
) -> Message:
    """Wrap a body in a persistent AMQP message without touching the bytes."""
    return Message(
        body=body,
        content_type="application/json",
        delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
        headers=dict(headers) if headers else {},
        message_id=message_id,
    )


class RabbitMessageSource:
    """Lease deliveries from one queue for the bounded consumer loop.

    A manual-ack consumer buffers pushed deliveries in an ``asyncio.Queue``;
    the broker prefetch is set to the worker pool size so at most
    ``prefetch_count`` deliveries are unacknowledged (in flight or buffered)
    at any time.

    Each delivery tag can be resolved once. A second ack/reject for the same
    tag raises ``DoubleResolutionError``.

    Example:
        >>> source = RabbitMessageSource(channel, "ingest.records.q", prefetch_count=10)
        >>> await source.open()
        >>> leased = await source.fetch(timeout=10)
        >>> if leased is not None:
        ...     await source.ack(leased)
        >>> await source.close()
    """

    def __init__(self, channel: AbstractChannel, queue_name: str, prefetch_count: int) -> None:
        self.channel = channel
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count
        self._buffer: asyncio.Queue[AbstractIncomingMessage] = asyncio.Queue()
        self._leased: Dict[int, AbstractIncomingMessage] = {}
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None

    async def open(self) -> None:
        """Apply QoS and start consuming into the local buffer."""
        await self.channel.set_qos(prefetch_count=self.prefetch_count)
        self._queue = await self.channel.get_queue(self.queue_name, ensure=True)
        self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
        logger.info("consuming %s with prefetch=%d", self.queue_name, self.prefetch_count)

    async def close(self) -> None:
        """Stop the broker consumer. Unresolved deliveries return to the queue when the channel closes."""
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None
        if self._leased or not self._buffer.empty():
            logger.info(
                "closing source with %d leased and %d buffered deliveries unresolved",
                len(self._leased), self._buffer.qsize(),
            )

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        await self._buffer.put(message)

    def _lease(self, message: AbstractIncomingMessage) -> LeasedMessage:
        tag = int(message.delivery_tag or 0)
        self._leased[tag] = message
        return LeasedMessage(
            delivery_tag=tag,
            body=message.body,
            headers=dict(message.headers or {}),
            redelivered=bool(message.redelivered),
        )

    async def fetch(self, timeout: float) -> LeasedMessage | None:
        """Lease the next delivery, waiting up to ``timeout`` seconds. None when idle."""
        try:
            message = await asyncio.wait_for(self._buffer.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._lease(message)

    def fetch_nowait(self) -> LeasedMessage | None:
        """Lease an already-buffered delivery, or return None without waiting."""
        try:
            message = self._buffer.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return self._lease(message)

    def _take(self, leased: LeasedMessage) -> AbstractIncomingMessage:
        message = self._leased.pop(leased.delivery_tag, None)
        if message is None:
            raise DoubleResolutionError(leased.delivery_tag)
        return message

    async def ack(self, leased: LeasedMessage) -> None:
        message = self._take(leased)
        try:
            await message.ack()
        except (AMQPError, ChannelInvalidStateError) as exc:
            raise BrokerChannelError(leased.delivery_tag, "ack", exc) from exc

    async def reject(self, leased: LeasedMessage, requeue: bool = False) -> None:
        message = self._take(leased)
        try:
            await message.reject(requeue=requeue)
        except (AMQPError, ChannelInvalidStateError) as exc:
            raise BrokerChannelError(leased.delivery_tag, "reject", exc) from exc

    @property
    def leased_count(self) -> int:
        return len(self._leased)
