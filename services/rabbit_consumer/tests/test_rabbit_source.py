from types import SimpleNamespace

import pytest
from aio_pika.exceptions import ChannelInvalidStateError

from rabbit_consumer.config import Settings
from rabbit_consumer.errors import BrokerChannelError, DoubleResolutionError
from rabbit_consumer.rabbit import RabbitMessageSource, declare_ingest_topology, input_queue_arguments


class DummyIncoming(SimpleNamespace):
    def __init__(self, tag: int, body: bytes, headers: dict | None = None, redelivered: bool = False, fail: Exception | None = None):
        super().__init__(delivery_tag=tag, body=body, headers=headers or {}, redelivered=redelivered)
        self.outcomes: list[tuple[str, bool]] = []
        self._fail = fail

    async def ack(self):
        if self._fail:
            raise self._fail
        self.outcomes.append(("ack", False))

    async def reject(self, requeue: bool = False):
        if self._fail:
            raise self._fail
        self.outcomes.append(("reject", requeue))


class DummyQueue:
    def __init__(self, name: str):
        self.name = name
        self.callback = None
        self.cancelled: list[str] = []
        self.bindings: list[tuple[object, str]] = []
        self.arguments = None

    async def consume(self, callback, no_ack: bool = False):
        assert no_ack is False
        self.callback = callback
        return "ctag-1"

    async def cancel(self, consumer_tag):
        self.cancelled.append(consumer_tag)

    async def bind(self, exchange, routing_key: str):
        self.bindings.append((exchange, routing_key))


class DummyChannel:
    def __init__(self):
        self.qos = None
        self.queues: dict[str, DummyQueue] = {}
        self.exchanges: dict[str, SimpleNamespace] = {}

    async def set_qos(self, prefetch_count: int):
        self.qos = prefetch_count

    async def get_queue(self, name: str, ensure: bool = True):
        return self.queues.setdefault(name, DummyQueue(name))

    async def declare_queue(self, name: str, durable: bool = False, arguments=None):
        assert durable is True
        queue = self.queues.setdefault(name, DummyQueue(name))
        queue.arguments = arguments
        return queue

    async def declare_exchange(self, name: str, exchange_type, durable: bool = False):
        assert durable is True
        exchange = SimpleNamespace(name=name, type=exchange_type)
        self.exchanges[name] = exchange
        return exchange


async def open_source(prefetch: int = 4):
    channel = DummyChannel()
    source = RabbitMessageSource(channel, "ingest.records.q", prefetch_count=prefetch)
    await source.open()
    return channel, source


@pytest.mark.asyncio
async def test_open_applies_prefetch_and_close_cancels_consumer():
    channel, source = await open_source(prefetch=7)
    queue = channel.queues["ingest.records.q"]
    assert channel.qos == 7
    assert queue.callback is not None

    await source.close()
    assert queue.cancelled == ["ctag-1"]


@pytest.mark.asyncio
async def test_fetch_times_out_and_fetch_nowait_returns_none_when_idle():
    _channel, source = await open_source()
    assert await source.fetch(timeout=0.01) is None
    assert source.fetch_nowait() is None


@pytest.mark.asyncio
async def test_fetch_leases_buffered_delivery():
    channel, source = await open_source()
    incoming = DummyIncoming(5, b'{"RECORD_ID": "1"}', headers={"x-delivery-count": 1}, redelivered=True)
    await channel.queues["ingest.records.q"].callback(incoming)

    leased = await source.fetch(timeout=1.0)
    assert leased is not None
    assert leased.delivery_tag == 5
    assert leased.body == b'{"RECORD_ID": "1"}'
    assert leased.delivery_count == 1
    assert source.leased_count == 1

    await source.ack(leased)
    assert incoming.outcomes == [("ack", False)]
    assert source.leased_count == 0


@pytest.mark.asyncio
async def test_second_resolution_raises_double_resolution_error():
    channel, source = await open_source()
    incoming = DummyIncoming(9, b"{}")
    await channel.queues["ingest.records.q"].callback(incoming)
    leased = source.fetch_nowait()

    await source.reject(leased, requeue=False)
    with pytest.raises(DoubleResolutionError):
        await source.ack(leased)
    with pytest.raises(DoubleResolutionError):
        await source.reject(leased)
    assert incoming.outcomes == [("reject", False)]


@pytest.mark.asyncio
async def test_channel_failure_wrapped_as_broker_channel_error():
    channel, source = await open_source()
    incoming = DummyIncoming(2, b"{}", fail=ChannelInvalidStateError("channel closed"))
    await channel.queues["ingest.records.q"].callback(incoming)
    leased = await source.fetch(timeout=0.1)

    with pytest.raises(BrokerChannelError) as info:
        await source.reject(leased, requeue=True)
    assert info.value.delivery_tag == 2
    assert info.value.operation == "reject"


@pytest.mark.asyncio
async def test_declare_ingest_topology_bounds_input_queue():
    channel = DummyChannel()
    settings = Settings(queue_max_length=500)

    queue = await declare_ingest_topology(channel, settings)

    assert queue.arguments == {
        "x-queue-type": "quorum",
        "x-max-length": 500,
        "x-overflow": "reject-publish",
        "x-dead-letter-exchange": settings.dead_letter_exchange,
        "x-dead-letter-routing-key": "dead",
    }
    assert queue.bindings[0][0] is channel.exchanges[settings.input_exchange]
    assert queue.bindings[0][1] == settings.routing_key
    dlq = channel.queues[settings.dead_letter_queue]
    assert dlq.arguments is None
    assert dlq.bindings[0] == (channel.exchanges[settings.dead_letter_exchange], "dead")
    assert input_queue_arguments(settings) == queue.arguments
