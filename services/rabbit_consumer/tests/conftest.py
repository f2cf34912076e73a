import asyncio
from collections import deque
from typing import Any, Mapping

import pytest

from rabbit_consumer.config import Settings
from rabbit_consumer.errors import BrokerChannelError
from rabbit_consumer.models import BackpressureState, LeasedMessage


class FakeSource:
    """In-memory message source that records every ack/reject with its loop time."""

    def __init__(self) -> None:
        self._pending: deque[LeasedMessage] = deque()
        self._next_tag = 1
        self.calls: list[tuple[str, int, bool, float]] = []
        self.fetched: list[tuple[int, float]] = []
        self.fail_ops: set[str] = set()

    def put(self, body: bytes, headers: Mapping[str, Any] | None = None, redelivered: bool = False) -> int:
        tag = self._next_tag
        self._next_tag += 1
        self._pending.append(LeasedMessage(tag, body, dict(headers or {}), redelivered))
        return tag

    async def fetch(self, timeout: float) -> LeasedMessage | None:
        if not self._pending:
            await asyncio.sleep(timeout)
        return self.fetch_nowait()

    def fetch_nowait(self) -> LeasedMessage | None:
        if not self._pending:
            return None
        leased = self._pending.popleft()
        self.fetched.append((leased.delivery_tag, asyncio.get_running_loop().time()))
        return leased

    async def ack(self, leased: LeasedMessage) -> None:
        self._record("ack", leased, False)

    async def reject(self, leased: LeasedMessage, requeue: bool = False) -> None:
        self._record("reject", leased, requeue)

    def _record(self, op: str, leased: LeasedMessage, requeue: bool) -> None:
        if op in self.fail_ops:
            raise BrokerChannelError(leased.delivery_tag, op, RuntimeError("channel closed"))
        self.calls.append((op, leased.delivery_tag, requeue, asyncio.get_running_loop().time()))

    def calls_for(self, tag: int) -> list[tuple[str, int, bool, float]]:
        return [c for c in self.calls if c[1] == tag]

    @property
    def resolved_tags(self) -> set[int]:
        return {c[1] for c in self.calls}


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def backpressure() -> BackpressureState:
    return BackpressureState(alert_threshold=3, window=60.0)


@pytest.fixture
def fast_settings():
    """Build Settings with sub-second timings suitable for tests."""

    def build(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "max_workers": 2,
            "fetch_timeout": 0.01,
            "harvest_poll_interval": 0.02,
            "long_record_threshold": 0.1,
            "reject_threshold": 0.2,
            "broker_consumer_timeout": 5.0,
            "shutdown_grace_period": 1.0,
            "max_redeliveries": 0,
        }
        values.update(overrides)
        return Settings(**values)

    return build
