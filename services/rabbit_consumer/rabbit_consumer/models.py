"""Runtime records shared by the consumer loop, message sources and publisher.

These are plain dataclasses rather than pydantic models: they are created on
the hot path for every delivery and hold futures and locks.
"""
from __future__ import annotations

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Mapping, Optional

from rabbit_consumer.constants import HEADER_DELIVERY_COUNT


@dataclass(frozen=True)
class LeasedMessage:
    """A delivery handed to the coordinator by a message source.

    Attributes
    ----------
    delivery_tag: int
        Broker handle used to correlate the eventual ack/reject.
    body: bytes
        The unit of work, passed to the processor unmodified.
    headers: Mapping[str, Any]
        AMQP headers (trace context, delivery count).
    redelivered: bool
        Whether the broker flagged this delivery as a redelivery.
    """
    delivery_tag: int
    body: bytes
    headers: Mapping[str, Any] = field(default_factory=dict)
    redelivered: bool = False

    @property
    def delivery_count(self) -> Optional[int]:
        """Prior deliveries of this message, from ``x-delivery-count`` when present.

        Without a usable header a first delivery counts as 0; a redelivery
        returns None because the broker is not counting (classic queues).
        """
        raw = self.headers.get(HEADER_DELIVERY_COUNT) if self.headers else None
        if raw is not None:
            try:
                return int(raw)
            except (TypeError, ValueError):
                pass
        return None if self.redelivered else 0


@dataclass
class InFlightMessage:
    """A leased message that has not been finally resolved.

    ``try_resolve`` is the only way to flip ``resolved``; it is an atomic
    check-and-set, so the harvest path and the timeout sweep can never both
    issue an ack/reject for the same delivery.
    """
    leased: LeasedMessage
    record_id: str
    start_time: float
    _resolved: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def delivery_tag(self) -> int:
        return self.leased.delivery_tag

    @property
    def payload(self) -> bytes:
        return self.leased.body

    @property
    def resolved(self) -> bool:
        return self._resolved

    def try_resolve(self) -> bool:
        """Claim resolution authority. Returns True for exactly one caller."""
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
            return True

    def elapsed(self, now: float) -> float:
        return now - self.start_time


@dataclass
class WorkerSlot:
    """One dispatched, unresolved message and its pending computation."""
    message: InFlightMessage
    future: asyncio.Future
    warned: bool = False


class BackpressureState:
    """Process-wide backpressure counters for publishers and consumers.

    Tracks consecutive publish nacks, nacks inside a sliding monitoring window
    and consecutive idle fetches. Used to drive logging, metrics and backoff
    only; correctness never depends on it.

    Example:
        >>> state = BackpressureState(alert_threshold=2, window=60.0)
        >>> state.record_nack(now=0.0)
        False
        >>> state.record_nack(now=1.0)
        True
        >>> state.alerting
        True
        >>> state.record_publish_ok()
        >>> state.alerting
        False
    """

    def __init__(self, alert_threshold: int = 10, window: float = 60.0) -> None:
        self.alert_threshold = max(1, int(alert_threshold))
        self.window = float(window)
        self.consecutive_nacks = 0
        self.consecutive_fetch_timeouts = 0
        self.alerting = False
        self._nack_times: Deque[float] = deque()
        self._lock = threading.Lock()

    def record_nack(self, now: float) -> bool:
        """Record a refused publish. Returns True when a new alert episode starts."""
        with self._lock:
            self.consecutive_nacks += 1
            self._nack_times.append(now)
            while self._nack_times and now - self._nack_times[0] > self.window:
                self._nack_times.popleft()
            if not self.alerting and len(self._nack_times) >= self.alert_threshold:
                self.alerting = True
                return True
            return False

    def record_publish_ok(self) -> None:
        with self._lock:
            self.consecutive_nacks = 0
            self.alerting = False
            self._nack_times.clear()

    def record_fetch_timeout(self) -> int:
        with self._lock:
            self.consecutive_fetch_timeouts += 1
            return self.consecutive_fetch_timeouts

    def record_fetch(self) -> None:
        with self._lock:
            self.consecutive_fetch_timeouts = 0

    def nacks_in_window(self) -> int:
        with self._lock:
            return len(self._nack_times)


_default_state: Optional[BackpressureState] = None


def get_backpressure_state() -> BackpressureState:
    """Return the process-wide state, creating it on first use."""
    global _default_state
    if _default_state is None:
        _default_state = BackpressureState()
    return _default_state
