"""Bounded-concurrency consumer loop with timeout-based dead-lettering.

One coordinating coroutine owns every broker call (fetch, ack, reject); a
bounded worker pool runs the record processor. Each cycle:

1. admission: lease messages while fewer than ``max_workers`` are outstanding
2. dispatch: submit each payload to the pool and record a ``WorkerSlot``
3. harvest: wait up to ``harvest_poll_interval`` for the first completion(s)
   and ack / requeue / dead-letter them
4. sweep: warn about slots past ``long_record_threshold`` and dead-letter slots
   past ``reject_threshold`` without waiting for the task

Resolution authority never leaves the coordinator. A task abandoned by the
sweep keeps running; when it finishes its completion sees ``resolved`` and
does nothing.
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Protocol

from opentelemetry.trace import Tracer  # type: ignore

from rabbit_consumer.config import Settings
from rabbit_consumer.constants import (
    OUTCOME_ACKED,
    OUTCOME_DEAD_LETTERED,
    OUTCOME_LOST,
    OUTCOME_REQUEUED,
    OUTCOME_TIMED_OUT,
)
from rabbit_consumer.errors import BrokerChannelError
from rabbit_consumer.metrics import (
    CONSUMER_FETCH_TIMEOUT_TOTAL,
    CONSUMER_INFLIGHT,
    CONSUMER_LONG_RECORD_TOTAL,
    CONSUMER_MESSAGES_TOTAL,
    CONSUMER_PROCESS_SECONDS,
)
from rabbit_consumer.models import (
    BackpressureState,
    InFlightMessage,
    LeasedMessage,
    WorkerSlot,
    get_backpressure_state,
)
from rabbit_consumer.retry import Disposition, decide_disposition
from rabbit_consumer.tracing import extract_context_from_headers, get_tracer
from rabbit_consumer.validation import extract_record_id


logger = logging.getLogger(__name__)

Processor = Callable[[bytes], Any]


class MessageSource(Protocol):
    """Where the coordinator leases deliveries and sends its decisions."""

    async def fetch(self, timeout: float) -> Optional[LeasedMessage]: ...

    def fetch_nowait(self) -> Optional[LeasedMessage]: ...

    async def ack(self, leased: LeasedMessage) -> None: ...

    async def reject(self, leased: LeasedMessage, requeue: bool = False) -> None: ...


class BoundedConsumer:
    """Consume one queue with at most ``max_workers`` messages in flight.

    Concurrency model:
    - The coroutine running ``run()`` is the only caller of the source.
    - A plain ``processor`` runs on a ``ThreadPoolExecutor(max_workers)``;
      a coroutine function runs as an asyncio task on the same loop.
    - Messages may complete and be acked in any order.

    Failure semantics:
    - ``FatalProcessingError`` or any unclassified exception: reject without requeue.
    - ``RetryableProcessingError``: requeue while the delivery count is below
      ``max_redeliveries`` (0 by default, so it is dead-lettered too). A
      redelivery without an ``x-delivery-count`` header is dead-lettered.
    - Exceeding ``reject_threshold``: reject without requeue, logged as a timeout.
    - ``BrokerChannelError`` on ack/reject is logged and counted as lost.
      ``DoubleResolutionError`` propagates out of ``run()``.

    Example:
    ```python
    consumer = BoundedConsumer(source, process_record, Settings(max_workers=4))
    loop.add_signal_handler(signal.SIGTERM, consumer.stop)
    await consumer.run()
    ```
    """

    def __init__(
        self,
        source: MessageSource,
        processor: Processor,
        settings: Settings,
        *,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        tracer: Optional[Tracer] = None,
        backpressure: Optional[BackpressureState] = None,
    ) -> None:
        self.source = source
        self.processor = processor
        self.settings = settings
        self.clock = clock
        self._is_async = inspect.iscoroutinefunction(processor)
        self._owns_executor = executor is None and not self._is_async
        self._executor = executor
        if self._owns_executor:
            self._executor = ThreadPoolExecutor(
                max_workers=settings.max_workers, thread_name_prefix="record-worker"
            )
        self._tracer = tracer or get_tracer("rabbit-consumer")
        self._backpressure = backpressure or get_backpressure_state()
        self._slots: Dict[asyncio.Future, WorkerSlot] = {}
        self._stopping = asyncio.Event()
        self.max_outstanding = 0

    @property
    def outstanding(self) -> int:
        """Number of dispatched, unresolved messages."""
        return len(self._slots)

    def stop(self) -> None:
        """Signal the run loop to stop after the current cycle (used by signal handlers)."""
        self._stopping.set()

    async def run(self) -> None:
        """Run cycles until ``stop()``; then drain in-flight work for the grace period."""
        logger.info(
            "consumer started: max_workers=%d fetch_timeout=%.1fs long_record=%.1fs reject=%.1fs",
            self.settings.max_workers, self.settings.fetch_timeout,
            self.settings.long_record_threshold, self.settings.reject_threshold,
        )
        try:
            while not self._stopping.is_set():
                await self.run_cycle()
            await self.drain(self.settings.shutdown_grace_period)
        finally:
            if self._owns_executor and self._executor is not None:
                # Abandoned workers may never return; do not block shutdown on them
                self._executor.shutdown(wait=False)
            logger.info("consumer stopped with %d message(s) unresolved", len(self._slots))

    async def run_cycle(self) -> None:
        """One admission / dispatch / harvest / sweep pass."""
        for leased in await self._admit():
            self._dispatch(leased)
        await self._harvest()
        await self._sweep()

    async def drain(self, grace_period: float) -> None:
        """Keep harvesting and sweeping until no slots remain or ``grace_period`` elapses.

        Whatever is still in flight afterwards is left unacknowledged so the
        broker redelivers it once the channel closes.
        """
        deadline = self.clock() + grace_period
        while self._slots and self.clock() < deadline:
            await self._harvest(min(self.settings.harvest_poll_interval, max(deadline - self.clock(), 0.0)))
            await self._sweep()

    async def _admit(self) -> List[LeasedMessage]:
        leased: List[LeasedMessage] = []
        while len(self._slots) + len(leased) < self.settings.max_workers:
            if not self._slots and not leased:
                # Idle: block for work, but never longer than fetch_timeout
                message = await self.source.fetch(self.settings.fetch_timeout)
                if message is None:
                    CONSUMER_FETCH_TIMEOUT_TOTAL.inc()
                    idle = self._backpressure.record_fetch_timeout()
                    logger.debug("no message within %.1fs (idle fetches: %d)", self.settings.fetch_timeout, idle)
                    break
            else:
                # Work is in flight: take only what is already buffered so harvest is not delayed
                message = self.source.fetch_nowait()
                if message is None:
                    break
            self._backpressure.record_fetch()
            leased.append(message)
        return leased

    def _dispatch(self, leased: LeasedMessage) -> None:
        message = InFlightMessage(
            leased=leased,
            record_id=extract_record_id(leased.body, f"tag-{leased.delivery_tag}"),
            start_time=self.clock(),
        )
        loop = asyncio.get_running_loop()
        if self._is_async:
            future: asyncio.Future = asyncio.ensure_future(self.processor(leased.body))
        else:
            future = loop.run_in_executor(self._executor, self.processor, leased.body)
        self._slots[future] = WorkerSlot(message=message, future=future)
        self.max_outstanding = max(self.max_outstanding, len(self._slots))
        CONSUMER_INFLIGHT.set(len(self._slots))
        logger.debug("dispatched %s (delivery %d)", message.record_id, message.delivery_tag)

    async def _harvest(self, timeout: Optional[float] = None) -> None:
        if not self._slots:
            return
        wait_for = self.settings.harvest_poll_interval if timeout is None else timeout
        done, _pending = await asyncio.wait(
            set(self._slots), timeout=wait_for, return_when=asyncio.FIRST_COMPLETED
        )
        for future in done:
            slot = self._slots.pop(future, None)
            if slot is None:
                continue
            CONSUMER_INFLIGHT.set(len(self._slots))
            if not slot.message.try_resolve():
                continue
            exc = future.exception() if not future.cancelled() else asyncio.CancelledError()
            await self._resolve_completed(slot.message, exc)

    async def _resolve_completed(self, message: InFlightMessage, exc: Optional[BaseException]) -> None:
        disposition = decide_disposition(
            exc, message.leased.delivery_count, self.settings.max_redeliveries
        )
        elapsed = message.elapsed(self.clock())
        if disposition is Disposition.ACK:
            await self._issue(message, OUTCOME_ACKED, elapsed)
            logger.debug("acked %s after %.2fs", message.record_id, elapsed)
        elif disposition is Disposition.REQUEUE:
            await self._issue(message, OUTCOME_REQUEUED, elapsed, requeue=True)
            logger.warning(
                "requeued %s after %.2fs (delivery count %d): %s",
                message.record_id, elapsed, message.leased.delivery_count, exc,
            )
        else:
            await self._issue(message, OUTCOME_DEAD_LETTERED, elapsed)
            logger.error(
                "dead-lettered %s after %.2fs: %s: %s",
                message.record_id, elapsed, type(exc).__name__, exc,
            )

    async def _sweep(self) -> None:
        now = self.clock()
        for future, slot in list(self._slots.items()):
            message = slot.message
            if message.resolved:
                continue
            elapsed = message.elapsed(now)
            if elapsed > self.settings.long_record_threshold and not slot.warned:
                slot.warned = True
                CONSUMER_LONG_RECORD_TOTAL.inc()
                logger.warning(
                    "long running record %s: %.1fs elapsed (rejected at %.1fs)",
                    message.record_id, elapsed, self.settings.reject_threshold,
                )
            if elapsed > self.settings.reject_threshold and message.try_resolve():
                del self._slots[future]
                CONSUMER_INFLIGHT.set(len(self._slots))
                future.add_done_callback(functools.partial(self._on_abandoned_done, message))
                await self._issue(message, OUTCOME_TIMED_OUT, elapsed)
                logger.error(
                    "timed out %s after %.1fs; dead-lettered and abandoned its worker",
                    message.record_id, elapsed,
                )

    def _on_abandoned_done(self, message: InFlightMessage, future: asyncio.Future) -> None:
        # The sweep already resolved this message; a late completion only gets logged
        if future.cancelled():
            return
        exc = future.exception()
        if message.resolved:
            logger.info(
                "abandoned record %s finished after rejection (%s); ignoring",
                message.record_id, "failed" if exc is not None else "succeeded",
            )

    async def _issue(
        self,
        message: InFlightMessage,
        outcome: str,
        elapsed: float,
        requeue: bool = False,
    ) -> None:
        """Send the single ack/reject for a message this coordinator has resolved."""
        ctx = extract_context_from_headers(message.leased.headers)
        with self._tracer.start_as_current_span("resolve", context=ctx) as span:
            span.set_attribute("record_id", message.record_id)
            span.set_attribute("outcome", outcome)
            span.set_attribute("elapsed_seconds", elapsed)
            try:
                if outcome == OUTCOME_ACKED:
                    await self.source.ack(message.leased)
                else:
                    await self.source.reject(message.leased, requeue=requeue)
            except BrokerChannelError as exc:
                span.record_exception(exc)
                CONSUMER_MESSAGES_TOTAL.labels(outcome=OUTCOME_LOST).inc()
                logger.exception(
                    "could not %s %s; the broker will redeliver it",
                    "ack" if outcome == OUTCOME_ACKED else "reject", message.record_id,
                )
                return
        CONSUMER_MESSAGES_TOTAL.labels(outcome=outcome).inc()
        CONSUMER_PROCESS_SECONDS.observe(elapsed)
