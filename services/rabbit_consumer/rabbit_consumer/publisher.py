"""Publisher with delivery confirmation and backoff on broker backpressure.

When the input queue reaches ``x-max-length`` with ``overflow=reject-publish``
the broker answers a publish with a negative acknowledgment. The publisher
never drops such a message: it backs off and re-sends the identical bytes
until the broker confirms it. Sustained refusals inside the monitoring window
raise an operational alert (consumers are not keeping up).

Example:
    >>> channel = await connection.channel(publisher_confirms=True)
    >>> publisher = ConfirmingPublisher(channel, settings.input_exchange, settings.routing_key, settings)
    >>> attempts = await publisher.publish(b'{"DATA_SOURCE": "CUSTOMERS", "RECORD_ID": "1"}')
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional

from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import DeliveryError

from rabbit_consumer.backpressure import has_headroom
from rabbit_consumer.config import Settings
from rabbit_consumer.constants import PUBLISH_DEFERRED, PUBLISH_ERROR, PUBLISH_NACK, PUBLISH_OK
from rabbit_consumer.errors import PublishRejectedError
from rabbit_consumer.metrics import BACKPRESSURE_ALERT, PUBLISH_ATTEMPT_TOTAL, PUBLISH_NACK_TOTAL
from rabbit_consumer.models import BackpressureState, get_backpressure_state
from rabbit_consumer.rabbit import build_message
from rabbit_consumer.retry import backoff_delay
from rabbit_consumer.tracing import inject_headers


logger = logging.getLogger(__name__)


def _is_nack_frame(frame: Any) -> bool:
    """Return True if a confirmation frame is a ``Basic.Nack``.

    Detected by class name to avoid depending on the AMQP frame classes directly.
    """
    return frame is not None and frame.__class__.__name__ == "Nack"


class ConfirmingPublisher:
    """Publish bodies with publisher confirms, retrying nacks with exponential backoff.

    Properties:
    - `exchange_name` / `routing_key`: destination of every publish
    - `state`: shared ``BackpressureState`` used for alerting
    - `depth_probe`: optional callable returning the destination queue depth;
      while it reports no headroom the publisher waits without publishing
    """

    def __init__(
        self,
        channel: AbstractChannel,
        exchange_name: str,
        routing_key: str,
        settings: Settings,
        *,
        state: Optional[BackpressureState] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        depth_probe: Optional[Callable[[], int]] = None,
    ) -> None:
        self.channel = channel
        self.exchange_name = exchange_name
        self.routing_key = routing_key
        self.settings = settings
        self.state = state or get_backpressure_state()
        self.depth_probe = depth_probe
        self._sleep = sleep
        self._clock = clock
        self._exchange: AbstractExchange | None = None

    async def _get_exchange(self) -> AbstractExchange:
        if self._exchange is None:
            if self.exchange_name:
                self._exchange = await self.channel.get_exchange(self.exchange_name)
            else:
                self._exchange = self.channel.default_exchange
        return self._exchange

    async def _has_headroom(self) -> bool:
        if self.depth_probe is None:
            return True
        # The probe does blocking HTTP; keep it off the event loop
        depth = await asyncio.to_thread(self.depth_probe)
        return has_headroom(depth, self.settings.queue_max_length)

    def _exhausted(self, attempt: int) -> bool:
        limit = self.settings.publish_max_attempts
        return limit > 0 and attempt >= limit

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = backoff_delay(
            attempt,
            base=self.settings.publish_backoff_base,
            multiplier=self.settings.publish_backoff_multiplier,
            maximum=self.settings.publish_backoff_max,
            jitter=self.settings.publish_backoff_jitter,
        )
        logger.warning(
            "publish to %s/%s attempt %d %s; retrying in %.2fs",
            self.exchange_name or "(default)", self.routing_key, attempt, reason, delay,
        )
        await self._sleep(delay)

    def _record_nack(self) -> None:
        PUBLISH_ATTEMPT_TOTAL.labels(result=PUBLISH_NACK).inc()
        PUBLISH_NACK_TOTAL.inc()
        if self.state.record_nack(self._clock()):
            BACKPRESSURE_ALERT.set(1)
            logger.error(
                "sustained backpressure: %d publishes to %s refused within %.0fs; consumers are not keeping up",
                self.state.nacks_in_window(), self.exchange_name or self.routing_key, self.state.window,
            )

    def _record_ok(self) -> None:
        PUBLISH_ATTEMPT_TOTAL.labels(result=PUBLISH_OK).inc()
        if self.state.alerting:
            logger.info("backpressure cleared for %s", self.exchange_name or self.routing_key)
        self.state.record_publish_ok()
        BACKPRESSURE_ALERT.set(0)

    async def publish(
        self,
        body: bytes,
        *,
        headers: Optional[Mapping[str, Any]] = None,
        message_id: Optional[str] = None,
    ) -> int:
        """Publish ``body`` until the broker confirms it. Returns the number of attempts.

        Retries are unbounded unless ``publish_max_attempts`` is set, in which
        case ``PublishRejectedError`` is raised after the last refused attempt.
        Errors other than a broker nack propagate immediately.
        """
        exchange = await self._get_exchange()
        hdrs = inject_headers(headers)
        attempt = 0
        while True:
            attempt += 1
            if attempt > 1 and not await self._has_headroom():
                PUBLISH_ATTEMPT_TOTAL.labels(result=PUBLISH_DEFERRED).inc()
                if self._exhausted(attempt):
                    raise PublishRejectedError(attempt)
                await self._backoff(attempt, "deferred: queue has no headroom")
                continue

            try:
                frame = await exchange.publish(
                    build_message(body, headers=hdrs, message_id=message_id),
                    routing_key=self.routing_key,
                    mandatory=True,
                )
            except DeliveryError as exc:
                self._record_nack()
                if self._exhausted(attempt):
                    raise PublishRejectedError(attempt) from exc
                await self._backoff(attempt, "was refused by the broker")
                continue
            except Exception:
                PUBLISH_ATTEMPT_TOTAL.labels(result=PUBLISH_ERROR).inc()
                raise

            if _is_nack_frame(frame):
                self._record_nack()
                if self._exhausted(attempt):
                    raise PublishRejectedError(attempt)
                await self._backoff(attempt, "was refused by the broker")
                continue

            self._record_ok()
            if attempt > 1:
                logger.info("publish confirmed after %d attempts", attempt)
            return attempt
