"""Resolution policy for processed messages and publisher backoff helpers.

Key entrypoints:
 - ``decide_disposition``: map a processing outcome to ack / requeue / dead-letter
 - ``backoff_delay``: exponential backoff with cap and jitter for publish retries

Examples
--------
>>> decide_disposition(None, delivery_count=0, max_redeliveries=0)
<Disposition.ACK: 'ack'>

>>> # Retryable errors requeue only while the redelivery budget lasts
>>> from rabbit_consumer.errors import RetryableProcessingError
>>> decide_disposition(RetryableProcessingError("db down"), delivery_count=0, max_redeliveries=2)
<Disposition.REQUEUE: 'requeue'>
>>> decide_disposition(RetryableProcessingError("db down"), delivery_count=2, max_redeliveries=2)
<Disposition.DEAD_LETTER: 'dead_letter'>

>>> backoff_delay(1, base=0.5, multiplier=2.0, maximum=30.0)
0.5
>>> backoff_delay(4, base=0.5, multiplier=2.0, maximum=30.0)
4.0
>>> backoff_delay(20, base=0.5, multiplier=2.0, maximum=30.0)  # capped
30.0
"""
from __future__ import annotations

import enum
import random
from typing import Optional

from rabbit_consumer.errors import ProcessingError


class Disposition(str, enum.Enum):
    """Terminal action the coordinator takes for a completed message."""
    ACK = "ack"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


def is_retryable(exc: BaseException) -> bool:
    """Return True only for processing errors explicitly classified as transient.

    Anything the processor did not classify is treated as non-retryable.
    """
    return isinstance(exc, ProcessingError) and exc.retryable


def decide_disposition(
    exc: Optional[BaseException],
    delivery_count: Optional[int],
    max_redeliveries: int,
) -> Disposition:
    """Decide how to resolve a message whose processing has completed.

    Parameters
    ----------
    exc: BaseException | None
        The processing failure, or None on success.
    delivery_count: int | None
        Prior deliveries of this message (0 on first delivery). None when a
        redelivery carries no count; the budget is then treated as spent.
    max_redeliveries: int
        Redelivery budget for retryable failures. 0 dead-letters every failure.

    Returns
    -------
    Disposition
        ``ACK`` on success, ``REQUEUE`` for a retryable failure within budget,
        ``DEAD_LETTER`` otherwise.
    """
    if exc is None:
        return Disposition.ACK
    if delivery_count is None:
        return Disposition.DEAD_LETTER
    if is_retryable(exc) and delivery_count < max_redeliveries:
        return Disposition.REQUEUE
    return Disposition.DEAD_LETTER


def backoff_delay(
    attempt: int,
    base: float,
    multiplier: float,
    maximum: float,
    jitter: float = 0.0,
) -> float:
    """Return the delay in seconds before retry number ``attempt`` (1-based).

    ``delay = min(base * multiplier ** (attempt - 1), maximum)``, then spread by
    ``jitter`` (0.1 = ±10%) to avoid publishers retrying in lockstep.
    """
    exponent = max(int(attempt), 1) - 1
    try:
        delay = base * (multiplier ** exponent)
    except OverflowError:
        delay = maximum
    delay = min(delay, maximum)
    if jitter <= 0:
        return delay
    delta = delay * jitter
    return random.uniform(delay - delta, delay + delta)
