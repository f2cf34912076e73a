"""Backpressure utilities based on RabbitMQ queue depth via management API.

This module queries the depth of the bounded input queue using the RabbitMQ
Management HTTP API and maps it to a pressure level relative to the queue's
``x-max-length``. Publishers use ``has_headroom`` to hold back while the queue
is full; the consumer entrypoint samples depth to expose it as a metric.

Usage example:
    >>> cfg = BackpressureConfig.for_max_length(1000)
    >>> decide_throttle(100, cfg)
    'none'
    >>> decide_throttle(1000, cfg)
    'full'
"""

from __future__ import annotations

import logging
from typing import Literal
from urllib.parse import quote

import httpx

from rabbit_consumer.config import Settings


logger = logging.getLogger(__name__)

ThrottleMode = Literal["none", "elevated", "critical", "full"]


class BackpressureConfig:
    """Depth thresholds for the pressure levels of one queue.

    Attributes:
        elevated_threshold: Depth at which consumers are falling behind.
        critical_threshold: Depth at which publishers will soon be refused.
        max_length: The queue's ``x-max-length``; at or above it publishes are nacked.

    Example:
        >>> cfg = BackpressureConfig(elevated_threshold=10, critical_threshold=50, max_length=100)
        >>> decide_throttle(60, cfg)
        'critical'
    """

    def __init__(
        self,
        elevated_threshold: int = 500,
        critical_threshold: int = 900,
        max_length: int = 1000,
    ) -> None:
        self.elevated_threshold = elevated_threshold
        self.critical_threshold = critical_threshold
        self.max_length = max_length

    @classmethod
    def for_max_length(cls, max_length: int) -> "BackpressureConfig":
        """Derive thresholds at 50% and 90% of the queue capacity."""
        return cls(
            elevated_threshold=max_length // 2,
            critical_threshold=(max_length * 9) // 10,
            max_length=max_length,
        )


def get_queue_depth(queue_name: str, settings: Settings | None = None) -> int:
    """Return current queue depth via RabbitMQ Management API.

    Requires RabbitMQ Management to be enabled and reachable at
    ``settings.rabbitmq_mgmt_url``. On any error, returns 0 to fail-open.
    """
    settings = settings or Settings()
    base = settings.rabbitmq_mgmt_url.rstrip("/")
    vhost = quote(settings.rabbitmq_vhost, safe="")
    url = f"{base}/api/queues/{vhost}/{quote(queue_name, safe='')}"
    try:
        r = httpx.get(url, auth=(settings.rabbitmq_mgmt_user, settings.rabbitmq_mgmt_pass), timeout=5)
        if r.status_code != 200:
            logger.debug("queue depth lookup for %s returned HTTP %s", queue_name, r.status_code)
            return 0
        data = r.json()
        return int(data.get("messages", 0))
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("queue depth lookup for %s failed: %s", queue_name, exc)
        return 0


def has_headroom(depth: int, max_length: int) -> bool:
    """Return True when the queue can accept at least one more message."""
    return depth < max_length


def decide_throttle(depth: int, cfg: BackpressureConfig) -> ThrottleMode:
    """Map a queue depth to a pressure level using the provided thresholds.

    Returns one of: ``"none"``, ``"elevated"``, ``"critical"``, ``"full"``.
    """
    if depth >= cfg.max_length:
        return "full"
    if depth >= cfg.critical_threshold:
        return "critical"
    if depth >= cfg.elevated_threshold:
        return "elevated"
    return "none"
