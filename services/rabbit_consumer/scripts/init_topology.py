"""
Topology initializer.

- Declares the input exchange and the length-bounded input queue
  (``x-max-length``, ``x-overflow=reject-publish``, dead-lettering configured)
- Declares the dead-letter exchange and its unbounded queue

Supports a best-effort mode via ``--best-effort`` or ``INIT_TOPOLOGY_BEST_EFFORT=1``
which will skip errors if RabbitMQ is not reachable (useful in CI).

Examples:
    uv run python -m scripts.init_topology
    uv run python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import logging
import os

from aio_pika.exceptions import AMQPError

from rabbit_consumer.config import Settings
from rabbit_consumer.logging_utils import setup_logging
from rabbit_consumer.rabbit import connect, declare_ingest_topology


logger = logging.getLogger("scripts.init_topology")


async def main(settings: Settings, best_effort: bool) -> None:
    """Declare the ingest topology.

    When ``best_effort`` is True, any connection or declaration error will
    be logged and the function will return successfully.
    """
    try:
        connection = await connect(settings)
    except (AMQPError, OSError, asyncio.TimeoutError) as exc:
        if best_effort:
            logger.warning("skipping: RabbitMQ not reachable (%s)", exc)
            return
        raise

    async with connection:
        try:
            channel = await connection.channel()
            await declare_ingest_topology(channel, settings)
        except AMQPError as exc:
            if best_effort:
                logger.warning("skipping declarations due to error: %s", exc)
                return
            raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare RabbitMQ topology for the ingest consumer")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args()

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    settings = Settings()
    setup_logging(settings.log_level)
    asyncio.run(main(settings, bool(args.best_effort or best_effort_env)))
