"""
Replay dead-lettered records back into the input exchange.

Why:
- Enables operators to recover after fixing the cause of terminal failures
  (a bad deploy, an unavailable dependency) by re-feeding the Dead Letter Queue.

How:
- Leases up to ``--limit`` messages from the DLQ, republishes each body
  unchanged with publisher confirms, and acks the DLQ copy only after the
  broker confirmed the new publish. A refused publish backs off like any
  other producer, so a full input queue slows the replay down instead of
  losing records.
- ``--dry-run`` leases messages without resolving them; closing the channel
  returns them to the DLQ untouched.

Usage examples:
- Preview the first 10 dead-lettered records:
  uv run python -m scripts.replay_dlq --limit 10 --dry-run

- Replay a bounded batch and view progress output as [n/total]:
  uv run python -m scripts.replay_dlq --limit 50
"""

import argparse
import asyncio
import logging

from aio_pika.abc import AbstractChannel

from rabbit_consumer.config import Settings
from rabbit_consumer.logging_utils import setup_logging
from rabbit_consumer.metrics import DLQ_REPLAY_TOTAL
from rabbit_consumer.publisher import ConfirmingPublisher
from rabbit_consumer.rabbit import connect
from rabbit_consumer.validation import extract_record_id


logger = logging.getLogger("scripts.replay_dlq")


async def replay(channel: AbstractChannel, settings: Settings, limit: int, *, dry_run: bool) -> int:
    """Move up to ``limit`` messages from the DLQ to the input exchange.

    Returns the number of messages replayed (or that would be replayed in a dry run).
    The channel must have publisher confirms enabled.
    """
    dlq = await channel.get_queue(settings.dead_letter_queue, ensure=True)
    publisher = ConfirmingPublisher(channel, settings.input_exchange, settings.routing_key, settings)

    replayed = 0
    for idx in range(1, limit + 1):
        message = await dlq.get(no_ack=False, fail=False)
        if message is None:
            break
        record_id = extract_record_id(message.body, f"dlq-{idx}")
        if dry_run:
            logger.info("[%d/%d] would replay %s (%d bytes)", idx, limit, record_id, len(message.body))
            replayed += 1
            continue
        await publisher.publish(message.body, message_id=message.message_id or record_id)
        await message.ack()
        DLQ_REPLAY_TOTAL.inc()
        replayed += 1
        logger.info("[%d/%d] replayed %s", idx, limit, record_id)

    if replayed == 0:
        logger.info("no dead-lettered messages found in %s", settings.dead_letter_queue)
    elif dry_run:
        logger.info("dry-run: would replay %d message(s) from %s", replayed, settings.dead_letter_queue)
    return replayed


async def run(limit: int, dry_run: bool) -> None:
    settings = Settings()
    connection = await connect(settings)
    async with connection:
        channel = await connection.channel(publisher_confirms=True)
        await replay(channel, settings, limit, dry_run=dry_run)


def main() -> None:
    """CLI entrypoint for replaying DLQ messages. See module docstring for examples."""
    parser = argparse.ArgumentParser(description="Replay dead-lettered records")
    parser.add_argument("--limit", type=int, default=1)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    setup_logging(Settings().log_level)
    asyncio.run(run(args.limit, args.dry_run))


if __name__ == "__main__":
    main()
