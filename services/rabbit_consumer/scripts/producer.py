"""
Record producer.

- Reads JSON records, one per line, from a file or stdin
- Publishes each line's bytes unchanged to the input exchange with publisher confirms
- Backs off and retries while the bounded input queue refuses publishes

Examples:
    uv run python -m scripts.producer --file records.jsonl
    cat records.jsonl | uv run python -m scripts.producer --validate
"""

import argparse
import asyncio
import logging
import sys
import time
from typing import IO, Iterator

from rabbit_consumer.backpressure import get_queue_depth
from rabbit_consumer.config import Settings
from rabbit_consumer.logging_utils import setup_logging
from rabbit_consumer.publisher import ConfirmingPublisher
from rabbit_consumer.rabbit import connect, declare_ingest_topology
from rabbit_consumer.tracing import get_tracer, start_tracing
from rabbit_consumer.validation import extract_record_id, parse_record


logger = logging.getLogger("scripts.producer")


def iter_lines(stream: IO[bytes]) -> Iterator[bytes]:
    """Yield non-blank lines without their trailing newline."""
    for raw in stream:
        line = raw.rstrip(b"\r\n")
        if line.strip():
            yield line


async def produce(stream: IO[bytes], settings: Settings, *, validate: bool, probe_depth: bool) -> int:
    """Publish every record in ``stream``; return how many were confirmed."""
    start_tracing("rabbit-producer")
    tracer = get_tracer("rabbit-producer")

    depth_probe = None
    if probe_depth:
        def depth_probe() -> int:
            return get_queue_depth(settings.input_queue, settings)

    published = 0
    started = time.perf_counter()
    connection = await connect(settings)
    async with connection:
        channel = await connection.channel(publisher_confirms=True)
        await declare_ingest_topology(channel, settings)
        publisher = ConfirmingPublisher(
            channel,
            settings.input_exchange,
            settings.routing_key,
            settings,
            depth_probe=depth_probe,
        )
        for line_no, body in enumerate(iter_lines(stream), start=1):
            if validate:
                # Raises FatalProcessingError: better to fail here than dead-letter downstream
                parse_record(body)
            record_id = extract_record_id(body, f"line-{line_no}")
            with tracer.start_as_current_span("publish") as span:
                span.set_attribute("record_id", record_id)
                attempts = await publisher.publish(body, message_id=record_id)
                span.set_attribute("attempts", attempts)
            published += 1
            if published % 1000 == 0:
                logger.info("published %d records", published)

    total = time.perf_counter() - started
    logger.info("published=%d total_sec=%.2f", published, total)
    return published


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish JSON-lines records to the ingest queue")
    parser.add_argument("--file", help="Path to a JSON-lines file (default: stdin)")
    parser.add_argument("--validate", action="store_true", help="Validate each record before publishing")
    parser.add_argument(
        "--probe-depth",
        action="store_true",
        help="Consult the management API and hold back while the queue has no headroom",
    )
    args = parser.parse_args()

    settings = Settings()
    setup_logging(settings.log_level)
    if args.file:
        with open(args.file, "rb") as stream:
            asyncio.run(produce(stream, settings, validate=args.validate, probe_depth=args.probe_depth))
    else:
        asyncio.run(produce(sys.stdin.buffer, settings, validate=args.validate, probe_depth=args.probe_depth))


if __name__ == "__main__":
    main()
