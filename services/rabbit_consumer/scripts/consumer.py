"""
Bounded ingest consumer.

- Consumes the bounded input queue with at most ``CONSUMER_MAX_WORKERS`` records in flight
- Runs the record processor on a worker pool; only the coordinator acks/rejects
- Dead-letters failed records and records stalled past ``CONSUMER_REJECT_SECONDS``
- Exposes Prometheus metrics and samples queue depth via the management API

The processor is loaded from ``CONSUMER_PROCESSOR`` (``"package.module:function"``).
It receives the raw message body and either returns (ack) or raises
(``RetryableProcessingError`` / ``FatalProcessingError`` / anything else).

Examples:
    uv run python -m scripts.consumer
    CONSUMER_PROCESSOR=myapp.loader:add_record CONSUMER_MAX_WORKERS=16 uv run python -m scripts.consumer
"""

import asyncio
import importlib
import logging
import os
import signal
import time
from typing import Any

from rabbit_consumer.backpressure import BackpressureConfig, decide_throttle, get_queue_depth
from rabbit_consumer.config import Settings
from rabbit_consumer.consumer import BoundedConsumer, Processor
from rabbit_consumer.logging_utils import setup_logging
from rabbit_consumer.metrics import QUEUE_DEPTH, start_metrics_server
from rabbit_consumer.rabbit import RabbitMessageSource, connect, declare_ingest_topology
from rabbit_consumer.tracing import start_tracing
from rabbit_consumer.validation import parse_record


logger = logging.getLogger("scripts.consumer")


def process_record(body: bytes) -> dict[str, Any]:
    """Demo processor: validate the record and simulate work.

    Malformed records raise ``FatalProcessingError`` and are dead-lettered.
    ``DEMO_PROCESS_SECONDS`` adds an artificial processing delay.
    """
    record = parse_record(body)
    delay = float(os.getenv("DEMO_PROCESS_SECONDS", "0"))
    if delay > 0:
        time.sleep(delay)
    return {"data_source": record.DATA_SOURCE, "record_id": record.RECORD_ID}


def load_processor(target: str) -> Processor:
    """Resolve ``"package.module:function"`` to a callable."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"CONSUMER_PROCESSOR must look like 'module:function', got {target!r}")
    processor = getattr(importlib.import_module(module_name), attr)
    if not callable(processor):
        raise TypeError(f"{target} is not callable")
    return processor


async def sample_queue_depth(settings: Settings, stopping: asyncio.Event, interval: float = 5.0) -> None:
    """Periodically poll queue depth, update a Gauge metric and log pressure changes."""
    cfg = BackpressureConfig.for_max_length(settings.queue_max_length)
    last_mode = "none"
    while not stopping.is_set():
        depth = await asyncio.to_thread(get_queue_depth, settings.input_queue, settings)
        QUEUE_DEPTH.labels(queue=settings.input_queue).set(depth)
        mode = decide_throttle(depth, cfg)
        if mode != last_mode:
            log = logger.warning if mode in {"critical", "full"} else logger.info
            log("input queue %s pressure %s -> %s (depth=%d/%d)", settings.input_queue, last_mode, mode, depth, cfg.max_length)
            last_mode = mode
        try:
            await asyncio.wait_for(stopping.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def main() -> None:
    """Entrypoint for running the consumer as a script."""
    settings = Settings()
    setup_logging(settings.log_level, log_file=os.getenv("LOG_FILE") or None)

    try:
        start_metrics_server(settings.metrics_port)
        logger.info("metrics server listening on :%d /metrics", settings.metrics_port)
    except OSError:
        # Already started in this process; ignore
        pass
    start_tracing("rabbit-consumer")

    target = os.getenv("CONSUMER_PROCESSOR")
    processor = load_processor(target) if target else process_record

    connection = await connect(settings)
    async with connection:
        channel = await connection.channel()
        if os.getenv("CONSUMER_DECLARE_TOPOLOGY", "true").lower() in {"1", "true", "yes"}:
            await declare_ingest_topology(channel, settings)

        source = RabbitMessageSource(channel, settings.input_queue, prefetch_count=settings.max_workers)
        await source.open()
        consumer = BoundedConsumer(source, processor, settings)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, consumer.stop)

        sampler_stop = asyncio.Event()
        sampler = asyncio.create_task(sample_queue_depth(settings, sampler_stop))
        try:
            await consumer.run()
        finally:
            sampler_stop.set()
            await sampler
            await source.close()


if __name__ == "__main__":
    asyncio.run(main())
