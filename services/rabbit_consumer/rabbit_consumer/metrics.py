"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge, start_http_server


# Consumer metrics
CONSUMER_MESSAGES_TOTAL = Counter(
    "consumer_messages_total", "Messages resolved by the consumer", ["outcome"]
)
CONSUMER_INFLIGHT = Gauge(
    "consumer_inflight", "Messages dispatched to the worker pool and not yet resolved"
)
CONSUMER_PROCESS_SECONDS = Histogram(
    "consumer_process_seconds",
    "Time from dispatch to resolution",
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 30, 60, 300, 600),
)
CONSUMER_LONG_RECORD_TOTAL = Counter(
    "consumer_long_record_total", "Messages that crossed the long-record warning threshold"
)
CONSUMER_FETCH_TIMEOUT_TOTAL = Counter(
    "consumer_fetch_timeout_total", "Fetches that returned no message within the timeout"
)
QUEUE_DEPTH = Gauge(
    "queue_depth", "Current depth of a queue as reported by the management API", ["queue"]
)

# Publisher metrics
PUBLISH_ATTEMPT_TOTAL = Counter(
    "publish_attempt_total", "Total publish attempts", ["result"]
)
PUBLISH_NACK_TOTAL = Counter(
    "publish_nack_total", "Publishes refused by the broker"
)
BACKPRESSURE_ALERT = Gauge(
    "backpressure_alert", "1 while publishers see sustained negative acknowledgments"
)

DLQ_REPLAY_TOTAL = Counter(
    "dlq_replay_total", "Messages moved from the dead-letter queue back to the input exchange"
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
