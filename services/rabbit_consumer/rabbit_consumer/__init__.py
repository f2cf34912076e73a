"""Internal libraries for the bounded RabbitMQ ingest consumer.

Modules include configuration, RabbitMQ helpers, the bounded consumer loop,
the confirming publisher, retry/backoff policy, record validation, metrics,
tracing, and backpressure utilities.
"""
