"""Shared constants for message resolution outcomes and header names.

Outcomes (``consumer_messages_total{outcome}``):
- ``acked``: Processing succeeded; the delivery was acknowledged.
- ``dead_lettered``: Non-retryable processing failure; rejected without requeue.
- ``requeued``: Retryable failure within the redelivery budget; rejected with requeue.
- ``timed_out``: Processing exceeded the reject threshold; rejected without requeue.
- ``lost``: The channel failed under the ack/reject call; the broker redelivers.

Publish results (``publish_attempt_total{result}``):
- ``ok``: Broker confirmed the publish.
- ``nack``: Broker refused the publish (queue over capacity).
- ``deferred``: Publisher held back because the queue reported no headroom.
- ``error``: Any other failure; propagated to the caller.
"""

OUTCOME_ACKED = "acked"
OUTCOME_DEAD_LETTERED = "dead_lettered"
OUTCOME_REQUEUED = "requeued"
OUTCOME_TIMED_OUT = "timed_out"
OUTCOME_LOST = "lost"

PUBLISH_OK = "ok"
PUBLISH_NACK = "nack"
PUBLISH_DEFERRED = "deferred"
PUBLISH_ERROR = "error"

# Quorum queues report how many times a message has been delivered
HEADER_DELIVERY_COUNT = "x-delivery-count"

DEAD_LETTER_ROUTING_KEY = "dead"
OVERFLOW_REJECT_PUBLISH = "reject-publish"
QUEUE_TYPE_QUORUM = "quorum"
