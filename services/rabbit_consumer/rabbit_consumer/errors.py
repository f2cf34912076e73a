"""
Exception classes for the ingest consumer.
Processing errors are raised by record processors; source and publish errors
are raised by the broker-facing adapters.
"""


class ConsumerError(Exception):
    """Base exception for ingest consumer errors."""


class ProcessingError(ConsumerError):
    """Base class for failures raised by a record processor."""

    retryable = False


class RetryableProcessingError(ProcessingError):
    """Transient failure, e.g. an upstream dependency timed out or was unavailable."""

    retryable = True


class FatalProcessingError(ProcessingError):
    """Failure that will not succeed on redelivery (bad input, business rule violation)."""


class SourceError(ConsumerError):
    """Base class for failures raised by a message source."""


class BrokerChannelError(SourceError):
    """The channel failed while acknowledging or rejecting a delivery."""

    def __init__(self, delivery_tag: int, operation: str, error: Exception):
        self.delivery_tag = delivery_tag
        self.operation = operation
        self.error = error
        super().__init__(f"{operation} failed for delivery {delivery_tag}: {error}")


class DoubleResolutionError(SourceError):
    """A delivery tag was acknowledged or rejected a second time."""

    def __init__(self, delivery_tag: int):
        self.delivery_tag = delivery_tag
        super().__init__(f"Delivery {delivery_tag} has already been resolved")


class PublishRejectedError(ConsumerError):
    """The broker kept refusing a publish until the attempt limit ran out."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Publish was not confirmed after {attempts} attempts")
