"""
Exception taxonomy for the delivery engine.
Each class maps to one failure mode and how callers are expected to react.
"""


class MessagingError(Exception):
    """Base exception for messaging errors."""


class TopologyError(MessagingError):
    """Raised when a declared entity conflicts with the broker's definition.

    Fatal at startup: the process must abort rather than retry.
    """

    def __init__(self, detail: str, entity: str | None = None):
        self.entity = entity
        super().__init__(detail)


class BrokerConnectionError(MessagingError):
    """Raised when the broker is unreachable or the channel is closed.

    Transient: the robust connection keeps reconnecting in the background,
    but the operation that hit the outage has failed and the caller decides.
    """


class DecodeError(MessagingError):
    """Raised when a delivery body cannot be turned into an envelope (poison)."""

    def __init__(self, reason: str, body: bytes | None = None):
        self.reason = reason
        self.body = body
        super().__init__(f"Failed to decode message: {reason}")


class ProcessingError(MessagingError):
    """Raised when the processing callable reports a failure."""

    def __init__(self, message_id: str | None, error: str | None = None):
        self.message_id = message_id
        super().__init__(f"Failed to process message '{message_id}': {error or 'handler returned failure'}")


class UnroutableMessageError(MessagingError):
    """Raised when a mandatory publish matched no binding."""

    def __init__(self, exchange: str, routing_key: str):
        self.exchange = exchange
        self.routing_key = routing_key
        super().__init__(f"No queue bound to exchange '{exchange}' with routing key '{routing_key}'")


class PublishRejectedError(MessagingError):
    """Raised when the broker refused a confirmed publish (`basic.nack`)."""

    def __init__(self, exchange: str, routing_key: str):
        self.exchange = exchange
        self.routing_key = routing_key
        super().__init__(f"Broker rejected publish to exchange '{exchange}' with routing key '{routing_key}'")


class DeliveryAlreadyResolved(MessagingError):
    """Raised when a delivery is acked or nacked a second time."""

    def __init__(self, delivery_tag: int | None):
        self.delivery_tag = delivery_tag
        super().__init__(f"Delivery {delivery_tag} has already been resolved")
