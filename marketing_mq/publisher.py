"""Publisher: persistent, confirmed publishes of envelopes to the exchange.

The producer side of the system is fire-and-forget: ``publish`` returns as
soon as the broker has confirmed it stored the message, never waiting for
a consumer. Persistence is fixed at publish time and is not a parameter.

Unroutable messages (a routing key with no binding) follow
``Settings.unroutable_policy``:
- ``drop``: published with ``mandatory=False``; the broker discards them.
- ``error``: published with ``mandatory=True``; a return raises
  ``UnroutableMessageError``.
"""
from __future__ import annotations

import asyncio
import datetime as _dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import ChannelNotFoundEntity, DeliveryError

from marketing_mq.config import Settings
from marketing_mq.constants import CONTENT_ENCODING, CONTENT_TYPE_JSON
from marketing_mq.envelope import EmailEnvelope, SmsEnvelope, encode_envelope, utcnow
from marketing_mq.errors import BrokerConnectionError, PublishRejectedError, TopologyError, UnroutableMessageError
from marketing_mq.metrics import PUBLISH_ATTEMPT_TOTAL, PUBLISH_FAILED_TOTAL
from marketing_mq.rabbit import CONNECTION_ERRORS, BrokerConnection
from marketing_mq.tracing import get_tracer, inject_headers


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """Broker acceptance of a single publish."""
    message_id: str
    exchange: str
    routing_key: str
    published_at: _dt.datetime
    accepted: bool = True


def build_message(
    envelope: SmsEnvelope | EmailEnvelope,
    headers: Optional[Dict[str, Any]] = None,
    published_at: Optional[_dt.datetime] = None,
) -> Message:
    """Wrap an envelope in an AMQP message with the delivery metadata consumers rely on."""
    return Message(
        body=encode_envelope(envelope),
        content_type=CONTENT_TYPE_JSON,
        content_encoding=CONTENT_ENCODING,
        delivery_mode=DeliveryMode.PERSISTENT,
        message_id=envelope.id,
        timestamp=published_at or utcnow(),
        type=envelope.kind,
        headers=dict(headers) if headers else {},
    )


class Publisher:
    """Publishes envelopes on a single confirmed channel.

    The channel is not safe for concurrent use, so publishes are serialized
    with an ``asyncio.Lock``; concurrent callers simply queue up.

    Example:
    ```python
    async with BrokerConnection(settings) as broker:
        publisher = Publisher(broker, settings)
        result = await publisher.publish("marketing_exchange", "sms", new_sms("+1", "hi"))
    ```
    """

    def __init__(self, connection: BrokerConnection, settings: Settings | None = None) -> None:
        self.connection = connection
        self.settings = settings or connection.settings
        self._mandatory = self.settings.unroutable_policy == "error"
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._lock = asyncio.Lock()
        self._tracer = get_tracer("marketing-producer")

    async def _get_channel(self) -> AbstractChannel:
        if self._channel is None or self._channel.is_closed:
            self._channel = await self.connection.channel(
                publisher_confirms=True, on_return_raises=self._mandatory
            )
            self._exchanges.clear()
        return self._channel

    async def _get_exchange(self, exchange_name: str) -> AbstractExchange:
        channel = await self._get_channel()
        if exchange_name not in self._exchanges:
            self._exchanges[exchange_name] = await channel.get_exchange(exchange_name)
        return self._exchanges[exchange_name]

    async def publish(
        self,
        exchange_name: str,
        routing_key: str,
        envelope: SmsEnvelope | EmailEnvelope,
    ) -> PublishResult:
        """Publish one envelope and return once the broker accepted it.

        Raises ``BrokerConnectionError`` if the broker is unavailable,
        ``TopologyError`` if the exchange does not exist,
        ``UnroutableMessageError`` for a returned mandatory publish and
        ``PublishRejectedError`` when the broker NACKs the publish.
        """
        with self._tracer.start_as_current_span("publish") as span:
            span.set_attribute("message_id", envelope.id)
            span.set_attribute("routing_key", routing_key)
            published_at = utcnow()
            message = build_message(envelope, inject_headers(), published_at)
            try:
                async with self._lock:
                    exchange = await self._get_exchange(exchange_name)
                    await exchange.publish(message, routing_key=routing_key, mandatory=self._mandatory)
            except ChannelNotFoundEntity as exc:
                self._record_failure(envelope, "topology", span, exc)
                self._channel = None
                raise TopologyError(f"exchange '{exchange_name}' does not exist", entity=exchange_name) from exc
            except DeliveryError as exc:
                # basic.return carries the returned message, a broker basic.nack does not
                if self._mandatory and getattr(exc, "message", None) is not None:
                    self._record_failure(envelope, "unroutable", span, exc)
                    raise UnroutableMessageError(exchange_name, routing_key) from exc
                self._record_failure(envelope, "rejected", span, exc)
                raise PublishRejectedError(exchange_name, routing_key) from exc
            except BrokerConnectionError as exc:
                self._record_failure(envelope, "connection", span, exc)
                raise
            except CONNECTION_ERRORS as exc:
                self._record_failure(envelope, "connection", span, exc)
                self._channel = None
                raise BrokerConnectionError(f"Publish to '{exchange_name}' failed: {exc}") from exc

        PUBLISH_ATTEMPT_TOTAL.labels(kind=envelope.kind, result="ok").inc()
        logger.info(
            "Published %s message %s to exchange '%s' with routing key '%s'",
            envelope.kind, envelope.id, exchange_name, routing_key,
        )
        return PublishResult(
            message_id=envelope.id,
            exchange=exchange_name,
            routing_key=routing_key,
            published_at=published_at,
        )

    async def publish_envelope(self, envelope: SmsEnvelope | EmailEnvelope) -> PublishResult:
        """Publish to the configured exchange using the kind's routing key."""
        return await self.publish(
            self.settings.exchange_name, self.settings.routing_key_for(envelope.kind), envelope
        )

    async def close(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
        self._exchanges.clear()

    def _record_failure(self, envelope, reason: str, span, exc: BaseException) -> None:
        PUBLISH_ATTEMPT_TOTAL.labels(kind=envelope.kind, result="error").inc()
        PUBLISH_FAILED_TOTAL.labels(reason=reason).inc()
        span.record_exception(exc)
        span.set_attribute("error", True)
        logger.error("Publishing message %s failed (%s): %s", envelope.id, reason, exc)
