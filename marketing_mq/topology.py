"""Topology manager: exchange, work queues, bindings and dead-letter queues.

Declarations are idempotent on the broker side, so every process (producer
and each worker) calls ``ensure_topology`` at startup and again after a
reconnect. Identical arguments from concurrent processes converge on the
same durable definition. A name that already exists with different
properties makes the broker answer ``PRECONDITION_FAILED``; that is raised
as ``TopologyError`` and must abort startup.

Layout for the default marketing topology::

    marketing_exchange (direct) --sms-->   sms_queue   --DLX--> marketing_dlx --sms_queue-->   sms_queue.dlq
                                --email--> email_queue --DLX--> marketing_dlx --email_queue--> email_queue.dlq

The dead-letter half only exists when ``DEAD_LETTER_EXCHANGE`` is set.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel
from aio_pika.exceptions import ChannelPreconditionFailed

from marketing_mq.config import Settings
from marketing_mq.constants import dead_letter_queue_name
from marketing_mq.errors import TopologyError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Binding:
    exchange: str
    routing_key: str
    queue: str


@dataclass
class TopologyResult:
    """What ``ensure_topology`` declared; comparable across calls."""
    exchange: str
    bindings: list[Binding] = field(default_factory=list)
    dead_letter_exchange: Optional[str] = None
    dead_letter_queues: list[str] = field(default_factory=list)

    @property
    def binding_set(self) -> frozenset[Binding]:
        return frozenset(self.bindings)


def queue_arguments(queue_name: str, dead_letter_exchange: Optional[str]) -> Optional[dict[str, Any]]:
    """Return the ``x-`` arguments a work queue is declared with."""
    if not dead_letter_exchange:
        return None
    return {
        "x-dead-letter-exchange": dead_letter_exchange,
        "x-dead-letter-routing-key": queue_name,
    }


async def ensure_topology(
    channel: AbstractChannel,
    exchange_name: str,
    queue_names: Sequence[str],
    routing_keys: Sequence[str],
    dead_letter_exchange: Optional[str] = None,
) -> TopologyResult:
    """Declare one direct exchange, N durable queues and N bindings.

    ``routing_keys[i]`` is bound to ``queue_names[i]``. When
    ``dead_letter_exchange`` is given, each queue dead-letters into it and a
    ``<queue>.dlq`` is declared and bound with the queue name as key.

    Raises ``TopologyError`` when the argument lists disagree in length or
    when the broker reports an incompatible existing definition.
    """
    if len(queue_names) != len(routing_keys):
        raise TopologyError(
            f"got {len(queue_names)} queue names but {len(routing_keys)} routing keys"
        )
    if not queue_names:
        raise TopologyError("at least one queue is required")

    result = TopologyResult(exchange=exchange_name, dead_letter_exchange=dead_letter_exchange or None)
    current = exchange_name
    try:
        exchange = await channel.declare_exchange(
            exchange_name, ExchangeType.DIRECT, durable=True, auto_delete=False
        )
        logger.info("Exchange '%s' (direct) declared", exchange_name)

        dlx = None
        if dead_letter_exchange:
            current = dead_letter_exchange
            dlx = await channel.declare_exchange(
                dead_letter_exchange, ExchangeType.DIRECT, durable=True, auto_delete=False
            )
            logger.info("Dead-letter exchange '%s' declared", dead_letter_exchange)

        for queue_name, routing_key in zip(queue_names, routing_keys):
            current = queue_name
            queue = await channel.declare_queue(
                queue_name,
                durable=True,
                exclusive=False,
                auto_delete=False,
                arguments=queue_arguments(queue_name, dead_letter_exchange),
            )
            await queue.bind(exchange, routing_key=routing_key)
            result.bindings.append(Binding(exchange_name, routing_key, queue_name))
            logger.info("Queue '%s' bound to '%s' with routing key '%s'", queue_name, exchange_name, routing_key)

            if dlx is not None:
                dlq_name = dead_letter_queue_name(queue_name)
                current = dlq_name
                dlq = await channel.declare_queue(dlq_name, durable=True, exclusive=False, auto_delete=False)
                await dlq.bind(dlx, routing_key=queue_name)
                result.dead_letter_queues.append(dlq_name)
    except ChannelPreconditionFailed as exc:
        raise TopologyError(f"'{current}' already exists with incompatible properties: {exc}", entity=current) from exc
    return result


async def ensure_default_topology(channel: AbstractChannel, settings: Settings | None = None) -> TopologyResult:
    """Declare the configured marketing exchange, SMS/email queues and DLX."""
    settings = settings or Settings()
    return await ensure_topology(
        channel,
        settings.exchange_name,
        settings.queue_names,
        settings.routing_keys,
        dead_letter_exchange=settings.dead_letter_exchange or None,
    )
