"""Statistics boundary: consumer counters, observers and queue depth queries.

Consumers never crash on per-message errors; they resolve the delivery and
account for it here instead. External observers either read a snapshot of
``ConsumerStats`` or subscribe to its events.

Queue depth and consumer count come from a passive queue declaration,
which reads the queue's state without creating or changing it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Iterable

from aio_pika.abc import AbstractChannel
from aio_pika.exceptions import ChannelNotFoundEntity

from marketing_mq.constants import (
    EVENT_ACKED,
    EVENT_DEAD_LETTER,
    EVENT_POISON,
    EVENT_RECEIVED,
    EVENT_REDELIVERED,
    EVENT_RELEASED,
    EVENT_REQUEUED,
)
from marketing_mq.errors import TopologyError
from marketing_mq.metrics import CONSUMER_IN_FLIGHT, QUEUE_CONSUMERS, QUEUE_DEPTH
from marketing_mq.rabbit import BrokerConnection


logger = logging.getLogger(__name__)

Observer = Callable[[str, dict[str, Any]], Any]

_COUNTED_EVENTS = {
    EVENT_RECEIVED: "received",
    EVENT_REDELIVERED: "redelivered",
    EVENT_ACKED: "acked",
    EVENT_REQUEUED: "nacked_requeue",
    EVENT_POISON: "poison",
    EVENT_DEAD_LETTER: "dead_lettered",
    EVENT_RELEASED: "released",
}


@dataclass(frozen=True)
class StatsSnapshot:
    queue: str
    received: int
    acked: int
    nacked_requeue: int
    nacked_dropped: int
    poison: int
    dead_lettered: int
    redelivered: int
    released: int
    in_flight: int
    max_in_flight: int

    @property
    def failed(self) -> int:
        return self.nacked_requeue + self.nacked_dropped

    @property
    def success_rate(self) -> float:
        resolved = self.acked + self.failed
        return (self.acked * 100.0 / resolved) if resolved else 0.0

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = round(self.success_rate, 2)
        return data


class ConsumerStats:
    """Per-consumer counters plus an observer fan-out.

    ``nacked_dropped`` counts every NACK without requeue: poison messages and
    deliveries that exhausted their retries (``dead_lettered``).

    Example:
        >>> stats = ConsumerStats("sms_queue")
        >>> stats.subscribe(lambda event, details: print(event, details["message_id"]))
    """

    def __init__(self, queue: str) -> None:
        self.queue = queue
        self.received = 0
        self.acked = 0
        self.nacked_requeue = 0
        self.nacked_dropped = 0
        self.poison = 0
        self.dead_lettered = 0
        self.redelivered = 0
        self.released = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def record(self, event: str, **details: Any) -> None:
        attr = _COUNTED_EVENTS.get(event)
        if attr is not None:
            setattr(self, attr, getattr(self, attr) + 1)
        if event in (EVENT_POISON, EVENT_DEAD_LETTER):
            self.nacked_dropped += 1
        details.setdefault("queue", self.queue)
        for observer in list(self._observers):
            try:
                observer(event, details)
            except Exception:  # noqa: BLE001
                logger.exception("Stats observer failed for event %s", event)

    def delivery_started(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        CONSUMER_IN_FLIGHT.labels(queue=self.queue).set(self.in_flight)

    def delivery_finished(self) -> None:
        self.in_flight = max(self.in_flight - 1, 0)
        CONSUMER_IN_FLIGHT.labels(queue=self.queue).set(self.in_flight)

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(
            queue=self.queue,
            received=self.received,
            acked=self.acked,
            nacked_requeue=self.nacked_requeue,
            nacked_dropped=self.nacked_dropped,
            poison=self.poison,
            dead_lettered=self.dead_lettered,
            redelivered=self.redelivered,
            released=self.released,
            in_flight=self.in_flight,
            max_in_flight=self.max_in_flight,
        )

    def log_summary(self, title: str = "Consumer statistics") -> None:
        snap = self.snapshot()
        logger.info(
            "%s for %s: processed=%d acked=%d requeued=%d dropped=%d poison=%d success_rate=%.2f%%",
            title, snap.queue, snap.received, snap.acked, snap.nacked_requeue,
            snap.nacked_dropped, snap.poison, snap.success_rate,
        )


async def report_periodically(stats: ConsumerStats, interval_s: float, stop: asyncio.Event) -> None:
    """Log a stats summary every ``interval_s`` seconds until ``stop`` is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            stats.log_summary()


@dataclass(frozen=True)
class QueueStats:
    name: str
    message_count: int
    consumer_count: int


async def queue_stats(channel: AbstractChannel, queue_name: str) -> QueueStats:
    """Return ready-message depth and consumer count via a passive declare.

    Raises ``TopologyError`` when the queue does not exist.
    """
    try:
        queue = await channel.declare_queue(queue_name, passive=True)
    except ChannelNotFoundEntity as exc:
        raise TopologyError(f"queue '{queue_name}' does not exist", entity=queue_name) from exc
    result = queue.declaration_result
    stats = QueueStats(
        name=queue_name,
        message_count=int(result.message_count or 0),
        consumer_count=int(result.consumer_count or 0),
    )
    QUEUE_DEPTH.labels(queue=queue_name).set(stats.message_count)
    QUEUE_CONSUMERS.labels(queue=queue_name).set(stats.consumer_count)
    return stats


async def collect_queue_stats(connection: BrokerConnection, queue_names: Iterable[str]) -> list[QueueStats]:
    """Query several queues on a short-lived channel."""
    channel = await connection.channel()
    try:
        return [await queue_stats(channel, name) for name in queue_names]
    finally:
        await channel.close()
