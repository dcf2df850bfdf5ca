"""In-memory RabbitMQ double covering the aio_pika calls the engine makes.

Models direct exchanges, durable queues, per-consumer prefetch, manual
ack/nack, requeue with the redelivered flag, dead-lettering through
``x-dead-letter-exchange``, passive declares and declaration precondition
checks. Closing a channel requeues its unacked deliveries, like the broker.
"""

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import pytest
from aio_pika import DeliveryMode, ExchangeType
from aio_pika.exceptions import (
    ChannelInvalidStateError,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    DeliveryError,
)

from marketing_mq.config import Settings
from marketing_mq.rabbit import BrokerConnection


@dataclass
class StoredMessage:
    body: bytes
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    delivery_mode: Any = None
    message_id: Optional[str] = None
    timestamp: Any = None
    type: Optional[str] = None
    headers: dict = field(default_factory=dict)
    routing_key: str = ""
    redelivered: bool = False

    @classmethod
    def from_message(cls, message: Any, routing_key: str) -> "StoredMessage":
        return cls(
            body=message.body,
            content_type=message.content_type,
            content_encoding=message.content_encoding,
            delivery_mode=message.delivery_mode,
            message_id=message.message_id,
            timestamp=message.timestamp,
            type=message.type,
            headers=dict(message.headers or {}),
            routing_key=routing_key,
        )

    @property
    def persistent(self) -> bool:
        return self.delivery_mode is not None and int(self.delivery_mode) == int(DeliveryMode.PERSISTENT)


@dataclass
class QueueState:
    name: str
    durable: bool
    arguments: dict
    ready: deque = field(default_factory=deque)
    consumers: list = field(default_factory=list)


@dataclass
class ExchangeState:
    name: str
    type: ExchangeType
    durable: bool
    bindings: dict = field(default_factory=dict)  # routing key -> set of queue names


@dataclass
class ConsumerState:
    tag: str
    channel: "FakeChannel"
    queue: str
    callback: Callable[[Any], Awaitable[Any]]
    unacked: int = 0


class FakeBroker:
    """Shared broker state; one per test."""

    def __init__(self) -> None:
        self.exchanges: dict[str, ExchangeState] = {}
        self.queues: dict[str, QueueState] = {}
        self.acks: list[str] = []
        self.nacks_requeue: list[str] = []
        self.nacks_dropped: list[str] = []
        self.dead_lettered: list[str] = []
        self.discarded: list[str] = []
        self._tags = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    # -- inspection helpers used by tests
    def depth(self, queue: str) -> int:
        return len(self.queues[queue].ready)

    def messages(self, queue: str) -> list[StoredMessage]:
        return list(self.queues[queue].ready)

    def unacked(self) -> int:
        return sum(c.unacked for q in self.queues.values() for c in q.consumers)

    # -- routing
    def route(self, exchange: str, routing_key: str, stored: StoredMessage) -> int:
        if exchange == "":
            targets = {routing_key} if routing_key in self.queues else set()
        else:
            state = self.exchanges.get(exchange)
            targets = set(state.bindings.get(routing_key, set())) if state else set()
        for name in targets:
            copy = StoredMessage(**{**stored.__dict__, "headers": dict(stored.headers), "redelivered": False})
            self.queues[name].ready.append(copy)
            self.dispatch(name)
        return len(targets)

    def dispatch(self, queue_name: str) -> None:
        queue = self.queues[queue_name]
        while queue.ready and queue.consumers:
            for consumer in list(queue.consumers):
                limit = consumer.channel.prefetch_count
                if limit == 0 or consumer.unacked < limit:
                    break
            else:
                return
            queue.consumers.remove(consumer)
            queue.consumers.append(consumer)
            stored = queue.ready.popleft()
            incoming = consumer.channel.track(queue_name, stored, consumer)
            task = asyncio.get_running_loop().create_task(consumer.callback(incoming))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def settle(self, queue_name: str, stored: StoredMessage, requeue: Optional[bool]) -> None:
        """Apply an ack (``requeue=None``) or a nack to a delivered message."""
        queue = self.queues[queue_name]
        if requeue is None:
            self.acks.append(stored.message_id)
        elif requeue:
            self.nacks_requeue.append(stored.message_id)
            stored.redelivered = True
            queue.ready.appendleft(stored)
        else:
            self.nacks_dropped.append(stored.message_id)
            dlx = queue.arguments.get("x-dead-letter-exchange")
            if dlx:
                key = queue.arguments.get("x-dead-letter-routing-key", stored.routing_key)
                dead = StoredMessage(**{**stored.__dict__, "headers": dict(stored.headers)})
                dead.headers["x-first-death-queue"] = queue_name
                dead.routing_key = key
                self.dead_lettered.append(stored.message_id)
                self.route(dlx, key, dead)
            else:
                self.discarded.append(stored.message_id)
        self.dispatch(queue_name)

    def connection(self) -> "FakeConnection":
        return FakeConnection(self)


class FakeIncomingMessage:
    def __init__(self, channel: "FakeChannel", tag: int, stored: StoredMessage) -> None:
        self._channel = channel
        self._stored = stored
        self.delivery_tag = tag
        self.body = stored.body
        self.content_type = stored.content_type
        self.content_encoding = stored.content_encoding
        self.delivery_mode = stored.delivery_mode
        self.message_id = stored.message_id
        self.timestamp = stored.timestamp
        self.type = stored.type
        self.headers = dict(stored.headers)
        self.routing_key = stored.routing_key
        self.redelivered = stored.redelivered

    async def ack(self, multiple: bool = False) -> None:
        self._channel.settle(self.delivery_tag, None)

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        self._channel.settle(self.delivery_tag, requeue)

    async def reject(self, requeue: bool = False) -> None:
        self._channel.settle(self.delivery_tag, requeue)


class FakeExchange:
    def __init__(self, channel: "FakeChannel", name: str) -> None:
        self.channel = channel
        self.name = name

    async def publish(self, message: Any, routing_key: str, *, mandatory: bool = True, **_: Any) -> None:
        self.channel.ensure_open()
        stored = StoredMessage.from_message(message, routing_key)
        routed = self.channel.broker.route(self.name, routing_key, stored)
        if routed == 0:
            if mandatory and self.channel.on_return_raises:
                raise DeliveryError(stored, None)
            self.channel.broker.discarded.append(stored.message_id)


@dataclass
class DeclarationResult:
    message_count: int
    consumer_count: int


class FakeQueue:
    def __init__(self, channel: "FakeChannel", name: str) -> None:
        self.channel = channel
        self.name = name
        state = channel.broker.queues[name]
        self.declaration_result = DeclarationResult(len(state.ready), len(state.consumers))

    async def bind(self, exchange: Any, routing_key: str = "", **_: Any) -> None:
        name = exchange if isinstance(exchange, str) else exchange.name
        self.channel.broker.exchanges[name].bindings.setdefault(routing_key, set()).add(self.name)

    async def consume(self, callback: Callable[[Any], Awaitable[Any]], no_ack: bool = False, **_: Any) -> str:
        assert not no_ack, "engine must never auto-ack"
        self.channel.ensure_open()
        consumer = ConsumerState(f"ctag-{next(self.channel.broker._tags)}", self.channel, self.name, callback)
        self.channel.broker.queues[self.name].consumers.append(consumer)
        self.channel.consumers.append(consumer)
        self.channel.broker.dispatch(self.name)
        return consumer.tag

    async def cancel(self, consumer_tag: str, **_: Any) -> None:
        state = self.channel.broker.queues[self.name]
        state.consumers = [c for c in state.consumers if c.tag != consumer_tag]

    async def get(self, no_ack: bool = False, fail: bool = True, **_: Any) -> Optional[FakeIncomingMessage]:
        state = self.channel.broker.queues[self.name]
        if not state.ready:
            if fail:
                raise LookupError("queue empty")
            return None
        stored = state.ready.popleft()
        incoming = self.channel.track(self.name, stored, None)
        if no_ack:
            self.channel.settle(incoming.delivery_tag, None)
        return incoming


class FakeChannel:
    def __init__(self, broker: FakeBroker, publisher_confirms: bool, on_return_raises: bool) -> None:
        self.broker = broker
        self.publisher_confirms = publisher_confirms
        self.on_return_raises = on_return_raises
        self.prefetch_count = 0
        self.is_closed = False
        self.consumers: list[ConsumerState] = []
        self._unacked: dict[int, tuple[str, StoredMessage, Optional[ConsumerState]]] = {}
        self._next_tag = itertools.count(1)
        self.default_exchange = FakeExchange(self, "")

    def ensure_open(self) -> None:
        if self.is_closed:
            raise ChannelInvalidStateError("channel closed")

    def track(self, queue_name: str, stored: StoredMessage, consumer: Optional[ConsumerState]) -> FakeIncomingMessage:
        tag = next(self._next_tag)
        self._unacked[tag] = (queue_name, stored, consumer)
        if consumer is not None:
            consumer.unacked += 1
        return FakeIncomingMessage(self, tag, stored)

    def settle(self, tag: int, requeue: Optional[bool]) -> None:
        self.ensure_open()
        if tag not in self._unacked:
            raise ChannelPreconditionFailed(406, f"PRECONDITION_FAILED - unknown delivery tag {tag}")
        queue_name, stored, consumer = self._unacked.pop(tag)
        if consumer is not None:
            consumer.unacked -= 1
        self.broker.settle(queue_name, stored, requeue)

    async def set_qos(self, prefetch_count: int = 0, **_: Any) -> None:
        self.prefetch_count = prefetch_count

    async def declare_exchange(self, name: str, type: ExchangeType = ExchangeType.DIRECT, durable: bool = False, auto_delete: bool = False, **_: Any) -> FakeExchange:
        self.ensure_open()
        existing = self.broker.exchanges.get(name)
        if existing is None:
            self.broker.exchanges[name] = ExchangeState(name, ExchangeType(type), durable)
        elif existing.type != ExchangeType(type) or existing.durable != durable:
            raise ChannelPreconditionFailed(406, f"PRECONDITION_FAILED - inequivalent arg for exchange '{name}'")
        return FakeExchange(self, name)

    async def get_exchange(self, name: str, *, ensure: bool = True) -> FakeExchange:
        if ensure and name not in self.broker.exchanges:
            raise ChannelNotFoundEntity(404, f"NOT_FOUND - no exchange '{name}'")
        return FakeExchange(self, name)

    async def declare_queue(
        self,
        name: str,
        *,
        durable: bool = False,
        exclusive: bool = False,
        passive: bool = False,
        auto_delete: bool = False,
        arguments: Optional[dict] = None,
        **_: Any,
    ) -> FakeQueue:
        self.ensure_open()
        existing = self.broker.queues.get(name)
        if passive:
            if existing is None:
                raise ChannelNotFoundEntity(404, f"NOT_FOUND - no queue '{name}'")
            return FakeQueue(self, name)
        arguments = dict(arguments or {})
        if existing is None:
            self.broker.queues[name] = QueueState(name, durable, arguments)
        elif existing.durable != durable or existing.arguments != arguments:
            raise ChannelPreconditionFailed(406, f"PRECONDITION_FAILED - inequivalent arg for queue '{name}'")
        return FakeQueue(self, name)

    async def close(self) -> None:
        if self.is_closed:
            return
        self.is_closed = True
        touched = set()
        for consumer in self.consumers:
            state = self.broker.queues[consumer.queue]
            if consumer in state.consumers:
                state.consumers.remove(consumer)
        for queue_name, stored, consumer in reversed(list(self._unacked.values())):
            stored.redelivered = True
            self.broker.queues[queue_name].ready.appendleft(stored)
            touched.add(queue_name)
        self._unacked.clear()
        for queue_name in touched:
            self.broker.dispatch(queue_name)


class CallbackSet(set):
    def __call__(self, *args: Any) -> None:
        for cb in list(self):
            cb(*args)


class FakeConnection:
    def __init__(self, broker: FakeBroker) -> None:
        self.broker = broker
        self.is_closed = False
        self.channels: list[FakeChannel] = []
        self.reconnect_callbacks = CallbackSet()

    async def channel(self, publisher_confirms: bool = True, on_return_raises: bool = False) -> FakeChannel:
        if self.is_closed:
            raise ChannelInvalidStateError("connection closed")
        channel = FakeChannel(self.broker, publisher_confirms, on_return_raises)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        for channel in self.channels:
            await channel.close()
        self.is_closed = True


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        dead_letter_exchange="marketing_dlx",
        stats_interval_s=0,
        drain_timeout_s=1.0,
        max_retries=3,
        retry_delays_ms=[],
        unroutable_policy="drop",
        missing_dead_letter_policy="drop",
    )


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def connection(broker: FakeBroker, settings: Settings) -> BrokerConnection:
    return BrokerConnection(settings, connection=broker.connection())
