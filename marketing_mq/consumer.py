"""
Consumer loop with manual acknowledgment, bounded prefetch and bounded retries.

- Subscribes to one queue with ``no_ack=False`` (never auto-ack)
- Bounds unresolved deliveries with AMQP QoS ``prefetch_count``
- Hands deliveries from the broker callback to an internal bounded buffer
  drained by ``prefetch_count`` worker tasks
- Resolves every delivery exactly once: ACK on success, requeue below the
  retry ceiling, NACK without requeue for poison messages and exhausted
  retries
- Drains in-flight deliveries on shutdown, then closes the channel so the
  broker requeues whatever is still unresolved
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import ChannelNotFoundEntity

from marketing_mq.config import Settings
from marketing_mq.constants import (
    EVENT_ACKED,
    EVENT_DEAD_LETTER,
    EVENT_DROPPED,
    EVENT_POISON,
    EVENT_RECEIVED,
    EVENT_REDELIVERED,
    EVENT_RELEASED,
    EVENT_REQUEUED,
    EVENT_SHUTDOWN,
    HEADER_DEAD_LETTER_REASON,
    HEADER_RETRY_COUNT,
    OUTCOME_ACKED,
    OUTCOME_NACKED_DROPPED,
    OUTCOME_NACKED_REQUEUE,
    OUTCOME_RELEASED,
    STATE_IDLE,
    STATE_LISTENING,
    STATE_SHUTTING_DOWN,
    STATE_STOPPED,
)
from marketing_mq.envelope import EmailEnvelope, SmsEnvelope, decode_envelope
from marketing_mq.errors import DecodeError, DeliveryAlreadyResolved, ProcessingError, TopologyError
from marketing_mq.metrics import (
    CONSUMER_DELIVERY_TOTAL,
    CONSUMER_DLQ_TOTAL,
    CONSUMER_POISON_TOTAL,
    CONSUMER_PROCESS_LATENCY_SECONDS,
    CONSUMER_REDELIVERED_TOTAL,
    CONSUMER_RETRY_TOTAL,
)
from marketing_mq.rabbit import CONNECTION_ERRORS, BrokerConnection
from marketing_mq.retry import RetryDecision, RetryPolicy, retry_count_from_headers
from marketing_mq.stats import ConsumerStats, report_periodically
from marketing_mq.tracing import continued_span, get_tracer


logger = logging.getLogger(__name__)

EnvelopeT = Union[SmsEnvelope, EmailEnvelope]
ProcessResult = Optional[bool]
ProcessFn = Callable[[EnvelopeT], Union[ProcessResult, Awaitable[ProcessResult]]]


class Delivery:
    """Broker handle for one received message; resolved exactly once.

    Attributes:
    - ``delivery_tag``: broker-assigned, channel-scoped tag
    - ``redelivered``: broker flag for messages handed out before
    - ``retry_count``: retries already spent (from the delivery headers)
    - ``envelope``: decoded envelope, ``None`` until decoding succeeded
    - ``outcome``: ``None`` while unresolved, then one of the ``OUTCOME_*`` names
    """

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self.message = message
        self.delivery_tag = message.delivery_tag
        self.redelivered = bool(message.redelivered)
        self.headers: dict[str, Any] = dict(message.headers or {})
        self.retry_count = retry_count_from_headers(self.headers)
        self.message_id = message.message_id
        self.envelope: Optional[EnvelopeT] = None
        self.outcome: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not None

    def _resolve(self, outcome: str) -> None:
        if self.outcome is not None:
            raise DeliveryAlreadyResolved(self.delivery_tag)
        self.outcome = outcome

    async def ack(self) -> None:
        self._resolve(OUTCOME_ACKED)
        await self.message.ack(multiple=False)

    async def nack(self, requeue: bool) -> None:
        self._resolve(OUTCOME_RELEASED if requeue else OUTCOME_NACKED_DROPPED)
        await self.message.nack(multiple=False, requeue=requeue)

    async def requeue_with(self, channel: AbstractChannel, queue_name: str, retry_count: int) -> bool:
        """Requeue with an incremented retry header.

        ``basic.nack`` cannot change headers, so the copy is republished
        (persistent, confirmed) straight to the queue and only then is the
        original acked. A crash in between yields a duplicate, never a loss.

        Returns ``False`` when the broker refused the copy; the original is
        then NACKed without requeue and dead-lettered.
        """
        self._resolve(OUTCOME_NACKED_REQUEUE)
        headers = dict(self.headers)
        headers[HEADER_RETRY_COUNT] = retry_count
        msg = self.message
        copy = Message(
            body=msg.body,
            content_type=msg.content_type,
            content_encoding=msg.content_encoding,
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=msg.message_id,
            timestamp=msg.timestamp,
            type=msg.type,
            headers=headers,
        )
        try:
            await channel.default_exchange.publish(copy, routing_key=queue_name)
        except CONNECTION_ERRORS:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Republish of %s refused (%s); dead-lettering the original", self.message_id, exc)
            self.outcome = OUTCOME_NACKED_DROPPED
            await msg.nack(multiple=False, requeue=False)
            return False
        await msg.ack(multiple=False)
        return True


class ConsumerLoop:
    """Consume one queue and resolve every delivery to ACK or NACK.

    Concurrency model:
    - ``prefetch_count`` is applied as AMQP QoS, so the broker never pushes
      more than ``prefetch_count`` unresolved deliveries to this consumer
    - The broker callback only buffers the delivery; ``prefetch_count``
      worker tasks process them, so processing is concurrent only when
      ``prefetch_count > 1`` and ``process_fn`` must then be safe for
      concurrent calls
    - Synchronous ``process_fn`` callables run in a worker thread

    ``process_fn`` returns ``True``/``None`` for success and ``False`` for
    failure; raising counts as failure too.

    Example:
    ```python
    stop = asyncio.Event()
    loop = ConsumerLoop(broker, "sms_queue", prefetch_count=1, process_fn=send_sms)
    await loop.start(stop)  # returns after stop.set() and the drain
    ```
    """

    def __init__(
        self,
        connection: BrokerConnection,
        queue_name: str,
        prefetch_count: int,
        process_fn: ProcessFn,
        *,
        policy: RetryPolicy | None = None,
        settings: Settings | None = None,
        stats: ConsumerStats | None = None,
    ) -> None:
        if prefetch_count < 1:
            raise ValueError("prefetch_count must be >= 1")
        self.connection = connection
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count
        self.process_fn = process_fn
        self.settings = settings or connection.settings
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self.stats = stats or ConsumerStats(queue_name)
        self.state = STATE_IDLE
        self._dead_letter_configured = bool(self.settings.dead_letter_exchange)
        self._channel: AbstractChannel | None = None
        self._buffer: asyncio.Queue[AbstractIncomingMessage] | None = None
        self._processing = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._tracer = get_tracer("marketing-worker")

    @property
    def processing(self) -> int:
        return self._processing

    async def start(self, cancel: asyncio.Event | None = None) -> None:
        """Subscribe and process deliveries until ``cancel`` is set, then drain.

        Raises ``TopologyError`` if the queue does not exist or if dead-letter
        topology is required by policy but not configured.
        """
        if self.state != STATE_IDLE:
            raise RuntimeError(f"consumer for '{self.queue_name}' already started (state={self.state})")
        if not self._dead_letter_configured and self.settings.missing_dead_letter_policy == "error":
            raise TopologyError(
                "dead-letter exchange is required by MISSING_DEAD_LETTER_POLICY=error but not configured",
                entity=self.queue_name,
            )
        cancel = cancel or asyncio.Event()

        channel = await self.connection.channel(publisher_confirms=True)
        self._channel = channel
        try:
            await channel.set_qos(prefetch_count=self.prefetch_count)
            try:
                queue = await channel.declare_queue(self.queue_name, passive=True)
            except ChannelNotFoundEntity as exc:
                raise TopologyError(f"queue '{self.queue_name}' does not exist", entity=self.queue_name) from exc

            self._buffer = asyncio.Queue(maxsize=self.prefetch_count)
            workers = [
                asyncio.create_task(self._worker(), name=f"{self.queue_name}-worker-{i}")
                for i in range(self.prefetch_count)
            ]
            stop_reporting = asyncio.Event()
            reporter = None
            if self.settings.stats_interval_s > 0:
                reporter = asyncio.create_task(
                    report_periodically(self.stats, self.settings.stats_interval_s, stop_reporting)
                )

            self.state = STATE_LISTENING
            consumer_tag = None
            try:
                consumer_tag = await queue.consume(self._on_message, no_ack=False)
                logger.info(
                    "Listening on queue '%s' (prefetch=%d, max_retries=%d)",
                    self.queue_name, self.prefetch_count, self.policy.max_retries,
                )
                await cancel.wait()
            finally:
                stop_reporting.set()
                await self._shutdown(queue, consumer_tag, workers)
                if reporter is not None:
                    await reporter
        finally:
            if not channel.is_closed:
                await channel.close()
            self._channel = None
            self.state = STATE_STOPPED
            self.stats.log_summary("Final statistics")

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        if self.state != STATE_LISTENING or self._buffer is None:
            await self._release(message)
            return
        await self._buffer.put(message)

    async def _worker(self) -> None:
        assert self._buffer is not None
        while True:
            message = await self._buffer.get()
            self._processing += 1
            self._idle.clear()
            self.stats.delivery_started()
            try:
                await self._handle(message)
            except asyncio.CancelledError:
                raise
            except CONNECTION_ERRORS as exc:
                # Channel gone: the broker requeues the delivery on its own
                logger.warning("Could not resolve delivery %s: %s", message.delivery_tag, exc)
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected error while handling delivery %s", message.delivery_tag)
            finally:
                self._processing -= 1
                self.stats.delivery_finished()
                if self._processing == 0:
                    self._idle.set()
                self._buffer.task_done()

    async def _handle(self, message: AbstractIncomingMessage) -> None:
        """Decode, process and resolve a single delivery."""
        delivery = Delivery(message)
        details = {"message_id": delivery.message_id, "delivery_tag": delivery.delivery_tag}
        self.stats.record(EVENT_RECEIVED, **details)
        if delivery.redelivered or delivery.retry_count > 0:
            logger.info(
                "Delivery %s is a redelivery (retry attempt %d)", delivery.message_id, delivery.retry_count
            )
            CONSUMER_REDELIVERED_TOTAL.labels(queue=self.queue_name).inc()
            self.stats.record(EVENT_REDELIVERED, retry_count=delivery.retry_count, **details)

        try:
            delivery.envelope = decode_envelope(message.body, message.content_type)
        except DecodeError as exc:
            logger.error("Poison message %s on '%s': %s", delivery.message_id, self.queue_name, exc.reason)
            await delivery.nack(requeue=False)
            CONSUMER_POISON_TOTAL.labels(queue=self.queue_name).inc()
            CONSUMER_DELIVERY_TOTAL.labels(queue=self.queue_name, outcome=OUTCOME_NACKED_DROPPED).inc()
            self.stats.record(EVENT_POISON, reason=exc.reason, **details)
            self._note_discard(delivery, "poison")
            return

        details["message_id"] = delivery.envelope.id
        try:
            await self._process(delivery, message)
        except ProcessingError as exc:
            await self._on_failure(delivery, exc, details)
            return

        await delivery.ack()
        CONSUMER_DELIVERY_TOTAL.labels(queue=self.queue_name, outcome=OUTCOME_ACKED).inc()
        self.stats.record(EVENT_ACKED, **details)
        logger.info("Message %s acknowledged and removed from '%s'", delivery.envelope.id, self.queue_name)

    async def _process(self, delivery: Delivery, message: AbstractIncomingMessage) -> None:
        """Run ``process_fn`` inside a span continuing the producer's trace.

        Raises ``ProcessingError`` on a ``False`` result or any exception.
        """
        envelope = delivery.envelope
        assert envelope is not None
        started = time.perf_counter()
        try:
            with continued_span(
                self._tracer, "process", message.headers,
                message_id=envelope.id, queue=self.queue_name, retry_count=delivery.retry_count,
            ) as span:
                try:
                    if inspect.iscoroutinefunction(self.process_fn):
                        result = await self.process_fn(envelope)
                    else:
                        result = await asyncio.to_thread(self.process_fn, envelope)
                        if inspect.isawaitable(result):
                            result = await result
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    span.record_exception(exc)
                    logger.error("Error processing message %s: %s", envelope.id, exc)
                    raise ProcessingError(envelope.id, str(exc)) from exc
                if result is False:
                    raise ProcessingError(envelope.id)
        finally:
            CONSUMER_PROCESS_LATENCY_SECONDS.labels(queue=self.queue_name).observe(time.perf_counter() - started)

    async def _on_failure(self, delivery: Delivery, exc: ProcessingError, details: dict[str, Any]) -> None:
        decision: RetryDecision = self.policy.decide(delivery.retry_count)
        reason = "retries_exhausted"
        if decision.should_retry:
            if decision.delay_ms > 0:
                await asyncio.sleep(decision.delay_ms / 1000.0)
            assert self._channel is not None
            if await delivery.requeue_with(self._channel, self.queue_name, decision.next_retry_count):
                CONSUMER_RETRY_TOTAL.labels(queue=self.queue_name).inc()
                CONSUMER_DELIVERY_TOTAL.labels(queue=self.queue_name, outcome=OUTCOME_NACKED_REQUEUE).inc()
                self.stats.record(
                    EVENT_REQUEUED, retry_count=decision.next_retry_count, delay_ms=decision.delay_ms, **details
                )
                logger.warning(
                    "Message %s requeued for retry %d/%d", details["message_id"],
                    decision.next_retry_count, decision.max_retries,
                )
                return
            reason = "requeue_refused"
        else:
            await delivery.nack(requeue=False)

        CONSUMER_DLQ_TOTAL.labels(queue=self.queue_name).inc()
        CONSUMER_DELIVERY_TOTAL.labels(queue=self.queue_name, outcome=OUTCOME_NACKED_DROPPED).inc()
        self.stats.record(
            EVENT_DEAD_LETTER, retry_count=delivery.retry_count, error=str(exc), reason=reason, **details
        )
        logger.error(
            "Message %s dead-lettered after %d retries (%s): %s",
            details["message_id"], delivery.retry_count, reason, exc,
        )
        self._note_discard(delivery, reason)

    def _note_discard(self, delivery: Delivery, reason: str) -> None:
        if self._dead_letter_configured:
            return
        logger.warning(
            "No dead-letter exchange configured; message %s discarded (%s)", delivery.message_id, reason
        )
        self.stats.record(
            EVENT_DROPPED,
            message_id=delivery.message_id,
            delivery_tag=delivery.delivery_tag,
            **{HEADER_DEAD_LETTER_REASON: reason},
        )

    async def _release(self, message: AbstractIncomingMessage) -> None:
        """Hand a not-yet-started delivery back to the broker."""
        try:
            await message.nack(multiple=False, requeue=True)
        except CONNECTION_ERRORS as exc:
            logger.warning("Could not release delivery %s: %s", message.delivery_tag, exc)
            return
        CONSUMER_DELIVERY_TOTAL.labels(queue=self.queue_name, outcome=OUTCOME_RELEASED).inc()
        self.stats.record(EVENT_RELEASED, message_id=message.message_id, delivery_tag=message.delivery_tag)

    async def _shutdown(
        self, queue: AbstractQueue, consumer_tag: Optional[str], workers: list[asyncio.Task]
    ) -> None:
        """Stop accepting deliveries, release the buffer and drain in-flight work."""
        self.state = STATE_SHUTTING_DOWN
        logger.info("Shutdown signal received for '%s'; draining", self.queue_name)
        if consumer_tag is not None:
            try:
                await queue.cancel(consumer_tag)
            except CONNECTION_ERRORS as exc:
                logger.warning("Could not cancel subscription on '%s': %s", self.queue_name, exc)

        assert self._buffer is not None
        while not self._buffer.empty():
            message = self._buffer.get_nowait()
            self._buffer.task_done()
            await self._release(message)

        try:
            await asyncio.wait_for(self._idle.wait(), timeout=self.settings.drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Drain timeout after %.1fs; leaving %d deliveries un-acked for the broker to requeue",
                self.settings.drain_timeout_s, self._processing,
            )

        unresolved = self._processing
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self.stats.record(EVENT_SHUTDOWN, unresolved=unresolved)
