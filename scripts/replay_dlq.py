"""
Replay dead-lettered messages back into the marketing exchange.

- Pulls messages from ``<queue>.dlq`` one at a time (``basic.get``, manual ack)
- Republishes each to the exchange with the kind's routing key, the retry
  header reset to 0 and ``x-replayed-from-dlq`` set
- Acks the dead-letter copy only after the broker confirmed the republish
- Messages whose kind cannot be routed are left in the dead-letter queue

Usage examples:
- See how many SMS messages are waiting:
  uv run python -m scripts.replay_dlq --kind sms --dry-run

- Replay a bounded batch of email messages:
  uv run python -m scripts.replay_dlq --kind email --limit 50
"""

import argparse
import asyncio
import logging

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractIncomingMessage
from aio_pika.exceptions import ChannelNotFoundEntity

from marketing_mq.config import Settings
from marketing_mq.constants import HEADER_REPLAYED, HEADER_RETRY_COUNT, dead_letter_queue_name
from marketing_mq.errors import TopologyError
from marketing_mq.metrics import DLQ_REPLAY_TOTAL
from marketing_mq.rabbit import BrokerConnection


logger = logging.getLogger("scripts.replay_dlq")

# Added by the broker when dead-lettering; meaningless once replayed
_BROKER_HEADERS = ("x-death", "x-first-death-exchange", "x-first-death-queue", "x-first-death-reason")


def replay_copy(message: AbstractIncomingMessage) -> Message:
    """Build the republished copy of a dead-lettered message."""
    headers = {k: v for k, v in (message.headers or {}).items() if k not in _BROKER_HEADERS}
    headers[HEADER_RETRY_COUNT] = 0
    headers[HEADER_REPLAYED] = True
    return Message(
        body=message.body,
        content_type=message.content_type,
        content_encoding=message.content_encoding,
        delivery_mode=DeliveryMode.PERSISTENT,
        message_id=message.message_id,
        timestamp=message.timestamp,
        type=message.type,
        headers=headers,
    )


async def replay(broker: BrokerConnection, settings: Settings, kind: str, limit: int, *, dry_run: bool) -> int:
    """Move up to ``limit`` messages from the kind's dead-letter queue back to the exchange.

    Returns the number of messages replayed (or, for a dry run, the number
    waiting in the dead-letter queue).
    """
    dlq_name = dead_letter_queue_name(settings.queue_for(kind))
    channel = await broker.channel(publisher_confirms=True)
    try:
        try:
            dlq = await channel.declare_queue(dlq_name, passive=True)
        except ChannelNotFoundEntity as exc:
            raise TopologyError(f"dead-letter queue '{dlq_name}' does not exist", entity=dlq_name) from exc

        waiting = dlq.declaration_result.message_count
        if dry_run:
            print(f"Dry-run: {waiting} messages in '{dlq_name}', would replay {min(waiting, limit)}")
            return waiting

        exchange = await channel.get_exchange(settings.exchange_name)
        skipped: list[AbstractIncomingMessage] = []
        replayed = 0
        total = min(waiting, limit)
        while replayed + len(skipped) < limit:
            message = await dlq.get(no_ack=False, fail=False)
            if message is None:
                break
            try:
                routing_key = settings.routing_key_for(message.type or "")
            except ValueError:
                logger.warning("Message %s has unknown kind %r; leaving it in '%s'", message.message_id, message.type, dlq_name)
                skipped.append(message)
                continue
            await exchange.publish(replay_copy(message), routing_key=routing_key)
            await message.ack()
            replayed += 1
            DLQ_REPLAY_TOTAL.labels(queue=dlq_name).inc()
            print(f"[{replayed}/{total}] Replayed {message.message_id}")

        for message in skipped:
            await message.nack(requeue=True)
        return replayed
    finally:
        if not channel.is_closed:
            await channel.close()


async def main(args: argparse.Namespace, settings: Settings) -> None:
    async with BrokerConnection(settings) as broker:
        count = await replay(broker, settings, args.kind.upper(), args.limit, dry_run=args.dry_run)
    if not args.dry_run:
        print(f"Replayed {count} messages")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay dead-lettered messages")
    parser.add_argument("--kind", choices=["sms", "email"], required=True)
    parser.add_argument("--limit", type=int, default=1)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    settings = Settings()
    logging.basicConfig(level=settings.log_level.upper())
    asyncio.run(main(args, settings))
