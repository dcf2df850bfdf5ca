"""Print queue depth and consumer count for the work queues as JSON.

Uses passive declarations, so it never creates or modifies a queue.

Example:
    uv run python -m scripts.stats
    uv run python -m scripts.stats --queue sms_queue --queue sms_queue.dlq
"""

import argparse
import asyncio
import datetime as _dt
import json

from marketing_mq.config import Settings
from marketing_mq.rabbit import BrokerConnection
from marketing_mq.stats import collect_queue_stats


async def main(queue_names: list[str], settings: Settings) -> None:
    async with BrokerConnection(settings) as broker:
        stats = await collect_queue_stats(broker, queue_names)
    print(json.dumps({
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "queues": [
            {"name": s.name, "messageCount": s.message_count, "consumerCount": s.consumer_count}
            for s in stats
        ],
    }))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Show queue statistics")
    parser.add_argument("--queue", action="append", help="Queue to inspect (repeatable)")
    args = parser.parse_args()
    settings = Settings()
    asyncio.run(main(args.queue or settings.queue_names, settings))
