"""
Topology initializer.

- Declares the marketing exchange, SMS/email queues and their bindings
- Declares the dead-letter exchange and ``<queue>.dlq`` queues when
  ``DEAD_LETTER_EXCHANGE`` is set

Supports a best-effort mode via ``--best-effort`` or
``INIT_TOPOLOGY_BEST_EFFORT=1`` which skips errors if RabbitMQ is not
reachable. A conflicting existing definition is never skipped.

Examples:
    uv run python -m scripts.init_topology
    uv run python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import logging
import os

from marketing_mq.config import Settings
from marketing_mq.errors import BrokerConnectionError
from marketing_mq.rabbit import BrokerConnection
from marketing_mq.topology import ensure_default_topology


async def main(settings: Settings, best_effort: bool) -> None:
    """Declare the configured topology.

    When ``best_effort`` is True, an unreachable broker is reported on
    stdout and the function returns successfully.
    """
    broker = BrokerConnection(settings)
    try:
        await broker.open()
    except BrokerConnectionError as exc:
        if best_effort:
            print(f"[init_topology] Skipping: RabbitMQ not reachable ({exc})")
            return
        raise

    try:
        channel = await broker.channel()
        result = await ensure_default_topology(channel, settings)
        await channel.close()
    finally:
        await broker.close()

    for binding in result.bindings:
        print(f"[init_topology] {binding.exchange} --{binding.routing_key}--> {binding.queue}")
    for dlq in result.dead_letter_queues:
        print(f"[init_topology] dead letters -> {dlq}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare RabbitMQ topology for marketing notifications")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args()

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    settings = Settings()
    logging.basicConfig(level=settings.log_level.upper())
    asyncio.run(main(settings, bool(args.best_effort or best_effort_env)))
