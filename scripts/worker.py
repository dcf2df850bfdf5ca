"""
Notification worker.

- Consumes the SMS or email queue (``KIND=sms|email`` or ``--kind``)
- Declares topology at startup and again after every reconnect
- Simulates the gateway call (delay + configurable success rate)
- Stops gracefully on SIGINT/SIGTERM, draining in-flight deliveries

Examples:
    KIND=sms uv run python -m scripts.worker
    WORKER_PREFETCH=8 SIMULATED_SUCCESS_RATE=0.5 uv run python -m scripts.worker --kind email
"""

import argparse
import asyncio
import logging
import os
import random
import signal

from marketing_mq.config import Settings
from marketing_mq.consumer import ConsumerLoop
from marketing_mq.envelope import EmailEnvelope, SmsEnvelope
from marketing_mq.metrics import start_metrics_server
from marketing_mq.rabbit import BrokerConnection
from marketing_mq.topology import ensure_default_topology
from marketing_mq.tracing import start_tracing


logger = logging.getLogger("scripts.worker")


class SimulatedGateway:
    """Stand-in for the SMS/email provider: sleeps, then succeeds at a fixed rate."""

    def __init__(self, success_rate: float, delay_ms: int) -> None:
        self.success_rate = success_rate
        self.delay_ms = delay_ms

    async def _call(self, what: str) -> bool:
        await asyncio.sleep(self.delay_ms / 1000.0)
        if random.random() < self.success_rate:
            logger.info("%s sent successfully (provider: gateway-simulator)", what)
            return True
        logger.warning("%s failed: gateway temporarily unavailable", what)
        return False

    async def send_sms(self, envelope: SmsEnvelope) -> bool:
        logger.info("Sending SMS %s to %s (campaign=%s)", envelope.id, envelope.payload.phone, envelope.campaign)
        return await self._call(f"SMS {envelope.id}")

    async def send_email(self, envelope: EmailEnvelope) -> bool:
        logger.info(
            "Sending email %s to %s subject=%r (campaign=%s)",
            envelope.id, envelope.payload.to, envelope.payload.subject, envelope.campaign,
        )
        return await self._call(f"Email {envelope.id}")


async def run(kind: str, settings: Settings) -> None:
    try:
        start_metrics_server(settings.metrics_port)
        logger.info("Metrics server listening on :%d /metrics", settings.metrics_port)
    except OSError:
        # Already started in this process
        pass
    start_tracing("marketing-worker")

    gateway = SimulatedGateway(
        success_rate=float(os.getenv("SIMULATED_SUCCESS_RATE", "0.95")),
        delay_ms=int(os.getenv("SIMULATED_DELAY_MS", "500")),
    )
    process_fn = gateway.send_sms if kind == "SMS" else gateway.send_email

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with BrokerConnection(settings) as broker:
        channel = await broker.channel()
        await ensure_default_topology(channel, settings)
        await channel.close()
        broker.add_reconnect_hook(lambda ch: ensure_default_topology(ch, settings))

        consumer = ConsumerLoop(
            broker,
            settings.queue_for(kind),
            settings.prefetch_count,
            process_fn,
            settings=settings,
        )
        await consumer.start(stop)


def main() -> None:
    parser = argparse.ArgumentParser(description="Consume SMS or email notifications")
    parser.add_argument("--kind", choices=["sms", "email"], default=os.getenv("KIND", "sms"))
    args = parser.parse_args()

    settings = Settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run(args.kind.upper(), settings))


if __name__ == "__main__":
    main()
