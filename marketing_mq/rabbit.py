"""RabbitMQ connection handle.

This module wraps ``aio_pika`` to provide:
- A robust connection with optional TLS/mTLS support
- Bounded retry/backoff for the initial connect
- Automatic reconnect at a fixed interval once connected, with hooks that
  re-declare topology after every reconnect
- An owned ``BrokerConnection`` handle passed to publishers, consumers and
  the topology manager instead of a process-global connection

Example:
    >>> async with BrokerConnection(Settings()) as broker:
    ...     channel = await broker.channel()
"""

import asyncio
import logging
import ssl
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.exceptions import AMQPConnectionError, ChannelInvalidStateError

from marketing_mq.config import Settings
from marketing_mq.errors import BrokerConnectionError


logger = logging.getLogger(__name__)

ReconnectHook = Callable[[AbstractChannel], Awaitable[Any]]

# Exceptions that mean "the broker is not reachable right now"
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    AMQPConnectionError,
    ChannelInvalidStateError,
    ConnectionError,
    OSError,
)


def _build_ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

    Honors ``RABBITMQ_SSL_*`` flags in ``Settings``. When verification is
    disabled (dev/local), hostname checks and certificate verification are
    relaxed.
    """
    scheme = urlsplit(settings.rabbitmq_url).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    context = ssl.create_default_context(cafile=settings.rabbitmq_ssl_ca_path or None)
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        context.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context.verify_mode = ssl.CERT_REQUIRED
    return context


async def connect(settings: Settings | None = None) -> AbstractRobustConnection:
    """Create a robust AMQP connection with optional TLS/mTLS and retry/backoff.

    RabbitMQ may not be ready yet when containers start together, so the
    first connect is retried ``connect_attempts`` times with exponential
    backoff capped at ``connect_max_delay_ms``. Once connected, ``aio_pika``
    reconnects on its own every ``reconnect_interval_s`` seconds.

    Raises ``BrokerConnectionError`` when every attempt failed.
    """
    settings = settings or Settings()
    ssl_context = _build_ssl_context(settings)
    kwargs: dict[str, Any] = {
        "reconnect_interval": settings.reconnect_interval_s,
        "client_properties": {"connection_name": settings.connection_name},
    }
    if ssl_context is not None:
        kwargs["ssl"] = True
        kwargs["ssl_context"] = ssl_context

    delay_ms = settings.connect_base_delay_ms
    last_exc: BaseException | None = None
    for attempt in range(1, settings.connect_attempts + 1):
        try:
            return await aio_pika.connect_robust(settings.rabbitmq_url, **kwargs)
        except CONNECTION_ERRORS as exc:
            last_exc = exc
            logger.warning(
                "RabbitMQ connect attempt %d/%d failed: %s", attempt, settings.connect_attempts, exc
            )
            if attempt == settings.connect_attempts:
                break
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(int(delay_ms * 2), settings.connect_max_delay_ms)
    raise BrokerConnectionError(f"RabbitMQ unreachable after {settings.connect_attempts} attempts: {last_exc}")


class BrokerConnection:
    """Process-wide broker connection with explicit open/close.

    Purpose:
    - Own the single heavyweight AMQP connection of a process
    - Hand out lightweight channels (each publisher/consumer owns one)
    - Re-run registered hooks (typically topology declaration) after every
      automatic reconnect

    Properties:
    - ``settings``: configuration used to connect
    - ``is_open``: True while the underlying connection is usable

    Example:
    ```python
    broker = BrokerConnection(settings)
    await broker.open()
    broker.add_reconnect_hook(lambda ch: ensure_default_topology(ch, settings))
    ...
    await broker.close()
    ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        connection: AbstractRobustConnection | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._connection = connection
        self._hooks: list[ReconnectHook] = []
        self._recovery_tasks: set[asyncio.Task] = set()
        if connection is not None:
            self._register_reconnect_callback(connection)

    @property
    def is_open(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    @property
    def connection(self) -> AbstractRobustConnection:
        if self._connection is None:
            raise BrokerConnectionError("Broker connection is not open")
        return self._connection

    async def open(self) -> "BrokerConnection":
        if self._connection is None or self._connection.is_closed:
            self._connection = await connect(self.settings)
            self._register_reconnect_callback(self._connection)
            logger.info("Connected to RabbitMQ as %s", self.settings.connection_name)
        return self

    async def close(self) -> None:
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
            logger.info("Disconnected from RabbitMQ")
        self._connection = None

    async def __aenter__(self) -> "BrokerConnection":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def channel(self, publisher_confirms: bool = False, on_return_raises: bool = False) -> AbstractChannel:
        """Open a new channel, mapping broker outages to ``BrokerConnectionError``."""
        try:
            return await self.connection.channel(
                publisher_confirms=publisher_confirms, on_return_raises=on_return_raises
            )
        except CONNECTION_ERRORS as exc:
            raise BrokerConnectionError(f"Could not open channel: {exc}") from exc

    def add_reconnect_hook(self, hook: ReconnectHook) -> None:
        """Register a coroutine run with a fresh channel after each reconnect."""
        self._hooks.append(hook)

    def _register_reconnect_callback(self, connection: AbstractRobustConnection) -> None:
        callbacks = getattr(connection, "reconnect_callbacks", None)
        if callbacks is not None:
            callbacks.add(self._on_reconnect)

    def _on_reconnect(self, *_args: Any, **_kwargs: Any) -> None:
        logger.warning("RabbitMQ connection re-established; recovering topology")
        task = asyncio.get_running_loop().create_task(self.run_reconnect_hooks(), name="topology-recovery")
        self._recovery_tasks.add(task)
        task.add_done_callback(self._recovery_done)

    def _recovery_done(self, task: "asyncio.Task[None]") -> None:
        self._recovery_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Topology recovery after reconnect failed: %s", exc)

    async def wait_recovered(self) -> None:
        """Wait for topology recovery tasks started by reconnects."""
        while self._recovery_tasks:
            await asyncio.gather(*self._recovery_tasks, return_exceptions=True)

    async def run_reconnect_hooks(self) -> None:
        if not self._hooks:
            return
        channel = await self.channel()
        try:
            for hook in self._hooks:
                try:
                    await hook(channel)
                except Exception:  # noqa: BLE001
                    logger.exception("Topology recovery hook failed")
        finally:
            await channel.close()
