"""RabbitMQ helpers for the billing consumer.

This module wraps ``aio_pika`` to provide:
- A robust connection with optional TLS and automatic recovery
- ``BrokerSession``: one connection, one channel, prefetch 1, and a single
  lock around every channel mutation (ack, nack, cancel, close)
- Topology declaration for the consumer queue and its dead-letter pair

Example:
    >>> async with BrokerSession(load_broker_config()) as session:
    ...     loop = await session.start_consuming(None, sink.save_message)
    ...     await stop_event.wait()
"""

from __future__ import annotations

import asyncio
import os
import ssl
from typing import Any, Optional

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractQueue

from billing_consumer.config import BrokerConfig, ConfigurationError
from billing_consumer.consumer import (
    ConsumptionLoop,
    Delivery,
    DeliveryAlreadySettled,
    Disposition,
    Handler,
)
from billing_consumer.log import LogSink, best_effort


# One unacknowledged message per channel: strictly sequential processing
PREFETCH_COUNT = 1

RABBITMQ_SSL_CA_PATH: str = os.getenv("RABBITMQ_SSL_CA_PATH", "")


def build_ssl_context(config: BrokerConfig) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` when ``use_tls`` is set, else ``None``.

    The certificate chain is always verified. Hostname checking is off, so a
    server-name mismatch is the only tolerated certificate problem.
    """
    if not config.use_tls:
        return None
    context = ssl.create_default_context(cafile=RABBITMQ_SSL_CA_PATH or None)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_REQUIRED
    return context


async def connect(config: BrokerConfig) -> AbstractConnection:
    """Open a connection described by ``config``.

    With ``automatic_recovery_enabled`` this is ``aio_pika.connect_robust``:
    after a network partition or broker restart the connection, channel, QoS
    and consumers are restored every ``network_recovery_interval_seconds``.
    Failures of the initial connect propagate to the caller.
    """
    tuning = config.connection_settings
    ssl_context = build_ssl_context(config)
    kwargs: dict[str, Any] = {
        "host": config.host_name,
        "port": config.port,
        "login": config.user_name,
        "password": config.password,
        "virtualhost": config.virtual_host,
        "ssl": ssl_context is not None,
        "ssl_context": ssl_context,
        "timeout": tuning.requested_connection_timeout_seconds,
        "client_properties": {"connection_name": config.connection_name},
        "heartbeat": tuning.requested_heartbeat_seconds,
    }
    if tuning.automatic_recovery_enabled:
        return await aio_pika.connect_robust(
            reconnect_interval=tuning.network_recovery_interval_seconds, **kwargs
        )
    return await aio_pika.connect(**kwargs)


async def declare_topology(channel: AbstractChannel, config: BrokerConfig) -> AbstractQueue:
    """Declare the consumer queue, its exchange binding and the DLX/DLQ pair.

    - Queue: durable, ``queue_arguments`` plus ``x-dead-letter-exchange`` when a DLX is set
    - Exchange: direct, bound with ``routing_key`` (skipped when no exchange is configured)
    - DLX/DLQ: direct exchange and durable queue for dead-lettered messages
    """
    arguments: dict[str, Any] = dict(config.queue_arguments)
    if config.dead_letter_exchange:
        dlx = await channel.declare_exchange(config.dead_letter_exchange, ExchangeType.DIRECT, durable=True)
        arguments.setdefault("x-dead-letter-exchange", config.dead_letter_exchange)
        if config.dead_letter_queue:
            dlq = await channel.declare_queue(config.dead_letter_queue, durable=True)
            await dlq.bind(dlx, routing_key=config.routing_key)

    queue = await channel.declare_queue(config.queue_name, durable=True, arguments=arguments or None)
    if config.exchange_name:
        exchange = await channel.declare_exchange(config.exchange_name, ExchangeType.DIRECT, durable=True)
        await queue.bind(exchange, routing_key=config.routing_key)
    return queue


class BrokerSession:
    """Exclusive owner of one broker connection and one channel.

    Purpose:
    - Connect (TLS, automatic recovery) and apply prefetch 1
    - Check the queue passively and register a manual-ack consumer
    - Serialize ack, nack, cancel and close behind one ``asyncio.Lock``

    Lifecycle:
    - ``await session.open()`` or ``async with session``; a failure while
      opening releases whatever was already open before re-raising
    - ``await session.close()`` is idempotent and safe after a partial open

    Properties:
    - `config`: the immutable ``BrokerConfig``
    - `shutdown_grace_seconds`: how long ``close`` waits for an in-flight handler
    """

    def __init__(
        self,
        config: BrokerConfig,
        log: Optional[LogSink] = None,
        shutdown_grace_seconds: Optional[float] = 30.0,
    ) -> None:
        if config is None:
            raise ConfigurationError("Broker configuration is required.")
        if not isinstance(config, BrokerConfig):
            raise ConfigurationError(
                f"Expected {BrokerConfig.__name__}, got {type(config).__name__}."
            )
        self.config = config
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._log = best_effort(log)
        self._lock = asyncio.Lock()
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._loop: Optional[ConsumptionLoop] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._channel is not None and not self._channel.is_closed and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def open(self) -> "BrokerSession":
        """Connect, open the channel and apply QoS."""
        if self._closed:
            raise RuntimeError("Broker session is closed.")
        if self._channel is not None:
            return self
        try:
            self._connection = await connect(self.config)
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=PREFETCH_COUNT)
        except BaseException:
            await self.close()
            raise
        self._log.record(
            f"[*] Connected to {self.config.host_name}:{self.config.port}{self.config.virtual_host} "
            f"as '{self.config.connection_name}' (prefetch={PREFETCH_COUNT})."
        )
        return self

    async def __aenter__(self) -> "BrokerSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_channel(self) -> AbstractChannel:
        if self._closed or self._channel is None:
            raise RuntimeError("Broker session is not open.")
        return self._channel

    async def start_consuming(self, queue_name: Optional[str], handler: Handler) -> ConsumptionLoop:
        """Check the queue exists and start delivering messages to ``handler``.

        ``queue_name`` defaults to ``config.queue_name``. The passive check has
        no side effects; a missing queue raises and the session stays unusable.
        """
        channel = self._require_channel()
        if self._loop is not None:
            raise RuntimeError("Consumer already started on this session.")
        name = queue_name or self.config.queue_name

        queue = await channel.declare_queue(name, passive=True)
        waiting = queue.declaration_result.message_count
        self._log.record(f"[*] Queue '{name}' has {waiting} messages waiting.")
        self._log.record("[*] Starting consumption...")

        loop = ConsumptionLoop(self, handler, log=self._log, capacity=PREFETCH_COUNT)
        loop.start()
        self._queue = queue
        self._loop = loop
        self._consumer_tag = await queue.consume(loop.on_message, no_ack=False)
        return loop

    def _settle(self, delivery: Delivery, disposition: Disposition) -> bool:
        try:
            delivery.settle(disposition)
        except DeliveryAlreadySettled as exc:
            self._log.record(f"[!] {exc}; {disposition.value} not sent.")
            return False
        return True

    async def acknowledge(self, delivery: Delivery) -> None:
        async with self._lock:
            if self._settle(delivery, Disposition.ACK):
                await delivery.handle.ack()

    async def negative_acknowledge_requeue(self, delivery: Delivery) -> None:
        # Always requeue: losing a message is worse than processing it twice
        async with self._lock:
            if self._settle(delivery, Disposition.NACK_REQUEUE):
                await delivery.handle.nack(requeue=True)

    async def close(self) -> None:
        """Stop consuming, then close channel and connection (idempotent)."""
        if self._closed:
            return
        self._closed = True

        if self._queue is not None and self._consumer_tag is not None:
            async with self._lock:
                try:
                    await self._queue.cancel(self._consumer_tag)
                except Exception as exc:  # noqa: BLE001
                    self._log.record(f"[!] Error cancelling consumer: {exc!r}")
        if self._loop is not None:
            await self._loop.stop(grace=self.shutdown_grace_seconds)

        async with self._lock:
            for what, resource in (("channel", self._channel), ("connection", self._connection)):
                if resource is None or resource.is_closed:
                    continue
                try:
                    await resource.close()
                except Exception as exc:  # noqa: BLE001
                    self._log.record(f"[!] Error closing {what}: {exc!r}")
        self._log.record("[*] Broker session closed.")
