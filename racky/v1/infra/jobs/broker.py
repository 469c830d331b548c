"""
Broker client seam.

The job subsystem talks to the broker only through the ``BrokerConnection``,
``BrokerChannel`` and ``Delivery`` protocols below. Production wires in the
aio-pika adapters; tests substitute an in-memory channel.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import timedelta
from typing import Any, Protocol

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractQueueIterator,
)


class Delivery(Protocol):
    """One message handed to a consumer, settled exactly once."""

    body: bytes

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool) -> None: ...


class BrokerChannel(Protocol):
    """The channel operations the job subsystem uses."""

    async def set_qos(self, prefetch_count: int) -> None: ...

    async def declare_exchange(
        self, name: str, kind: str, durable: bool = True
    ) -> None: ...

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None: ...

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None: ...

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        priority: int,
        expiration_ms: int | None = None,
    ) -> None:
        """Publish a persistent message; raises if the broker refuses it."""
        ...

    def consume(self, queue: str, consumer_tag: str) -> AsyncIterator[Delivery]:
        """Iterate deliveries until ``cancel(consumer_tag)`` or channel loss."""
        ...

    async def cancel(self, consumer_tag: str) -> None: ...

    async def close(self) -> None: ...


class BrokerConnection(Protocol):
    async def channel(self) -> BrokerChannel: ...

    def on_close(self, callback: Callable[[BaseException | None], None]) -> None:
        """Call ``callback`` once when the connection closes or fails."""
        ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[BrokerConnection]]


class AioPikaDelivery:
    def __init__(self, message: AbstractIncomingMessage):
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, requeue: bool) -> None:
        await self._message.nack(requeue=requeue)


class AioPikaChannel:
    """``BrokerChannel`` over one aio-pika channel.

    aio-pika channels are not safe for interleaved writes from many tasks, so
    declare, publish and cancel calls are serialized through one lock.
    """

    def __init__(self, channel: AbstractChannel):
        self._channel = channel
        self._lock = asyncio.Lock()
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._iterators: dict[str, AbstractQueueIterator] = {}

    async def _exchange(self, name: str) -> AbstractExchange:
        if name not in self._exchanges:
            self._exchanges[name] = await self._channel.get_exchange(name, ensure=True)
        return self._exchanges[name]

    async def _queue(self, name: str) -> AbstractQueue:
        if name not in self._queues:
            self._queues[name] = await self._channel.get_queue(name, ensure=True)
        return self._queues[name]

    async def set_qos(self, prefetch_count: int) -> None:
        async with self._lock:
            await self._channel.set_qos(prefetch_count=prefetch_count)

    async def declare_exchange(self, name: str, kind: str, durable: bool = True) -> None:
        async with self._lock:
            self._exchanges[name] = await self._channel.declare_exchange(
                name, aio_pika.ExchangeType(kind), durable=durable
            )

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        async with self._lock:
            self._queues[name] = await self._channel.declare_queue(
                name, durable=durable, arguments=arguments
            )

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        async with self._lock:
            target = await self._queue(queue)
            source = await self._exchange(exchange)
            await target.bind(source, routing_key=routing_key)

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        priority: int,
        expiration_ms: int | None = None,
    ) -> None:
        message = aio_pika.Message(
            body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            priority=priority,
            expiration=(
                timedelta(milliseconds=expiration_ms) if expiration_ms else None
            ),
        )
        async with self._lock:
            target = await self._exchange(exchange)
            # Publisher confirms are on by default: a broker nack raises here
            await target.publish(message, routing_key=routing_key)

    async def consume(
        self, queue: str, consumer_tag: str
    ) -> AsyncIterator[AioPikaDelivery]:
        async with self._lock:
            source = await self._queue(queue)
            iterator = source.iterator(consumer_tag=consumer_tag)
            self._iterators[consumer_tag] = iterator

        try:
            async with iterator:
                async for message in iterator:
                    yield AioPikaDelivery(message)
        finally:
            self._iterators.pop(consumer_tag, None)

    async def cancel(self, consumer_tag: str) -> None:
        iterator = self._iterators.pop(consumer_tag, None)
        if iterator is None:
            return
        async with self._lock:
            await iterator.close()

    async def close(self) -> None:
        if not self._channel.is_closed:
            await self._channel.close()


class AioPikaConnection:
    def __init__(self, connection: AbstractConnection):
        self._connection = connection

    async def channel(self) -> AioPikaChannel:
        return AioPikaChannel(await self._connection.channel())

    def on_close(self, callback: Callable[[BaseException | None], None]) -> None:
        def _closed(*args: Any) -> None:
            # aio-pika passes (sender, exc)
            exc = args[1] if len(args) > 1 else None
            callback(exc if isinstance(exc, BaseException) else None)

        self._connection.close_callbacks.add(_closed)

    async def close(self) -> None:
        if not self._connection.is_closed:
            await self._connection.close()


async def connect_aio_pika(url: str) -> AioPikaConnection:
    """Default connector: one plain (non-robust) aio-pika connection.

    Reconnection is owned by ``BrokerConnectionManager`` so consumers can be
    re-registered with fresh tags after a broker restart.
    """
    return AioPikaConnection(await aio_pika.connect(url))
