"""In-memory stand-ins for the broker seam.

``FakeChannel`` keeps broker state (exchanges, queues, bindings, messages) so
it can be shared across reconnects the way a real broker outlives a client
connection.
"""

import asyncio
import bisect
import itertools
from dataclasses import dataclass, field
from typing import Any


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: ``*`` is one word, ``#`` is zero or more."""

    def match(p: list[str], k: list[str]) -> bool:
        if not p:
            return not k
        head, rest = p[0], p[1:]
        if head == "#":
            return any(match(rest, k[i:]) for i in range(len(k) + 1))
        if not k:
            return False
        if head == "*" or head == k[0]:
            return match(rest, k[1:])
        return False

    return match(pattern.split("."), routing_key.split("."))


@dataclass(order=True)
class FakeMessage:
    sort_key: tuple[int, int]
    exchange: str = field(compare=False)
    routing_key: str = field(compare=False)
    body: bytes = field(compare=False)
    priority: int = field(compare=False)
    expiration_ms: int | None = field(compare=False, default=None)


class FakeDelivery:
    def __init__(self, channel: "FakeChannel", queue: str, message: FakeMessage):
        self._channel = channel
        self.queue = queue
        self.message = message
        self.body = message.body
        self.outcome: str | None = None

    async def ack(self) -> None:
        await self._channel._settle(self, "ack")

    async def nack(self, requeue: bool) -> None:
        await self._channel._settle(self, "requeue" if requeue else "reject")


class FakeChannel:
    def __init__(self):
        self.exchanges: dict[str, str] = {}
        self.queue_arguments: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[FakeMessage]] = {}
        self.bindings: set[tuple[str, str, str]] = set()
        self.published: list[FakeMessage] = []
        self.settlements: list[tuple[str, str]] = []
        self.prefetch_count: int | None = None
        self.publish_error: Exception | None = None
        self.closed = False
        self.active_consumers: dict[str, str] = {}

        self._seq = itertools.count()
        self._cancelled: set[str] = set()
        self._cond = asyncio.Condition()

    # Declarations

    async def set_qos(self, prefetch_count: int) -> None:
        self.prefetch_count = prefetch_count

    async def declare_exchange(self, name: str, kind: str, durable: bool = True) -> None:
        existing = self.exchanges.get(name)
        if existing is not None and existing != kind:
            raise RuntimeError(f"PRECONDITION_FAILED: exchange {name} is {existing}")
        self.exchanges[name] = kind

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        arguments = dict(arguments or {})
        existing = self.queue_arguments.get(name)
        if existing is not None and existing != arguments:
            raise RuntimeError(f"PRECONDITION_FAILED: queue {name} arguments differ")
        self.queue_arguments[name] = arguments
        self.messages.setdefault(name, [])

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        if queue not in self.queue_arguments or exchange not in self.exchanges:
            raise RuntimeError(f"NOT_FOUND: cannot bind {queue} to {exchange}")
        self.bindings.add((queue, exchange, routing_key))

    # Routing

    def route(self, exchange: str, routing_key: str) -> list[str]:
        kind = self.exchanges.get(exchange)
        if kind is None:
            raise RuntimeError(f"NOT_FOUND: exchange {exchange}")

        matched = []
        for queue, bound_exchange, pattern in sorted(self.bindings):
            if bound_exchange != exchange:
                continue
            if kind == "topic" and topic_matches(pattern, routing_key):
                matched.append(queue)
            elif kind == "direct" and pattern == routing_key:
                matched.append(queue)
        return matched

    def _enqueue(self, queue: str, message: FakeMessage) -> None:
        bisect.insort(self.messages[queue], message)

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        priority: int,
        expiration_ms: int | None = None,
    ) -> None:
        if self.publish_error is not None:
            raise self.publish_error

        message = FakeMessage(
            sort_key=(-priority, next(self._seq)),
            exchange=exchange,
            routing_key=routing_key,
            body=body,
            priority=priority,
            expiration_ms=expiration_ms,
        )
        async with self._cond:
            self.published.append(message)
            for queue in self.route(exchange, routing_key):
                self._enqueue(queue, message)
            self._cond.notify_all()

    # Consumption

    async def consume(self, queue: str, consumer_tag: str):
        self.active_consumers[consumer_tag] = queue
        try:
            while True:
                async with self._cond:
                    await self._cond.wait_for(
                        lambda: consumer_tag in self._cancelled
                        or self.closed
                        or bool(self.messages[queue])
                    )
                    if consumer_tag in self._cancelled or self.closed:
                        return
                    message = self.messages[queue].pop(0)
                yield FakeDelivery(self, queue, message)
        finally:
            self.active_consumers.pop(consumer_tag, None)

    async def cancel(self, consumer_tag: str) -> None:
        async with self._cond:
            self._cancelled.add(consumer_tag)
            self._cond.notify_all()

    async def _settle(self, delivery: FakeDelivery, outcome: str) -> None:
        if delivery.outcome is not None:
            raise RuntimeError("PRECONDITION_FAILED: delivery already settled")
        delivery.outcome = outcome

        async with self._cond:
            if outcome == "requeue":
                self._enqueue(delivery.queue, delivery.message)
            elif outcome == "reject":
                arguments = self.queue_arguments.get(delivery.queue, {})
                dead_letter_exchange = arguments.get("x-dead-letter-exchange")
                if dead_letter_exchange:
                    key = arguments.get(
                        "x-dead-letter-routing-key", delivery.message.routing_key
                    )
                    for target in self.route(dead_letter_exchange, key):
                        self._enqueue(target, delivery.message)

            self.settlements.append((delivery.queue, outcome))
            self._cond.notify_all()

    async def wait_for_settlements(self, count: int, timeout: float = 5.0) -> None:
        """Block until ``count`` deliveries have been acked or nacked."""
        async with asyncio.timeout(timeout):
            async with self._cond:
                await self._cond.wait_for(lambda: len(self.settlements) >= count)

    async def close(self) -> None:
        async with self._cond:
            self.closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        self.closed = False


class FakeConnection:
    def __init__(self, channel: FakeChannel):
        self._channel = channel
        self._callbacks = []
        self.closed = False

    async def channel(self) -> FakeChannel:
        self._channel.reopen()
        return self._channel

    def on_close(self, callback) -> None:
        self._callbacks.append(callback)

    def drop(self, exc: BaseException | None = None) -> None:
        """Simulate the broker closing the connection."""
        self.closed = True
        for callback in self._callbacks:
            callback(exc or ConnectionResetError("connection reset by broker"))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for callback in self._callbacks:
            callback(None)


class FakeConnector:
    """Connector that fails ``failures`` times before handing out connections."""

    def __init__(self, channel: FakeChannel | None = None, failures: int = 0):
        self.channel = channel or FakeChannel()
        self.failures = failures
        self.calls = 0
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str) -> FakeConnection:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError("broker unreachable")
        connection = FakeConnection(self.channel)
        self.connections.append(connection)
        return connection


class RecordingSleep:
    """Replaces ``asyncio.sleep`` in the reconnect loop; records each delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)
