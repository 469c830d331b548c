"""
Broker connection manager.

Holds the process's single broker connection and channel, declares topology
on every (re)connect, and reconnects with bounded exponential backoff.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from racky.config.settings import Settings
from racky.v1.core.exceptions import (
    BrokerReconnectExhaustedError,
    BrokerUnavailableError,
)
from racky.v1.infra.jobs.broker import (
    BrokerChannel,
    BrokerConnection,
    Connector,
    connect_aio_pika,
)
from racky.v1.infra.jobs.topology import TopologyDeclarator

logger = logging.getLogger(__name__)

ReadyListener = Callable[[BrokerChannel], Awaitable[None]]
LostListener = Callable[[], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2 ** (attempt - 1)`` seconds."""

    base_delay: float
    max_attempts: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay=settings.rabbitmq_reconnect_delay_ms / 1000,
            max_attempts=settings.rabbitmq_max_reconnect_attempts,
        )

    def next_delay(self, attempt: int) -> float | None:
        """Delay before reconnect ``attempt`` (1-based), or None once exhausted."""
        if attempt < 1 or attempt > self.max_attempts:
            return None
        return self.base_delay * (2 ** (attempt - 1))


class BrokerConnectionManager:
    """Owns the broker connection; publishers and consumers borrow its channel."""

    def __init__(
        self,
        settings: Settings,
        connector: Connector | None = None,
        topology: TopologyDeclarator | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_fatal: Callable[[BrokerReconnectExhaustedError], None] | None = None,
    ):
        self.settings = settings
        self.connector = connector or connect_aio_pika
        self.topology = topology or TopologyDeclarator()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._sleep = sleep
        self._on_fatal = on_fatal

        self._connection: BrokerConnection | None = None
        self._channel: BrokerChannel | None = None
        self._initialized = False
        self._closing = False
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task | None = None
        self._ready_listeners: list[ReadyListener] = []
        self._lost_listeners: list[LostListener] = []
        self.fatal_error: BrokerReconnectExhaustedError | None = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def channel(self) -> BrokerChannel:
        if not self._initialized or self._channel is None:
            raise BrokerUnavailableError()
        return self._channel

    def add_ready_listener(self, listener: ReadyListener) -> None:
        """Run ``listener(channel)`` after every successful (re)connect."""
        self._ready_listeners.append(listener)

    def add_lost_listener(self, listener: LostListener) -> None:
        """Run ``listener()`` whenever the live connection is lost."""
        self._lost_listeners.append(listener)

    async def initialize(self) -> bool:
        """Connect, set QoS and declare topology. No-op when already connected.

        A failed first connect leaves the manager in degraded mode and
        schedules reconnection; it never raises.
        """
        if self._initialized:
            return True

        self._closing = False
        if await self._connect():
            return True

        self._schedule_reconnect()
        return False

    async def _connect(self) -> bool:
        connection: BrokerConnection | None = None
        try:
            connection = await self.connector(self.settings.rabbitmq_url)
            channel = await connection.channel()
            await channel.set_qos(self.settings.rabbitmq_prefetch_count)
            await self.topology.declare(channel)
        except Exception as e:
            logger.error(
                "Broker connection failed",
                extra={"error": str(e), "attempt": self._reconnect_attempts},
            )
            if connection is not None:
                await self._close_quietly(connection)
            return False

        self._connection = connection
        self._channel = channel
        self._initialized = True
        self._reconnect_attempts = 0
        self.fatal_error = None
        connection.on_close(self._handle_connection_closed)

        logger.info(
            "Broker connected",
            extra={"prefetch_count": self.settings.rabbitmq_prefetch_count},
        )

        for listener in list(self._ready_listeners):
            try:
                await listener(channel)
            except Exception:
                logger.exception("Broker ready listener failed")

        return True

    def _handle_connection_closed(self, exc: BaseException | None) -> None:
        if self._closing or not self._initialized:
            return

        logger.warning(
            "Broker connection lost",
            extra={"error": str(exc) if exc else None},
        )
        self._initialized = False
        self._channel = None
        self._connection = None

        for listener in list(self._lost_listeners):
            try:
                listener()
            except Exception:
                logger.exception("Broker lost listener failed")

        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or self.fatal_error is not None:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing:
            self._reconnect_attempts += 1
            delay = self.retry_policy.next_delay(self._reconnect_attempts)

            if delay is None:
                self._give_up()
                return

            logger.info(
                "Scheduling broker reconnect",
                extra={
                    "attempt": self._reconnect_attempts,
                    "max_attempts": self.retry_policy.max_attempts,
                    "delay_s": delay,
                },
            )
            await self._sleep(delay)

            if self._closing:
                return
            if await self._connect():
                return

    def _give_up(self) -> None:
        attempts = self._reconnect_attempts - 1
        self.fatal_error = BrokerReconnectExhaustedError(
            f"Broker unreachable after {attempts} reconnect attempts",
            {"attempts": attempts, "url_host": self._safe_host()},
        )
        logger.critical(
            "Broker reconnect attempts exhausted, operator intervention required",
            extra={"attempts": attempts},
        )
        if self._on_fatal is not None:
            self._on_fatal(self.fatal_error)

    def _safe_host(self) -> str:
        # Strip credentials from the URL before it reaches logs or responses
        return self.settings.rabbitmq_url.rsplit("@", 1)[-1]

    async def shutdown(self) -> None:
        """Stop reconnecting and close the channel and connection."""
        self._closing = True

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        channel, connection = self._channel, self._connection
        self._initialized = False
        self._channel = None
        self._connection = None

        if channel is not None:
            try:
                await channel.close()
            except Exception:
                logger.warning("Error closing broker channel", exc_info=True)
        if connection is not None:
            await self._close_quietly(connection)

        logger.info("Broker connection closed")

    async def _close_quietly(self, connection: BrokerConnection) -> None:
        try:
            await connection.close()
        except Exception:
            logger.warning("Error closing broker connection", exc_info=True)
