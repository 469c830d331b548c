"""
Broker topology: exchanges, queues, bindings and dead-letter routing.

The graph is fixed at deploy time. Callers address queues through aliases so
physical queue names can change without touching business code.
"""

import logging

from racky.v1.core.exceptions import QueueResolutionError
from racky.v1.infra.jobs.broker import BrokerChannel
from racky.v1.infra.jobs.types import JobPriority, JobType

logger = logging.getLogger(__name__)

# Exchanges
SYNC_EXCHANGE = "racky.sync.exchange"
PRODUCTS_EXCHANGE = "racky.products.exchange"
AI_EXCHANGE = "racky.ai.exchange"
UPDATES_EXCHANGE = "racky.updates.exchange"
DEAD_LETTER_EXCHANGE = "racky.dlx"

# Dead-letter wiring
DEAD_LETTER_QUEUE = "racky.failed"
DEAD_LETTER_ROUTING_KEY = "failed"
MAX_PRIORITY = 10

# Physical queue -> owning exchange
QUEUE_EXCHANGES: dict[str, str] = {
    "sync.marketplace": SYNC_EXCHANGE,
    "products.batch": PRODUCTS_EXCHANGE,
    "products.individual": PRODUCTS_EXCHANGE,
    "ai.scan": AI_EXCHANGE,
    "ai.batch": AI_EXCHANGE,
    "ai.description": AI_EXCHANGE,
    "updates.batch": UPDATES_EXCHANGE,
    "updates.individual": UPDATES_EXCHANGE,
}

# Caller-facing alias -> queue, or job type -> queue for shared aliases
QUEUE_ALIASES: dict[str, str | dict[JobType, str]] = {
    "marketplace-sync": "sync.marketplace",
    "sync-marketplace": "sync.marketplace",
    "product-processing": {
        JobType.PRODUCT_BATCH: "products.batch",
        JobType.PRODUCT_INDIVIDUAL: "products.individual",
    },
    "ai-optimization": {
        JobType.AI_OPTIMIZATION_SCAN: "ai.scan",
        JobType.AI_DESCRIPTION_BATCH: "ai.batch",
    },
    "ai-description": "ai.description",
    "marketplace-updates": "updates.batch",
    "marketplace-update": "updates.individual",
}

QUEUE_ARGUMENTS = {
    "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE,
    "x-dead-letter-routing-key": DEAD_LETTER_ROUTING_KEY,
    "x-max-priority": MAX_PRIORITY,
}


def resolve_queue(alias: str, job_type: JobType | str | None = None) -> str:
    """Map ``(alias, job_type)`` to the physical queue name.

    A physical queue name is accepted as its own alias.
    """
    if alias in QUEUE_EXCHANGES:
        return alias

    route = QUEUE_ALIASES.get(alias)
    if route is None:
        raise QueueResolutionError(
            f"Unknown queue alias: {alias}", {"queue_alias": alias}
        )
    if isinstance(route, str):
        return route

    try:
        return route[JobType(job_type)]
    except (KeyError, ValueError):
        raise QueueResolutionError(
            f"Queue alias {alias} does not route job type {job_type}",
            {
                "queue_alias": alias,
                "job_type": str(job_type),
                "routable_types": [t.value for t in route],
            },
        ) from None


def queues_for_alias(alias: str) -> list[str]:
    """Every physical queue an alias can route to."""
    if alias in QUEUE_EXCHANGES:
        return [alias]

    route = QUEUE_ALIASES.get(alias)
    if route is None:
        raise QueueResolutionError(
            f"Unknown queue alias: {alias}", {"queue_alias": alias}
        )
    return [route] if isinstance(route, str) else list(route.values())


def exchange_for(queue_name: str) -> str:
    try:
        return QUEUE_EXCHANGES[queue_name]
    except KeyError:
        raise QueueResolutionError(
            f"No exchange declared for queue {queue_name}", {"queue": queue_name}
        ) from None


def routing_key(queue_name: str, priority: JobPriority) -> str:
    return f"{queue_name}.{priority.routing_name}"


class TopologyDeclarator:
    """Declares the fixed exchange/queue graph; safe to run on every connect."""

    async def declare(self, channel: BrokerChannel) -> None:
        await channel.declare_exchange(DEAD_LETTER_EXCHANGE, "direct", durable=True)
        for exchange in sorted(set(QUEUE_EXCHANGES.values())):
            await channel.declare_exchange(exchange, "topic", durable=True)

        await channel.declare_queue(DEAD_LETTER_QUEUE, durable=True)
        await channel.bind_queue(
            DEAD_LETTER_QUEUE, DEAD_LETTER_EXCHANGE, DEAD_LETTER_ROUTING_KEY
        )

        for queue_name, exchange in QUEUE_EXCHANGES.items():
            await channel.declare_queue(
                queue_name, durable=True, arguments=dict(QUEUE_ARGUMENTS)
            )
            await channel.bind_queue(queue_name, exchange, f"{queue_name}.#")

        logger.info(
            "Broker topology declared",
            extra={
                "queues": len(QUEUE_EXCHANGES) + 1,
                "exchanges": len(set(QUEUE_EXCHANGES.values())) + 1,
            },
        )
