import pytest

from racky.v1.core.exceptions import QueueResolutionError
from racky.v1.infra.jobs.topology import (
    DEAD_LETTER_EXCHANGE,
    DEAD_LETTER_QUEUE,
    QUEUE_EXCHANGES,
    TopologyDeclarator,
    exchange_for,
    queues_for_alias,
    resolve_queue,
    routing_key,
)
from racky.v1.infra.jobs.types import JobPriority, JobType
from tests.fakes import FakeChannel, topic_matches


class TestQueueResolution:
    @pytest.mark.parametrize(
        "alias,job_type,expected",
        [
            ("marketplace-sync", JobType.MARKETPLACE_SYNC, "sync.marketplace"),
            ("sync-marketplace", JobType.MARKETPLACE_SYNC, "sync.marketplace"),
            ("product-processing", JobType.PRODUCT_BATCH, "products.batch"),
            ("product-processing", JobType.PRODUCT_INDIVIDUAL, "products.individual"),
            ("ai-optimization", JobType.AI_OPTIMIZATION_SCAN, "ai.scan"),
            ("ai-optimization", JobType.AI_DESCRIPTION_BATCH, "ai.batch"),
            ("ai-description", JobType.AI_DESCRIPTION_GENERATION, "ai.description"),
            ("marketplace-updates", JobType.MARKETPLACE_UPDATE_BATCH, "updates.batch"),
            ("marketplace-update", JobType.MARKETPLACE_UPDATE, "updates.individual"),
        ],
    )
    def test_alias_routes_to_physical_queue(self, alias, job_type, expected):
        assert resolve_queue(alias, job_type) == expected

    def test_physical_queue_name_is_its_own_alias(self):
        assert resolve_queue("products.batch", JobType.PRODUCT_BATCH) == "products.batch"

    def test_unknown_alias_raises(self):
        with pytest.raises(QueueResolutionError) as exc_info:
            resolve_queue("no-such-queue", JobType.MARKETPLACE_SYNC)

        assert exc_info.value.status_code == 400
        assert exc_info.value.details == {"queue_alias": "no-such-queue"}

    def test_shared_alias_rejects_unrouted_job_type(self):
        with pytest.raises(QueueResolutionError, match="does not route"):
            resolve_queue("product-processing", JobType.MARKETPLACE_SYNC)

    def test_queues_for_shared_alias(self):
        assert queues_for_alias("ai-optimization") == ["ai.scan", "ai.batch"]
        assert queues_for_alias("marketplace-sync") == ["sync.marketplace"]

    def test_every_queue_has_an_exchange(self):
        assert exchange_for("ai.description") == "racky.ai.exchange"
        with pytest.raises(QueueResolutionError):
            exchange_for("racky.failed")


class TestPriority:
    def test_broker_priority_is_strictly_ordered(self):
        priorities = [p.broker_priority for p in JobPriority]
        assert priorities == [2, 5, 8, 10]
        assert JobPriority.CRITICAL.broker_priority > JobPriority.HIGH.broker_priority
        assert JobPriority.HIGH.broker_priority > JobPriority.NORMAL.broker_priority
        assert JobPriority.NORMAL.broker_priority > JobPriority.LOW.broker_priority

    def test_routing_key_uses_lowercase_priority(self):
        assert routing_key("sync.marketplace", JobPriority.HIGH) == "sync.marketplace.high"
        assert routing_key("products.batch", JobPriority.LOW) == "products.batch.low"

    def test_parse_accepts_names_case_insensitively(self):
        assert JobPriority.parse("critical") is JobPriority.CRITICAL
        assert JobPriority.parse("NORMAL") is JobPriority.NORMAL
        assert JobPriority.parse(JobPriority.LOW) is JobPriority.LOW

        with pytest.raises(ValueError, match="Unknown job priority"):
            JobPriority.parse("urgent")


class TestTopologyDeclarator:
    async def test_declares_exchanges_queues_and_dead_letter(self):
        channel = FakeChannel()

        await TopologyDeclarator().declare(channel)

        assert channel.exchanges[DEAD_LETTER_EXCHANGE] == "direct"
        for exchange in set(QUEUE_EXCHANGES.values()):
            assert channel.exchanges[exchange] == "topic"

        assert channel.queue_arguments[DEAD_LETTER_QUEUE] == {}
        for queue_name in QUEUE_EXCHANGES:
            assert channel.queue_arguments[queue_name] == {
                "x-dead-letter-exchange": "racky.dlx",
                "x-dead-letter-routing-key": "failed",
                "x-max-priority": 10,
            }

        assert (DEAD_LETTER_QUEUE, DEAD_LETTER_EXCHANGE, "failed") in channel.bindings
        assert ("ai.scan", "racky.ai.exchange", "ai.scan.#") in channel.bindings

    async def test_declare_is_idempotent(self):
        channel = FakeChannel()
        declarator = TopologyDeclarator()

        await declarator.declare(channel)
        snapshot = (
            dict(channel.exchanges),
            dict(channel.queue_arguments),
            set(channel.bindings),
        )
        await declarator.declare(channel)

        assert (
            channel.exchanges,
            channel.queue_arguments,
            channel.bindings,
        ) == snapshot

    async def test_priority_routing_keys_reach_only_their_queue(self):
        channel = FakeChannel()
        await TopologyDeclarator().declare(channel)

        for priority in JobPriority:
            key = routing_key("products.batch", priority)
            assert channel.route("racky.products.exchange", key) == ["products.batch"]

        # "products.batch.#" must not swallow the sibling queue
        assert channel.route(
            "racky.products.exchange", "products.individual.normal"
        ) == ["products.individual"]


def test_topic_matching_helper():
    assert topic_matches("sync.marketplace.#", "sync.marketplace.high")
    assert topic_matches("sync.marketplace.#", "sync.marketplace")
    assert not topic_matches("sync.marketplace.#", "sync.other.high")
    assert topic_matches("a.*.c", "a.b.c")
