import asyncio
from datetime import UTC, datetime

import pytest

from racky.v1.core.exceptions import ValidationError
from racky.v1.infra.jobs.schemas import JobOptions
from racky.v1.infra.jobs.types import JobType
from tests.fakes import FakeDelivery, FakeMessage


async def events_for(service, job_id: str) -> list[str]:
    return [event.event for event in await service.timeline(job_id)]


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestProcessing:
    async def test_successful_job_completes(self, service, channel, payload):
        seen = []

        async def processor(job):
            seen.append((job.job_id, job.job_type, job.attempt, job.data))
            return {"synced": 3}

        await service.register_processor("marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor)
        handle = await service.submit("marketplace-sync", JobType.MARKETPLACE_SYNC, payload)

        await channel.wait_for_settlements(1)

        status = await service.status(handle.job_id)
        assert status.status == "completed"
        assert status.progress == 100
        assert status.result == {"synced": 3}
        assert status.attempts == 0
        assert status.processed_on is not None
        assert status.finished_on is not None
        assert seen == [(handle.job_id, JobType.MARKETPLACE_SYNC, 1, payload)]
        assert channel.settlements == [("sync.marketplace", "ack")]
        assert await events_for(service, handle.job_id) == ["created", "started", "completed"]

    async def test_always_failing_job_is_dead_lettered(self, service, channel, payload):
        calls = []

        async def processor(job):
            calls.append(job.attempt)
            raise RuntimeError("marketplace API returned 500")

        await service.register_processor("marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor)
        handle = await service.submit("marketplace-sync", JobType.MARKETPLACE_SYNC, payload)

        await channel.wait_for_settlements(3)

        assert calls == [1, 2, 3]
        status = await service.status(handle.job_id)
        assert status.status == "failed"
        assert status.attempts == 3
        assert status.failed_reason == "marketplace API returned 500"

        assert [outcome for _, outcome in channel.settlements] == [
            "requeue",
            "requeue",
            "reject",
        ]
        assert len(channel.messages["racky.failed"]) == 1
        assert channel.messages["sync.marketplace"] == []

        events = await events_for(service, handle.job_id)
        assert events == [
            "created",
            "started",
            "retry",
            "started",
            "retry",
            "started",
            "failed",
        ]

    async def test_transient_failure_then_success(self, service, channel, payload):
        failures = {"left": 2}

        async def processor(job):
            if failures["left"]:
                failures["left"] -= 1
                raise ConnectionError("temporary")
            return None

        await service.register_processor(
            "product-processing", JobType.PRODUCT_BATCH, 1, processor
        )
        handle = await service.submit("product-processing", JobType.PRODUCT_BATCH, payload)

        await channel.wait_for_settlements(3)

        status = await service.status(handle.job_id)
        assert status.status == "completed"
        assert status.attempts == 2
        assert status.failed_reason == "temporary"
        assert channel.messages["racky.failed"] == []

    async def test_custom_max_attempts_respected(self, service, channel, payload):
        async def processor(job):
            raise ValueError("bad product")

        await service.register_processor(
            "product-processing", JobType.PRODUCT_INDIVIDUAL, 1, processor
        )
        handle = await service.submit(
            "product-processing",
            JobType.PRODUCT_INDIVIDUAL,
            payload,
            JobOptions(max_attempts=1),
        )

        await channel.wait_for_settlements(1)

        status = await service.status(handle.job_id)
        assert status.status == "failed"
        assert status.attempts == 1
        assert channel.settlements == [("products.individual", "reject")]

    async def test_progress_reports_are_clamped_and_recorded(self, service, channel, payload):
        reported = []

        async def processor(job):
            reported.append(await job.report_progress(40))
            reported.append(await job.report_progress(250))
            reported.append(await job.report_progress({"processed": 5, "total": 8}))
            return {"done": True}

        await service.register_processor("ai-description", "ai-description-generation", 1, processor)
        handle = await service.submit("ai-description", "ai-description-generation", payload)

        await channel.wait_for_settlements(1)

        assert reported == [40, 100, {"processed": 5, "total": 8}]
        history = await service.timeline(handle.job_id)
        progress_events = [e.progress for e in history if e.event == "progress"]
        assert progress_events == [40, 100, {"processed": 5, "total": 8}]

    async def test_batch_result_keeps_job_processing(self, service, channel, payload):
        async def processor(job):
            return {"status": "processing_batches", "batches": 3}

        await service.register_processor("product-processing", JobType.PRODUCT_BATCH, 1, processor)
        handle = await service.submit("product-processing", JobType.PRODUCT_BATCH, payload)

        await channel.wait_for_settlements(1)

        status = await service.status(handle.job_id)
        assert status.status == "processing"
        assert status.result == {"status": "processing_batches", "batches": 3}
        assert channel.settlements == [("products.batch", "ack")]
        assert (await events_for(service, handle.job_id))[-1] == "batch_initiated"

    async def test_unstorable_result_counts_as_failed_attempt(
        self, service, channel, payload
    ):
        calls = []

        async def processor(job):
            calls.append(job.attempt)
            return {"finished_at": datetime.now(UTC)}

        await service.register_processor("marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor)
        handle = await service.submit("marketplace-sync", JobType.MARKETPLACE_SYNC, payload)

        await channel.wait_for_settlements(3)

        assert calls == [1, 2, 3]
        status = await service.status(handle.job_id)
        assert status.status == "failed"
        assert status.attempts == 3
        assert status.failed_reason.startswith("Could not record job result")
        assert [outcome for _, outcome in channel.settlements] == [
            "requeue",
            "requeue",
            "reject",
        ]
        assert len(channel.messages["racky.failed"]) == 1

    async def test_higher_priority_delivered_first(self, service, channel, payload):
        order = []

        async def processor(job):
            order.append(job.priority)

        for priority in ("LOW", "NORMAL", "CRITICAL", "HIGH"):
            await service.submit(
                "marketplace-sync",
                JobType.MARKETPLACE_SYNC,
                payload,
                JobOptions(priority=priority),
            )

        await service.register_processor("marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor)
        await channel.wait_for_settlements(4)

        assert order == ["CRITICAL", "HIGH", "NORMAL", "LOW"]


class TestDeliveryEdgeCases:
    async def _registration(self, service):
        async def processor(job):
            raise AssertionError("processor must not run")

        return await service.register_processor(
            "marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor
        )

    def _delivery(self, channel, body: bytes) -> FakeDelivery:
        message = FakeMessage(
            sort_key=(-5, 0),
            exchange="racky.sync.exchange",
            routing_key="sync.marketplace.normal",
            body=body,
            priority=5,
        )
        return FakeDelivery(channel, "sync.marketplace", message)

    async def test_orphaned_delivery_is_dropped(self, service, channel):
        registration = await self._registration(service)
        body = (
            b'{"jobId": "missing", "jobType": "marketplace-sync", "data": {}, '
            b'"metadata": {"priority": "NORMAL", "createdAt": "2026-10-18T00:00:00Z", '
            b'"workspaceId": "ws-1"}}'
        )
        delivery = self._delivery(channel, body)

        await service.consumers.handle_delivery(registration, delivery)

        assert delivery.outcome == "reject"
        assert len(channel.messages["racky.failed"]) == 1

    async def test_unparseable_envelope_is_dropped(self, service, channel):
        registration = await self._registration(service)
        delivery = self._delivery(channel, b"not json")

        await service.consumers.handle_delivery(registration, delivery)

        assert delivery.outcome == "reject"

    async def test_duplicate_delivery_of_finished_job_is_acked(
        self, service, channel, payload
    ):
        async def processor(job):
            return None

        registration = await service.register_processor(
            "marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor
        )
        handle = await service.submit("marketplace-sync", JobType.MARKETPLACE_SYNC, payload)
        await channel.wait_for_settlements(1)
        events_before = await events_for(service, handle.job_id)

        duplicate = self._delivery(channel, channel.published[0].body)
        await service.consumers.handle_delivery(registration, duplicate)

        assert duplicate.outcome == "ack"
        assert await events_for(service, handle.job_id) == events_before


class TestRegistry:
    async def test_concurrency_starts_one_consumer_per_slot(self, service, channel):
        async def processor(job):
            return None

        registration = await service.register_processor(
            "product-processing", JobType.PRODUCT_INDIVIDUAL, 3, processor
        )
        await asyncio.sleep(0)

        assert len(registration.tags) == 3
        assert len(set(registration.tags)) == 3
        assert all(tag.startswith("products.individual-product-individual-") for tag in registration.tags)
        assert service.consumers.consumer_count("products.individual") == 3

    async def test_invalid_concurrency_rejected(self, service):
        async def processor(job):
            return None

        with pytest.raises(ValidationError):
            await service.register_processor("marketplace-sync", JobType.MARKETPLACE_SYNC, 0, processor)

    async def test_registration_deferred_until_broker_connects(
        self, test_settings, session_factory, sleeper
    ):
        from racky.v1.infra.jobs.connection import BrokerConnectionManager
        from racky.v1.infra.jobs.service import JobQueueService
        from tests.fakes import FakeConnector

        connector = FakeConnector(failures=1)
        service = JobQueueService(
            test_settings,
            session_factory,
            connection=BrokerConnectionManager(test_settings, connector=connector, sleep=sleeper),
        )

        async def processor(job):
            return None

        assert await service.initialize() is False
        registration = await service.register_processor(
            "marketplace-sync", JobType.MARKETPLACE_SYNC, 2, processor
        )
        assert registration.tags == []

        await asyncio.wait_for(service.connection._reconnect_task, timeout=1)

        assert len(registration.tags) == 2
        await service.shutdown()

    async def test_pause_and_resume(self, service, channel, payload):
        processed = []

        async def processor(job):
            processed.append(job.job_id)

        registration = await service.register_processor(
            "marketplace-sync", JobType.MARKETPLACE_SYNC, 2, processor
        )
        old_tags = set(registration.tags)

        assert await service.pause_queue("marketplace-sync") == 2
        await wait_until(lambda: not registration.tags)
        assert registration.paused
        assert registration.tags == []

        handle = await service.submit("marketplace-sync", JobType.MARKETPLACE_SYNC, payload)
        await asyncio.sleep(0.05)
        assert processed == []
        assert (await service.status(handle.job_id)).status == "queued"

        assert await service.resume_queue("marketplace-sync") == 1
        await channel.wait_for_settlements(1)

        assert processed == [handle.job_id]
        assert len(registration.tags) == 2
        assert not old_tags & set(registration.tags)

    async def test_resume_without_pause_is_noop(self, service):
        async def processor(job):
            return None

        await service.register_processor("marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor)
        assert await service.resume_queue("marketplace-sync") == 0

    async def test_consumers_reattach_after_reconnect(
        self, service, channel, connector, payload
    ):
        async def processor(job):
            return {"after": "reconnect"}

        registration = await service.register_processor(
            "marketplace-sync", JobType.MARKETPLACE_SYNC, 1, processor
        )
        old_tags = list(registration.tags)

        connector.connections[0].drop()
        assert registration.tags == []

        await asyncio.wait_for(service.connection._reconnect_task, timeout=1)
        assert len(registration.tags) == 1
        assert registration.tags != old_tags

        handle = await service.submit("marketplace-sync", JobType.MARKETPLACE_SYNC, payload)
        await channel.wait_for_settlements(1)

        assert (await service.status(handle.job_id)).status == "completed"

    async def test_processor_health(self, service):
        async def processor(job):
            return None

        await service.register_processor("ai-optimization", JobType.AI_OPTIMIZATION_SCAN, 1, processor)
        await service.pause_queue("ai-optimization")

        [health] = service.processor_health()
        assert health.queue_name == "ai.scan"
        assert health.job_type == "ai-optimization-scan"
        assert health.paused is True
