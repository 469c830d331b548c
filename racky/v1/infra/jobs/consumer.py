"""
Job consumer registry.

Each ``register_processor`` call starts ``concurrency`` delivery loops on the
resolved queue, one asyncio task per loop, each with its own consumer tag.
With prefetch 1 every loop holds at most one unacknowledged delivery.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from racky.v1.core.exceptions import ValidationError
from racky.v1.core.registries import JobProcessor
from racky.v1.infra.jobs import transitions
from racky.v1.infra.jobs.broker import BrokerChannel, Delivery
from racky.v1.infra.jobs.connection import BrokerConnectionManager
from racky.v1.infra.jobs.schemas import JobEnvelope, ProcessorHealthView
from racky.v1.infra.jobs.store import JobStore
from racky.v1.infra.jobs.topology import queues_for_alias, resolve_queue
from racky.v1.infra.jobs.types import BATCH_PENDING_STATUS, JobType

logger = logging.getLogger(__name__)

# Seconds shutdown waits for in-flight handlers before cancelling them
SHUTDOWN_GRACE_SECONDS = 30


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class JobView:
    """What a processor sees for one delivery."""

    job_id: str
    job_type: JobType
    data: dict[str, Any]
    attempt: int
    max_attempts: int
    priority: str
    workspace_id: str
    parent_job_id: str | None
    _store: JobStore = field(repr=False)

    async def report_progress(self, value: Any) -> Any:
        """Persist clamped progress and append a ``progress`` event."""
        job, _ = await self._store.apply(
            self.job_id, partial(transitions.progressed, value=value)
        )
        return job.progress


@dataclass
class ProcessorRegistration:
    queue_alias: str
    queue_name: str
    job_type: JobType
    concurrency: int
    handler: JobProcessor
    paused: bool = False
    tags: list[str] = field(default_factory=list)


class ConsumerRegistry:
    """Starts, pauses, resumes and re-attaches job processors."""

    def __init__(self, connection: BrokerConnectionManager, store: JobStore):
        self.connection = connection
        self.store = store
        self._registrations: list[ProcessorRegistration] = []
        self._tasks: dict[str, asyncio.Task] = {}

        connection.add_ready_listener(self._on_broker_ready)
        connection.add_lost_listener(self._on_broker_lost)

    async def register_processor(
        self,
        queue_alias: str,
        job_type: JobType | str,
        concurrency: int,
        handler: JobProcessor,
    ) -> ProcessorRegistration:
        """
        Attach ``handler`` to the queue ``queue_alias`` routes ``job_type`` to.

        If the broker is not connected yet the registration is remembered and
        its loops start on the next successful connect.
        """
        if concurrency < 1:
            raise ValidationError(
                "Processor concurrency must be at least 1",
                {"concurrency": concurrency},
            )

        job_type = JobType(job_type)
        registration = ProcessorRegistration(
            queue_alias=queue_alias,
            queue_name=resolve_queue(queue_alias, job_type),
            job_type=job_type,
            concurrency=concurrency,
            handler=handler,
        )
        self._registrations.append(registration)

        if self.connection.is_initialized:
            await self._start(registration, self.connection.channel)
        else:
            logger.info(
                "Broker not connected, processor start deferred",
                extra={"queue": registration.queue_name, "type": job_type.value},
            )

        return registration

    async def _start(
        self, registration: ProcessorRegistration, channel: BrokerChannel
    ) -> None:
        for index in range(registration.concurrency):
            tag = (
                f"{registration.queue_name}-{registration.job_type.value}"
                f"-{index}-{uuid.uuid4().hex[:8]}"
            )
            registration.tags.append(tag)
            self._tasks[tag] = asyncio.create_task(
                self._consume_loop(registration, channel, tag), name=tag
            )

        logger.info(
            "Processor registered",
            extra={
                "queue": registration.queue_name,
                "type": registration.job_type.value,
                "concurrency": registration.concurrency,
            },
        )

    async def _consume_loop(
        self, registration: ProcessorRegistration, channel: BrokerChannel, tag: str
    ) -> None:
        try:
            async for delivery in channel.consume(registration.queue_name, tag):
                await self.handle_delivery(registration, delivery, tag)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "Delivery loop stopped",
                extra={"consumer_tag": tag, "queue": registration.queue_name},
                exc_info=True,
            )
        finally:
            self._tasks.pop(tag, None)
            if tag in registration.tags:
                registration.tags.remove(tag)

    async def handle_delivery(
        self,
        registration: ProcessorRegistration,
        delivery: Delivery,
        consumer_tag: str | None = None,
    ) -> None:
        """Run one delivery through the job state machine and settle it."""
        try:
            envelope = JobEnvelope.from_bytes(delivery.body)
        except PydanticValidationError as e:
            logger.error(
                "Unparseable job envelope dropped",
                extra={"queue": registration.queue_name, "error": str(e)},
            )
            await delivery.nack(requeue=False)
            return

        job_id = envelope.job_id
        try:
            job = await self.store.get(job_id)
        except Exception:
            logger.exception("Job lookup failed", extra={"job_id": job_id})
            await delivery.nack(requeue=True)
            return

        if job is None:
            logger.warning(
                "Orphaned delivery dropped, job record not found",
                extra={"job_id": job_id, "queue": registration.queue_name},
            )
            await delivery.nack(requeue=False)
            return

        if job.is_terminal:
            logger.warning(
                "Duplicate delivery for finished job acknowledged",
                extra={"job_id": job_id, "status": job.status},
            )
            await delivery.ack()
            return

        try:
            job, _ = await self.store.apply(
                job_id,
                partial(transitions.started, now=_now(), consumer_tag=consumer_tag),
            )
        except Exception:
            logger.exception("Could not mark job started", extra={"job_id": job_id})
            await delivery.nack(requeue=True)
            return

        view = JobView(
            job_id=job.job_id,
            job_type=JobType(job.job_type),
            data=job.data,
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            priority=job.priority,
            workspace_id=job.workspace_id,
            parent_job_id=job.parent_job_id,
            _store=self.store,
        )

        try:
            result = await registration.handler(view)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._settle_failure(job_id, delivery, e)
            return

        await self._settle_success(job_id, delivery, result)

    async def _settle_success(self, job_id: str, delivery: Delivery, result: Any) -> None:
        if isinstance(result, dict) and result.get("status") == BATCH_PENDING_STATUS:
            transition_for = partial(transitions.batch_initiated, result=result)
        else:
            transition_for = partial(transitions.completed, result=result, now=_now())

        try:
            job, transition = await self.store.apply(job_id, transition_for)
        except Exception as e:
            # Counts as an attempt so an unstorable result cannot loop forever
            logger.exception("Could not record job success", extra={"job_id": job_id})
            await self._settle_failure(
                job_id, delivery, RuntimeError(f"Could not record job result: {e}")
            )
            return

        await delivery.ack()
        logger.info(
            "Job processed",
            extra={
                "job_id": job_id,
                "event": transition.event.value,
                "processing_time_ms": job.processing_time,
            },
        )

    async def _settle_failure(
        self, job_id: str, delivery: Delivery, error: Exception
    ) -> None:
        message = str(error) or error.__class__.__name__
        try:
            job, transition = await self.store.apply(
                job_id,
                partial(transitions.failed_attempt, error=message, now=_now()),
            )
        except Exception:
            logger.exception("Could not record job failure", extra={"job_id": job_id})
            await delivery.nack(requeue=True)
            return

        retry = transitions.should_retry(transition)
        await delivery.nack(requeue=retry)

        if retry:
            logger.warning(
                "Job failed, requeued for retry",
                extra={
                    "job_id": job_id,
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                    "error": message,
                },
            )
        else:
            logger.error(
                "Job failed permanently, dead-lettered",
                extra={"job_id": job_id, "attempts": job.attempts, "error": message},
            )

    def _matching(self, queue_alias: str) -> list[ProcessorRegistration]:
        queue_names = set(queues_for_alias(queue_alias))
        return [r for r in self._registrations if r.queue_name in queue_names]

    async def pause_queue(self, queue_alias: str) -> int:
        """Cancel every consumer on the alias's queues; returns tags cancelled.

        In-flight deliveries finish and settle normally.
        """
        cancelled = 0
        for registration in self._matching(queue_alias):
            registration.paused = True
            for tag in list(registration.tags):
                await self._cancel_consumer(tag)
                if tag in registration.tags:
                    registration.tags.remove(tag)
                cancelled += 1

        logger.info(
            "Queue paused",
            extra={"queue_alias": queue_alias, "consumers_cancelled": cancelled},
        )
        return cancelled

    async def resume_queue(self, queue_alias: str) -> int:
        """Re-register paused processors with fresh consumer tags."""
        resumed = 0
        for registration in self._matching(queue_alias):
            if not registration.paused:
                continue
            registration.paused = False
            if self.connection.is_initialized:
                await self._start(registration, self.connection.channel)
            resumed += 1

        logger.info(
            "Queue resumed", extra={"queue_alias": queue_alias, "processors": resumed}
        )
        return resumed

    async def _cancel_consumer(self, tag: str) -> None:
        if not self.connection.is_initialized:
            return
        try:
            await self.connection.channel.cancel(tag)
        except Exception:
            logger.warning(
                "Consumer cancel failed", extra={"consumer_tag": tag}, exc_info=True
            )

    async def _on_broker_ready(self, channel: BrokerChannel) -> None:
        for registration in self._registrations:
            if not registration.paused and not registration.tags:
                await self._start(registration, channel)

    def _on_broker_lost(self) -> None:
        # The channel is gone; loops cannot settle deliveries anymore
        for tag, task in list(self._tasks.items()):
            task.cancel()
        for registration in self._registrations:
            registration.tags.clear()

    def consumer_count(self, queue_name: str) -> int:
        return sum(
            len(r.tags) for r in self._registrations if r.queue_name == queue_name
        )

    def processor_health(self) -> list[ProcessorHealthView]:
        return [
            ProcessorHealthView(
                queue_alias=r.queue_alias,
                queue_name=r.queue_name,
                job_type=r.job_type.value,
                concurrency=r.concurrency,
                active_consumers=len(r.tags),
                paused=r.paused,
            )
            for r in self._registrations
        ]

    async def shutdown(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop all loops, letting in-flight handlers finish within the grace period."""
        for registration in self._registrations:
            for tag in list(registration.tags):
                await self._cancel_consumer(tag)

        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "Consumers cancelled with deliveries in flight",
                    extra={"count": len(pending)},
                )

        self._tasks.clear()
        for registration in self._registrations:
            registration.tags.clear()
