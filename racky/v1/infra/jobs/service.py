"""
Job queue service: the one object callers hold.

Built once at process start (API lifespan or worker entrypoint) and passed by
reference. It owns the broker connection manager and wires the publisher,
consumer registry and stats reporter to it and to the job store.
"""

import logging
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from racky.config.settings import Settings
from racky.v1.core.registries import JobProcessor
from racky.v1.infra.jobs.broker import Connector
from racky.v1.infra.jobs.connection import BrokerConnectionManager, RetryPolicy
from racky.v1.infra.jobs.consumer import ConsumerRegistry, ProcessorRegistration
from racky.v1.infra.jobs.publisher import JobPublisher
from racky.v1.infra.jobs.schemas import (
    JobHandle,
    JobHistoryView,
    JobOptions,
    JobStatusView,
    ProcessorHealthView,
    QueueHealthView,
    QueueStatsView,
)
from racky.v1.infra.jobs.stats import QueueStatsReporter
from racky.v1.infra.jobs.store import JobStore, default_window_start
from racky.v1.infra.jobs.topology import queues_for_alias
from racky.v1.infra.jobs.types import HistoryEvent, JobStatus, JobType

logger = logging.getLogger(__name__)


class JobQueueService:
    """Facade over the asynchronous job subsystem."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        connection: BrokerConnectionManager | None = None,
    ):
        self.settings = settings
        self.store = JobStore(session_factory)
        self.connection = connection or BrokerConnectionManager(settings)
        self.publisher = JobPublisher(settings, self.connection, self.store)
        self.consumers = ConsumerRegistry(self.connection, self.store)

        self.reporter = QueueStatsReporter(
            settings, self.store, consumer_count=self.consumers.consumer_count
        )

    async def initialize(self) -> bool:
        """Connect to the broker. False means degraded mode (placeholder submits)."""
        return await self.connection.initialize()

    async def submit(
        self,
        queue_alias: str,
        job_type: JobType | str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> JobHandle:
        return await self.publisher.submit(queue_alias, job_type, payload, options)

    async def status(self, job_id: str) -> JobStatusView | None:
        """Current view of a job, or None if unknown or unreadable."""
        try:
            job = await self.store.get(job_id)
        except Exception as e:
            logger.error(
                "Job status lookup failed", extra={"job_id": job_id, "error": str(e)}
            )
            return None

        if job is None:
            return None

        return JobStatusView(
            job_id=job.job_id,
            job_type=job.job_type,
            queue_name=job.queue_name,
            status=JobStatus(job.status),
            progress=job.progress,
            data=job.data,
            result=job.result,
            failed_reason=job.last_error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            priority=job.priority,
            created_on=job.created_at,
            processed_on=job.started_at,
            finished_on=job.completed_at,
        )

    async def stats(self, queue_alias: str) -> QueueStatsView:
        return await self.reporter.stats(queue_alias)

    async def register_processor(
        self,
        queue_alias: str,
        job_type: JobType | str,
        concurrency: int,
        handler: JobProcessor,
    ) -> ProcessorRegistration:
        return await self.consumers.register_processor(
            queue_alias, job_type, concurrency, handler
        )

    async def pause_queue(self, queue_alias: str) -> int:
        return await self.consumers.pause_queue(queue_alias)

    async def resume_queue(self, queue_alias: str) -> int:
        return await self.consumers.resume_queue(queue_alias)

    async def health(self, queue_alias: str) -> list[QueueHealthView]:
        return await self.reporter.health(queue_alias)

    async def record_health_snapshot(self, queue_alias: str) -> list[QueueHealthView]:
        return await self.reporter.record_snapshot(queue_alias)

    async def timeline(self, job_id: str) -> list[JobHistoryView]:
        rows = await self.store.timeline(job_id)
        return [JobHistoryView.model_validate(row) for row in rows]

    async def recent_events(
        self,
        workspace_id: str,
        limit: int = 50,
        event: HistoryEvent | str | None = None,
    ) -> list[JobHistoryView]:
        """Newest lifecycle events across a workspace's jobs."""
        if event is not None:
            event = HistoryEvent(event)
        rows = await self.store.recent_events(workspace_id, limit=limit, event=event)
        return [JobHistoryView.model_validate(row) for row in rows]

    async def error_analysis(
        self, queue_alias: str, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Most frequent terminal errors behind an alias over the health window."""
        return await self.store.error_analysis(
            queues_for_alias(queue_alias),
            default_window_start(self.settings.health_window_minutes),
            limit=limit,
        )

    def processor_health(self) -> list[ProcessorHealthView]:
        return self.consumers.processor_health()

    def broker_status(self) -> dict[str, Any]:
        fatal = self.connection.fatal_error
        return {
            "connected": self.connection.is_initialized,
            "reconnect_attempts": self.connection.reconnect_attempts,
            "fatal_error": fatal.message if fatal else None,
        }

    async def shutdown(self) -> None:
        await self.consumers.shutdown()
        await self.connection.shutdown()


def build_job_queue_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    connector: Connector | None = None,
) -> JobQueueService:
    """Construct the service with the configured broker connector."""
    connection = BrokerConnectionManager(
        settings,
        connector=connector,
        retry_policy=RetryPolicy.from_settings(settings),
    )
    return JobQueueService(settings, session_factory, connection=connection)


def get_job_queue_service(request: Request) -> JobQueueService:
    """FastAPI dependency: the service created in the application lifespan."""
    return request.app.state.job_queue
