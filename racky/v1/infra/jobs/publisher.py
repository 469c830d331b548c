"""
Job publisher: validate, persist, publish.
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from racky.config.settings import Settings
from racky.v1.core.exceptions import JobValidationError, PublishFailureError
from racky.v1.infra.jobs.connection import BrokerConnectionManager
from racky.v1.infra.jobs.models import Job
from racky.v1.infra.jobs.schemas import (
    EnvelopeMetadata,
    JobEnvelope,
    JobHandle,
    JobOptions,
    PlaceholderJobHandle,
)
from racky.v1.infra.jobs.store import JobStore
from racky.v1.infra.jobs.topology import exchange_for, resolve_queue, routing_key
from racky.v1.infra.jobs.types import JobStatus, JobType

logger = logging.getLogger(__name__)

REQUIRED_PAYLOAD_FIELDS = ("userId", "workspaceId")


class JobPublisher:
    """Turns a submit call into a Job record plus one broker message."""

    def __init__(
        self,
        settings: Settings,
        connection: BrokerConnectionManager,
        store: JobStore,
    ):
        self.settings = settings
        self.connection = connection
        self.store = store

    async def submit(
        self,
        queue_alias: str,
        job_type: JobType | str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> JobHandle:
        """
        Submit a job for asynchronous processing.

        Args:
            queue_alias: Caller-facing queue name (e.g. ``marketplace-sync``)
            job_type: JobType value
            payload: Opaque job data; must carry ``userId`` and ``workspaceId``
            options: Priority, delay (ms) and max attempts

        Returns:
            Handle for the queued job. While the broker is unreachable this is
            a PlaceholderJobHandle and nothing is persisted or published.

        Raises:
            JobValidationError: payload lacks tenant attribution
            QueueResolutionError: alias/job type pair routes nowhere
            PublishFailureError: the broker refused the message
        """
        job_type = JobType(job_type)
        if not isinstance(options, JobOptions):
            options = JobOptions.model_validate(options or {})

        if not self.connection.is_initialized:
            logger.warning(
                "Broker not connected, returning placeholder job",
                extra={"queue_alias": queue_alias, "type": job_type.value},
            )
            return PlaceholderJobHandle(
                job_type=job_type, priority=options.priority.name
            )

        missing = [field for field in REQUIRED_PAYLOAD_FIELDS if not payload.get(field)]
        if missing:
            raise JobValidationError(
                f"Job payload is missing {', '.join(missing)}",
                {"missing": missing, "type": job_type.value},
            )

        queue_name = resolve_queue(queue_alias, job_type)
        exchange = exchange_for(queue_name)
        key = routing_key(queue_name, options.priority)
        max_attempts = options.max_attempts or self.settings.job_default_max_attempts

        job = Job(
            job_id=str(uuid.uuid4()),
            job_type=job_type.value,
            queue_name=queue_name,
            routing_key=key,
            user_id=str(payload["userId"]),
            workspace_id=str(payload["workspaceId"]),
            data=payload,
            status=JobStatus.QUEUED.value,
            progress=0,
            attempts=0,
            max_attempts=max_attempts,
            priority=options.priority.name,
            parent_job_id=payload.get("parentJobId"),
            meta={"originalQueueName": queue_alias, "createdVia": "job_publisher"},
            created_at=datetime.now(UTC),
        )
        job = await self.store.create(
            job, created_meta={"queueName": queue_name, "jobType": job_type.value}
        )

        envelope = JobEnvelope(
            job_id=job.job_id,
            job_type=job_type,
            data=payload,
            metadata=EnvelopeMetadata(
                attempts=0,
                priority=options.priority.name,
                created_at=job.created_at,
                parent_job_id=job.parent_job_id,
                workspace_id=job.workspace_id,
            ),
            progress=0,
        )

        try:
            await self.connection.channel.publish(
                exchange,
                key,
                envelope.to_bytes(),
                priority=options.priority.broker_priority,
                expiration_ms=options.delay or None,
            )
        except Exception as e:
            logger.error(
                "Job publish failed, record left queued",
                extra={"job_id": job.job_id, "exchange": exchange, "error": str(e)},
            )
            raise PublishFailureError(
                f"Failed to publish job {job.job_id}",
                {"job_id": job.job_id, "exchange": exchange, "routing_key": key},
            ) from e

        logger.info(
            "Job submitted",
            extra={
                "job_id": job.job_id,
                "type": job_type.value,
                "queue": queue_name,
                "routing_key": key,
                "priority": options.priority.name,
                "workspace_id": job.workspace_id,
            },
        )

        return JobHandle(
            job_id=job.job_id,
            status=JobStatus.QUEUED,
            job_type=job_type,
            queue_name=queue_name,
            routing_key=key,
            priority=options.priority.name,
        )
