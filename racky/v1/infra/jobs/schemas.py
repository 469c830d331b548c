"""
Pydantic schemas for the job subsystem: submit options, the wire envelope and
the read views returned by status/stats/health queries.
"""

import logging
from datetime import datetime
from typing import Annotated, Any
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    PlainValidator,
    WithJsonSchema,
)
from pydantic.alias_generators import to_camel

from racky.v1.infra.jobs.types import JobPriority, JobStatus, JobType

logger = logging.getLogger(__name__)


# Accepts "HIGH", "high" or a member; serializes as the member name
PriorityField = Annotated[
    JobPriority,
    PlainValidator(JobPriority.parse),
    PlainSerializer(lambda priority: priority.name, return_type=str),
    WithJsonSchema({"type": "string", "enum": [p.name for p in JobPriority]}),
]


class JobOptions(BaseModel):
    """Per-submission options."""

    priority: PriorityField = Field(default=JobPriority.NORMAL)
    delay: int | None = Field(
        default=None, ge=0, description="Message expiration hint in milliseconds"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, description="Defaults to JOB_DEFAULT_MAX_ATTEMPTS"
    )


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EnvelopeMetadata(_CamelModel):
    attempts: int = 0
    priority: str
    created_at: datetime
    parent_job_id: str | None = None
    workspace_id: str


class JobEnvelope(_CamelModel):
    """Message body published for every job, serialized as JSON text."""

    job_id: str
    job_type: JobType
    data: dict[str, Any]
    metadata: EnvelopeMetadata
    progress: int = 0

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode()

    @classmethod
    def from_bytes(cls, body: bytes) -> "JobEnvelope":
        return cls.model_validate_json(body)


class JobHandle(BaseModel):
    """What ``submit`` returns to the caller."""

    job_id: str
    status: JobStatus = JobStatus.QUEUED
    job_type: JobType
    queue_name: str | None = None
    routing_key: str | None = None
    priority: str = JobPriority.NORMAL.name
    placeholder: bool = False


class PlaceholderJobHandle(JobHandle):
    """Returned while the broker is unreachable.

    Nothing was persisted or published; the job will never run. The methods
    exist so callers that drive a handle do not need a degraded branch.
    """

    job_id: str = Field(default_factory=lambda: f"placeholder-{uuid4()}")
    placeholder: bool = True

    async def report_progress(self, value: Any) -> None:
        logger.debug("Placeholder job progress ignored", extra={"job_id": self.job_id})

    async def mark_completed(self, result: Any = None) -> None:
        logger.debug("Placeholder job completion ignored", extra={"job_id": self.job_id})

    async def mark_failed(self, error: str) -> None:
        logger.debug("Placeholder job failure ignored", extra={"job_id": self.job_id})

    async def remove(self) -> None:
        return None

    async def retry(self) -> None:
        return None


class JobStatusView(BaseModel):
    job_id: str
    job_type: str
    queue_name: str
    status: JobStatus
    progress: Any = None
    data: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    failed_reason: str | None = None
    attempts: int
    max_attempts: int
    priority: str
    created_on: datetime
    processed_on: datetime | None = None
    finished_on: datetime | None = None


class QueueStatsView(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class QueueMetrics(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    processing_rate: float = 0.0
    average_wait_time: float = 0.0
    error_rate: float = 0.0


class QueueHealthView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    queue_name: str
    is_healthy: bool
    issues: list[str] = Field(default_factory=list)
    consumers: int | None = None
    metrics: QueueMetrics
    timestamp: datetime


class JobHistoryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    event: str
    timestamp: datetime
    progress: Any = None
    error_message: str | None = None
    meta: dict[str, Any] | None = Field(default=None, serialization_alias="metadata")
    processing_time: int | None = None
    queue_wait_time: int | None = None
    attempt: int | None = None
    previous_status: str | None = None
    new_status: str | None = None


class ProcessorHealthView(BaseModel):
    queue_alias: str
    queue_name: str
    job_type: str
    concurrency: int
    active_consumers: int
    paused: bool


class SubmitJobRequest(BaseModel):
    """HTTP body for submitting a job through the admin API."""

    job_type: JobType
    payload: dict[str, Any]
    options: JobOptions = Field(default_factory=JobOptions)
