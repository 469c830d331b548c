"""
Job store models: jobs, their event history and queue health snapshots.

These are plain records. State changes are computed in
``racky.v1.infra.jobs.transitions`` and written by ``JobStore``.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from racky.infra.database import Base
from racky.v1.infra.jobs.types import JobStatus


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    One submitted unit of asynchronous work.

    Created ``queued`` by the publisher, mutated only by the consumer that
    holds its delivery, never deleted here.
    """

    __tablename__ = "jobs"

    job_id: Mapped[str] = mapped_column(
        String(64), primary_key=True, comment="Submission-time identifier"
    )
    job_type: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="JobType value"
    )
    queue_name: Mapped[str] = mapped_column(
        String(128), nullable=False, comment="Resolved physical queue"
    )
    routing_key: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Exact routing key, priority suffixed"
    )

    # Tenant attribution
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)

    data: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Caller payload, stored verbatim"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="queued|processing|completed|failed",
    )
    progress: Mapped[Any] = mapped_column(
        JSON, nullable=True, default=0, comment="0-100 or a sub-progress object"
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    priority: Mapped[str] = mapped_column(
        String(16), nullable=False, default="NORMAL", comment="LOW|NORMAL|HIGH|CRITICAL"
    )

    # Outcome
    result: Mapped[Any] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Batch fan-out
    parent_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="originalQueueName, createdVia, ...",
    )

    # Timing
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=_utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )
    queue_wait_time: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="ms between created_at and started_at"
    )
    processing_time: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="ms between started_at and completed_at"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts", name="jobs_attempts_check"
        ),
        Index("ix_jobs_queue_status", "queue_name", "status"),
        Index("ix_jobs_workspace_created", "workspace_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal


class JobHistory(Base):
    """Append-only job event row. Never read back to drive control flow."""

    __tablename__ = "job_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=_utcnow,
    )

    progress: Mapped[Any] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    processing_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queue_wait_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempt: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(16), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "event IN ('created', 'started', 'progress', 'completed', 'failed', "
            "'retry', 'batch_initiated')",
            name="job_history_event_check",
        ),
        Index("ix_job_history_job_timestamp", "job_id", "timestamp"),
        Index("ix_job_history_workspace_timestamp", "workspace_id", "timestamp"),
    )


class QueueHealth(Base):
    """Point-in-time health snapshot for one physical queue."""

    __tablename__ = "queue_health"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue_name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_healthy: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    issues: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Metrics block
    waiting: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_rate: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, comment="Completions per minute"
    )
    average_wait_time: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, comment="ms"
    )
    error_rate: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0, comment="failed / finished"
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=_utcnow,
    )

    __table_args__ = (
        Index("ix_queue_health_queue_timestamp", "queue_name", "timestamp"),
    )
