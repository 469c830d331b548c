"""
Pure job state transitions.

Each function takes the current Job record (read-only) and returns a
``Transition``: the column changes to apply plus the history row that must be
written with them. ``JobStore.apply`` persists both in one transaction.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from numbers import Real
from typing import Any

from racky.v1.core.exceptions import InvalidTransitionError
from racky.v1.infra.jobs.models import Job
from racky.v1.infra.jobs.types import HistoryEvent, JobStatus


@dataclass
class Transition:
    changes: dict[str, Any]
    event: HistoryEvent
    event_fields: dict[str, Any] = field(default_factory=dict)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps (SQLite round-trips) as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def elapsed_ms(start: datetime | None, end: datetime) -> int | None:
    if start is None:
        return None
    return max(0, int((as_utc(end) - as_utc(start)).total_seconds() * 1000))


def clamp_progress(value: Any) -> Any:
    """Clamp numeric progress to [0, 100]; structured progress passes through."""
    if isinstance(value, bool):
        raise TypeError("progress must be a number or a mapping")
    if isinstance(value, Real):
        return min(100, max(0, value))
    if isinstance(value, dict):
        return value
    raise TypeError("progress must be a number or a mapping")


def _require_active(job: Job, action: str) -> None:
    if job.is_terminal:
        raise InvalidTransitionError(
            f"Cannot {action} job {job.job_id}: already {job.status}",
            {"job_id": job.job_id, "status": job.status},
        )


def started(job: Job, now: datetime, consumer_tag: str | None = None) -> Transition:
    """Delivery picked up: queued -> processing."""
    _require_active(job, "start")
    wait = elapsed_ms(job.created_at, now)
    return Transition(
        changes={
            "status": JobStatus.PROCESSING.value,
            "started_at": now,
            "queue_wait_time": wait,
        },
        event=HistoryEvent.STARTED,
        event_fields={
            "attempt": job.attempts + 1,
            "queue_wait_time": wait,
            "previous_status": job.status,
            "new_status": JobStatus.PROCESSING.value,
            "meta": {"consumerTag": consumer_tag} if consumer_tag else None,
        },
    )


def progressed(job: Job, value: Any) -> Transition:
    _require_active(job, "report progress on")
    progress = clamp_progress(value)
    return Transition(
        changes={"progress": progress},
        event=HistoryEvent.PROGRESS,
        event_fields={"progress": progress},
    )


def completed(job: Job, result: Any, now: datetime) -> Transition:
    _require_active(job, "complete")
    processing_time = elapsed_ms(job.started_at, now)
    return Transition(
        changes={
            "status": JobStatus.COMPLETED.value,
            "result": result,
            "progress": 100,
            "completed_at": now,
            "processing_time": processing_time,
        },
        event=HistoryEvent.COMPLETED,
        event_fields={
            "progress": 100,
            "processing_time": processing_time,
            "previous_status": job.status,
            "new_status": JobStatus.COMPLETED.value,
        },
    )


def batch_initiated(job: Job, result: Any) -> Transition:
    """Handler fanned out child work; the job stays processing."""
    _require_active(job, "initiate batches for")
    return Transition(
        changes={"result": result},
        event=HistoryEvent.BATCH_INITIATED,
        event_fields={"meta": {"result": result}},
    )


def failed_attempt(job: Job, error: str, now: datetime) -> Transition:
    """Count a handler failure and decide between retry and terminal failure."""
    _require_active(job, "fail")
    attempts = min(job.attempts + 1, job.max_attempts)

    if attempts < job.max_attempts:
        return Transition(
            changes={
                "status": JobStatus.QUEUED.value,
                "attempts": attempts,
                "last_error": error,
            },
            event=HistoryEvent.RETRY,
            event_fields={
                "attempt": attempts,
                "error_message": error,
                "previous_status": job.status,
                "new_status": JobStatus.QUEUED.value,
            },
        )

    processing_time = elapsed_ms(job.started_at, now)
    return Transition(
        changes={
            "status": JobStatus.FAILED.value,
            "attempts": attempts,
            "last_error": error,
            "completed_at": now,
            "processing_time": processing_time,
        },
        event=HistoryEvent.FAILED,
        event_fields={
            "attempt": attempts,
            "error_message": error,
            "processing_time": processing_time,
            "previous_status": job.status,
            "new_status": JobStatus.FAILED.value,
        },
    )


def should_retry(transition: Transition) -> bool:
    return transition.event is HistoryEvent.RETRY
