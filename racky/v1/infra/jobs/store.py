"""
Job store repository.

Reads and writes Job, JobHistory and QueueHealth rows. Every state change
goes through ``apply`` so the Job update and its history row commit together.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from racky.v1.core.exceptions import NotFoundError
from racky.v1.infra.jobs.models import Job, JobHistory, QueueHealth
from racky.v1.infra.jobs.transitions import Transition, as_utc
from racky.v1.infra.jobs.types import HistoryEvent, JobStatus

logger = logging.getLogger(__name__)


def _history_row(job: Job, event: HistoryEvent, **fields: Any) -> JobHistory:
    return JobHistory(
        job_id=job.job_id,
        workspace_id=job.workspace_id,
        event=event.value,
        timestamp=datetime.now(UTC),
        **fields,
    )


class JobStore:
    """Repository over the job tables, one short session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(self, job: Job, created_meta: dict[str, Any] | None = None) -> Job:
        """Insert a new job together with its ``created`` history event."""
        async with self.session_factory() as session:
            session.add(job)
            session.add(
                _history_row(
                    job,
                    HistoryEvent.CREATED,
                    progress=0,
                    meta=created_meta,
                    new_status=job.status,
                )
            )
            await session.commit()
            await session.refresh(job)

        logger.debug(
            "Job persisted",
            extra={"job_id": job.job_id, "queue": job.queue_name, "type": job.job_type},
        )
        return job

    async def get(self, job_id: str) -> Job | None:
        async with self.session_factory() as session:
            return await session.get(Job, job_id)

    async def apply(
        self, job_id: str, transition_for: Callable[[Job], Transition]
    ) -> tuple[Job, Transition]:
        """Read the job, compute its transition, write changes plus history row.

        ``transition_for`` is one of the pure functions in ``transitions``
        (partially applied); it sees the freshly loaded row.
        """
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", {"job_id": job_id})

            transition = transition_for(job)
            for column, value in transition.changes.items():
                setattr(job, column, value)
            session.add(_history_row(job, transition.event, **transition.event_fields))

            await session.commit()
            await session.refresh(job)
            return job, transition

    async def count_by_status(self, queue_names: list[str]) -> dict[str, int]:
        """Count jobs per status across the given physical queues."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job.status, func.count(Job.job_id))
                .where(Job.queue_name.in_(queue_names))
                .group_by(Job.status)
            )
            counts = dict(result.all())

        return {status.value: counts.get(status.value, 0) for status in JobStatus}

    async def timeline(self, job_id: str) -> list[JobHistory]:
        """History rows for one job, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(JobHistory)
                .where(JobHistory.job_id == job_id)
                .order_by(JobHistory.id)
            )
            return list(result.scalars().all())

    async def recent_events(
        self,
        workspace_id: str,
        limit: int = 50,
        event: HistoryEvent | None = None,
    ) -> list[JobHistory]:
        """Newest history rows for a workspace, optionally one event kind."""
        query = select(JobHistory).where(JobHistory.workspace_id == workspace_id)
        if event is not None:
            query = query.where(JobHistory.event == event.value)

        async with self.session_factory() as session:
            result = await session.execute(
                query.order_by(desc(JobHistory.timestamp)).limit(limit)
            )
            return list(result.scalars().all())

    async def performance_metrics(
        self, queue_names: list[str], since: datetime
    ) -> dict[str, float]:
        """Throughput and error figures for jobs finished since ``since``.

        Returns completions per minute, mean queue wait (ms), mean processing
        time (ms) and the failed share of finished jobs.
        """
        finished = and_(
            Job.queue_name.in_(queue_names),
            Job.completed_at.is_not(None),
            Job.completed_at >= since,
        )

        async with self.session_factory() as session:
            result = await session.execute(
                select(Job.status, func.count(Job.job_id))
                .where(finished)
                .group_by(Job.status)
            )
            by_status = dict(result.all())

            averages = await session.execute(
                select(
                    func.avg(Job.queue_wait_time), func.avg(Job.processing_time)
                ).where(finished)
            )
            avg_wait, avg_processing = averages.one()

        completed = by_status.get(JobStatus.COMPLETED.value, 0)
        failed = by_status.get(JobStatus.FAILED.value, 0)
        total = completed + failed
        window_minutes = max(
            (datetime.now(UTC) - as_utc(since)).total_seconds() / 60, 1.0
        )

        return {
            "processing_rate": round(completed / window_minutes, 4),
            "average_wait_time": float(avg_wait or 0.0),
            "average_processing_time": float(avg_processing or 0.0),
            "error_rate": round(failed / total, 4) if total else 0.0,
        }

    async def error_analysis(
        self, queue_names: list[str], since: datetime, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Most frequent terminal error messages since ``since``."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job.last_error, Job.job_type, func.count(Job.job_id))
                .where(
                    Job.queue_name.in_(queue_names),
                    Job.status == JobStatus.FAILED.value,
                    Job.completed_at >= since,
                )
                .group_by(Job.last_error, Job.job_type)
                .order_by(desc(func.count(Job.job_id)))
                .limit(limit)
            )
            rows = result.all()

        return [
            {"error": error, "job_type": job_type, "count": count}
            for error, job_type, count in rows
        ]

    async def record_health(self, snapshot: QueueHealth) -> QueueHealth:
        async with self.session_factory() as session:
            session.add(snapshot)
            await session.commit()
            await session.refresh(snapshot)
            return snapshot

    async def latest_health(self, queue_name: str) -> QueueHealth | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueHealth)
                .where(QueueHealth.queue_name == queue_name)
                .order_by(desc(QueueHealth.timestamp))
                .limit(1)
            )
            return result.scalar_one_or_none()


def default_window_start(minutes: int) -> datetime:
    return datetime.now(UTC) - timedelta(minutes=minutes)
