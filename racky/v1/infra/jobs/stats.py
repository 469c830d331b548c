"""
Queue stats and health, derived from the job store.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from racky.config.settings import Settings
from racky.v1.infra.jobs.models import QueueHealth
from racky.v1.infra.jobs.schemas import QueueHealthView, QueueMetrics, QueueStatsView
from racky.v1.infra.jobs.store import JobStore, default_window_start
from racky.v1.infra.jobs.topology import queues_for_alias
from racky.v1.infra.jobs.types import JobStatus

logger = logging.getLogger(__name__)


def health_issues(
    metrics: QueueMetrics,
    consumers: int | None,
    backlog_threshold: int,
    failure_ratio: float,
) -> list[str]:
    issues = []
    if metrics.failed > metrics.completed * failure_ratio:
        issues.append("High failure rate")
    if metrics.waiting > backlog_threshold:
        issues.append("High message backlog")
    if consumers == 0 and metrics.waiting > 0:
        issues.append("No active consumers")
    return issues


class QueueStatsReporter:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        consumer_count: Callable[[str], int] | None = None,
    ):
        self.settings = settings
        self.store = store
        self.consumer_count = consumer_count

    async def stats(self, queue_alias: str) -> QueueStatsView:
        """Job counts by status; all zeros if the store cannot be read."""
        queue_names = queues_for_alias(queue_alias)
        try:
            counts = await self.store.count_by_status(queue_names)
        except Exception as e:
            logger.error(
                "Queue stats unavailable, reporting zeros",
                extra={"queue_alias": queue_alias, "error": str(e)},
            )
            return QueueStatsView()

        return QueueStatsView(
            waiting=counts[JobStatus.QUEUED.value],
            active=counts[JobStatus.PROCESSING.value],
            completed=counts[JobStatus.COMPLETED.value],
            failed=counts[JobStatus.FAILED.value],
            delayed=0,
        )

    async def health(self, queue_alias: str) -> list[QueueHealthView]:
        """Current health of every physical queue behind ``queue_alias``."""
        return [
            await self._evaluate(queue_name)
            for queue_name in queues_for_alias(queue_alias)
        ]

    async def _evaluate(self, queue_name: str) -> QueueHealthView:
        counts = await self.store.count_by_status([queue_name])
        performance = await self.store.performance_metrics(
            [queue_name], default_window_start(self.settings.health_window_minutes)
        )

        metrics = QueueMetrics(
            waiting=counts[JobStatus.QUEUED.value],
            active=counts[JobStatus.PROCESSING.value],
            completed=counts[JobStatus.COMPLETED.value],
            failed=counts[JobStatus.FAILED.value],
            processing_rate=performance["processing_rate"],
            average_wait_time=performance["average_wait_time"],
            error_rate=performance["error_rate"],
        )
        consumers = self.consumer_count(queue_name) if self.consumer_count else None
        issues = health_issues(
            metrics,
            consumers,
            self.settings.health_backlog_threshold,
            self.settings.health_failure_ratio,
        )

        return QueueHealthView(
            queue_name=queue_name,
            is_healthy=not issues,
            issues=issues,
            consumers=consumers,
            metrics=metrics,
            timestamp=datetime.now(UTC),
        )

    async def record_snapshot(self, queue_alias: str) -> list[QueueHealthView]:
        """Evaluate and persist a QueueHealth row per physical queue."""
        views = await self.health(queue_alias)
        for view in views:
            await self.store.record_health(
                QueueHealth(
                    queue_name=view.queue_name,
                    is_healthy=view.is_healthy,
                    issues=view.issues,
                    timestamp=view.timestamp,
                    **view.metrics.model_dump(),
                )
            )
            if not view.is_healthy:
                logger.warning(
                    "Queue unhealthy",
                    extra={"queue": view.queue_name, "issues": view.issues},
                )
        return views
