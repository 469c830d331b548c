"""
Job and queue admin API endpoints.

Read access to job status and history, queue stats and health, submission,
and pause/resume of a queue's consumers in this process.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from racky.v1.core.exceptions import NotFoundError, create_success_response
from racky.v1.infra.jobs.schemas import SubmitJobRequest
from racky.v1.infra.jobs.service import JobQueueService, get_job_queue_service
from racky.v1.infra.jobs.types import HistoryEvent

logger = logging.getLogger(__name__)
router = APIRouter(tags=["jobs"])


@router.post("/queues/{queue_alias}/jobs", response_model=dict)
async def submit_job(
    queue_alias: str,
    request: SubmitJobRequest,
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Submit a job to a queue."""
    handle = await service.submit(
        queue_alias, request.job_type, request.payload, request.options
    )

    message = None
    if handle.placeholder:
        message = "Broker unavailable: job accepted locally but not enqueued"

    return create_success_response(data=handle.model_dump(mode="json"), message=message)


@router.get("/jobs/{job_id}", response_model=dict)
async def get_job_status(
    job_id: str,
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Get the status view of a job."""
    view = await service.status(job_id)
    if view is None:
        raise NotFoundError(f"Job {job_id} not found", {"job_id": job_id})

    return create_success_response(data=view.model_dump(mode="json"))


@router.get("/jobs/{job_id}/history", response_model=dict)
async def get_job_history(
    job_id: str,
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Get the event timeline of a job, oldest first."""
    events = await service.timeline(job_id)
    if not events:
        raise NotFoundError(f"No history for job {job_id}", {"job_id": job_id})

    return create_success_response(
        data={
            "job_id": job_id,
            "events": [e.model_dump(mode="json", by_alias=True) for e in events],
        }
    )


@router.get("/queues/{queue_alias}/stats", response_model=dict)
async def get_queue_stats(
    queue_alias: str,
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Job counts by status for a queue alias."""
    stats = await service.stats(queue_alias)
    return create_success_response(
        data={"queue_alias": queue_alias, **stats.model_dump()}
    )


@router.get("/queues/{queue_alias}/health", response_model=dict)
async def get_queue_health(
    queue_alias: str,
    record: bool = Query(default=False, description="Persist a health snapshot"),
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Health of every physical queue behind an alias."""
    if record:
        views = await service.record_health_snapshot(queue_alias)
    else:
        views = await service.health(queue_alias)

    return create_success_response(
        data={
            "queue_alias": queue_alias,
            "healthy": all(v.is_healthy for v in views),
            "queues": [v.model_dump(mode="json") for v in views],
        }
    )


@router.get("/queues/{queue_alias}/errors", response_model=dict)
async def get_queue_errors(
    queue_alias: str,
    limit: int = Query(default=10, ge=1, le=100),
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Most frequent terminal errors behind a queue alias."""
    errors = await service.error_analysis(queue_alias, limit=limit)
    return create_success_response(
        data={
            "queue_alias": queue_alias,
            "window_minutes": service.settings.health_window_minutes,
            "errors": errors,
        }
    )


@router.get("/workspaces/{workspace_id}/events", response_model=dict)
async def get_workspace_events(
    workspace_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    event: HistoryEvent | None = Query(default=None, description="Only this event kind"),
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Newest job lifecycle events for a workspace."""
    events = await service.recent_events(workspace_id, limit=limit, event=event)
    return create_success_response(
        data={
            "workspace_id": workspace_id,
            "events": [e.model_dump(mode="json", by_alias=True) for e in events],
        }
    )


@router.post("/queues/{queue_alias}/pause", response_model=dict)
async def pause_queue(
    queue_alias: str,
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Stop new deliveries to this process's consumers of a queue."""
    cancelled = await service.pause_queue(queue_alias)

    logger.info(
        "Queue paused via API",
        extra={"queue_alias": queue_alias, "consumers_cancelled": cancelled},
    )

    return create_success_response(
        data={"queue_alias": queue_alias, "consumers_cancelled": cancelled},
        message=f"Queue {queue_alias} paused",
    )


@router.post("/queues/{queue_alias}/resume", response_model=dict)
async def resume_queue(
    queue_alias: str,
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Re-register paused processors of a queue with fresh consumer tags."""
    resumed = await service.resume_queue(queue_alias)

    return create_success_response(
        data={"queue_alias": queue_alias, "processors_resumed": resumed},
        message=f"Queue {queue_alias} resumed",
    )


@router.get("/processors", response_model=dict)
async def list_processors(
    service: JobQueueService = Depends(get_job_queue_service),
) -> dict[str, Any]:
    """Registered processors and their live consumer counts."""
    return create_success_response(
        data={
            "processors": [p.model_dump() for p in service.processor_health()],
            "broker": service.broker_status(),
        }
    )
