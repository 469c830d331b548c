from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from racky.config.settings import Settings, SettingsDep
from racky.infra.database import SessionDep
from racky.v1.core.exceptions import create_success_response
from racky.v1.infra.jobs.service import JobQueueService, get_job_queue_service

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class BrokerHealth(BaseModel):
    """Broker connection status for this process."""

    connected: bool
    reconnect_attempts: int = 0
    fatal_error: str | None = None
    consumers: int = 0
    paused_processors: int = 0


class HealthResponse(BaseModel):
    """Health response with database and broker status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    broker: BrokerHealth


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep,
    session: AsyncSession = SessionDep,
    service: JobQueueService = Depends(get_job_queue_service),
):
    """Health check with database and broker status.

    A disconnected broker does not fail the check (submits degrade to
    placeholders); an exhausted reconnect does.
    """
    db_health = await _check_database_health(session)
    broker_health = _check_broker_health(service)

    health = HealthResponse(
        ok=db_health.connected and broker_health.fatal_error is None,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.now(UTC).isoformat(),
        database=db_health,
        broker=broker_health,
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


def _check_broker_health(service: JobQueueService) -> BrokerHealth:
    processors = service.processor_health()
    return BrokerHealth(
        **service.broker_status(),
        consumers=sum(p.active_consumers for p in processors),
        paused_processors=sum(1 for p in processors if p.paused),
    )
