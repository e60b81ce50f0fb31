from datetime import UTC, datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from webanalyzer.config.logging import get_logger
from webanalyzer.config.settings import Settings, SettingsDep
from webanalyzer.core.exceptions import StorageUnavailableError
from webanalyzer.infra.database import Database, get_database
from webanalyzer.jobs.queue import QueueAdapter
from webanalyzer.jobs.store import JobStore

logger = get_logger(__name__)
router = APIRouter(prefix="/health", tags=["health"])


class StorageHealth(BaseModel):
    """Job store health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Work queue depth per delivery state."""

    connected: bool
    counts: dict[str, int] = {}
    error: str | None = None


class ReadinessResponse(BaseModel):
    ok: bool
    version: str
    environment: str
    timestamp: str
    storage: StorageHealth
    queue: QueueHealth


@router.get("/live")
async def liveness() -> dict[str, str]:
    """Process is up; no dependency checks."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready", response_model=ReadinessResponse)
async def readiness(
    settings: Settings = SettingsDep,
    database: Database = Depends(get_database),
):
    """Storage and queue reachability. 503 when storage is down."""
    storage_health = await _check_storage_health(JobStore(settings, database))
    queue_health = await _check_queue_health(QueueAdapter(settings, database))

    body = ReadinessResponse(
        ok=storage_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.now(UTC).isoformat(),
        storage=storage_health,
        queue=queue_health,
    )

    if not storage_health.connected:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(),
        )
    return body


async def _check_storage_health(store: JobStore) -> StorageHealth:
    """Check store connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await store.ping()
    except StorageUnavailableError as e:
        logger.error("Storage health check failed", error=e.details)
        return StorageHealth(connected=False, error=e.message)

    response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
    return StorageHealth(connected=True, response_time_ms=round(response_time_ms, 2))


async def _check_queue_health(queue: QueueAdapter) -> QueueHealth:
    try:
        counts = await queue.counts()
    except Exception as e:
        # Queue depth is informational; it does not fail readiness
        logger.warning("Queue health check failed", error=str(e))
        return QueueHealth(connected=False, error=str(e))

    return QueueHealth(connected=True, counts=counts)
