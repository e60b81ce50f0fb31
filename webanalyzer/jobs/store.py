"""
Job store: keyed job records with TTL expiry on top of SQLAlchemy.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import and_, delete, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from webanalyzer.config.logging import get_logger
from webanalyzer.config.settings import Settings
from webanalyzer.core.exceptions import (
    JobAlreadyExistsError,
    JobNotFoundError,
    StorageUnavailableError,
)
from webanalyzer.infra.database import Database
from webanalyzer.jobs.models import AnalysisJob, JobStatus, utcnow
from webanalyzer.jobs.schemas import JobRecord

logger = get_logger(__name__)

T = TypeVar("T")

# Errors worth another attempt: the backend or the connection to it hiccuped
TRANSIENT_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError, TimeoutError)

UPDATABLE_FIELDS = frozenset(
    {"status", "results", "error", "error_type", "http_status_code", "url"}
)


def _status_values(expected: JobStatus | str | Iterable[JobStatus | str]) -> list[str]:
    if isinstance(expected, (JobStatus, str)):
        expected = [expected]
    return [JobStatus(s).value for s in expected]


class JobStore:
    """
    Persistence for job records.

    Every operation retries transient backend errors with exponential
    backoff (100ms, 200ms, 400ms by default) before raising
    ``StorageUnavailableError``.
    """

    def __init__(self, settings: Settings, database: Database):
        self.settings = settings
        self.database = database
        self.ttl = timedelta(hours=settings.job_ttl_hours)

    async def _with_retry(
        self, operation_name: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        """Run ``operation``, retrying transient failures."""
        max_retries = self.settings.storage_max_retries
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            try:
                return await operation()
            except TRANSIENT_ERRORS as e:
                last_error = e
            except DBAPIError as e:
                if not e.connection_invalidated:
                    raise
                last_error = e

            logger.warning(
                "Storage operation failed",
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=max_retries + 1,
                error=str(last_error),
            )
            if attempt < max_retries:
                delay_ms = self.settings.storage_retry_base_ms * (2**attempt)
                await asyncio.sleep(delay_ms / 1000)

        logger.error(
            "Storage operation exhausted retries",
            operation=operation_name,
            error=str(last_error),
        )
        raise StorageUnavailableError(
            details=f"{operation_name} failed after {max_retries + 1} attempts",
            original_error=last_error,
        )

    def _live(self, now: datetime):
        return AnalysisJob.expires_at > now

    async def create(self, job: JobRecord | dict[str, Any]) -> JobRecord:
        """Persist a new job; fails if a live job with the same id exists."""
        data = job.model_dump() if isinstance(job, JobRecord) else dict(job)
        for required in ("job_id", "url", "status"):
            if not data.get(required):
                raise ValueError(f"{required} is required")

        job_id = data["job_id"]

        async def _create() -> JobRecord:
            now = utcnow()
            async with self.database.SessionLocal() as session:
                # An expired record no longer occupies its id
                await session.execute(
                    delete(AnalysisJob).where(
                        and_(AnalysisJob.job_id == job_id, AnalysisJob.expires_at <= now)
                    )
                )
                row = AnalysisJob(
                    job_id=job_id,
                    url=data["url"],
                    status=JobStatus(data["status"]).value,
                    results=data.get("results"),
                    error=data.get("error"),
                    error_type=data.get("error_type"),
                    http_status_code=data.get("http_status_code"),
                    created_at=data.get("created_at") or now,
                    updated_at=data.get("updated_at"),
                    expires_at=now + self.ttl,
                )
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning("Attempted to create duplicate job", job_id=job_id)
                    raise JobAlreadyExistsError(job_id) from None
                return JobRecord.model_validate(row)

        record = await self._with_retry("create job", _create)
        logger.debug("Job created", job_id=job_id, status=record.status)
        return record

    async def get(self, job_id: str) -> JobRecord | None:
        """Fetch a live job record, or None if absent or expired."""

        async def _get() -> JobRecord | None:
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    select(AnalysisJob).where(
                        and_(AnalysisJob.job_id == job_id, self._live(utcnow()))
                    )
                )
                row = result.scalar_one_or_none()
                return JobRecord.model_validate(row) if row else None

        record = await self._with_retry("get job", _get)
        if record is None:
            logger.debug("Job not found", job_id=job_id)
        return record

    def _prepare_values(self, fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        values = dict(fields)
        if "status" in values:
            values["status"] = JobStatus(values["status"]).value
        now = utcnow()
        values["updated_at"] = now
        values["expires_at"] = now + self.ttl
        return values

    async def update(self, job_id: str, fields: dict[str, Any]) -> JobRecord:
        """Merge ``fields`` into an existing job, refreshing its TTL."""
        values = self._prepare_values(fields)

        async def _update() -> JobRecord:
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    update(AnalysisJob)
                    .where(and_(AnalysisJob.job_id == job_id, self._live(utcnow())))
                    .values(**values)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise JobNotFoundError(job_id)
                await session.commit()

                row = await session.get(AnalysisJob, job_id)
                return JobRecord.model_validate(row)

        record = await self._with_retry("update job", _update)
        logger.debug("Job updated", job_id=job_id, status=record.status)
        return record

    async def update_if_status(
        self,
        job_id: str,
        expected: JobStatus | str | Iterable[JobStatus | str],
        fields: dict[str, Any],
    ) -> bool:
        """
        Apply ``fields`` only if the job's current status is one of
        ``expected``. Runs as a single conditional UPDATE, so concurrent
        callers racing on the same job see exactly one winner.
        """
        expected_values = _status_values(expected)
        values = self._prepare_values(fields)

        async def _conditional_update() -> bool:
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    update(AnalysisJob)
                    .where(
                        and_(
                            AnalysisJob.job_id == job_id,
                            AnalysisJob.status.in_(expected_values),
                            self._live(utcnow()),
                        )
                    )
                    .values(**values)
                )
                await session.commit()
                return result.rowcount > 0

        applied = await self._with_retry("conditional update job", _conditional_update)
        if not applied:
            logger.info(
                "Job not in expected status, skipping update",
                job_id=job_id,
                expected=expected_values,
            )
        return applied

    async def update_if_pending(self, job_id: str, fields: dict[str, Any]) -> bool:
        """Apply ``fields`` only while the job is still PENDING."""
        return await self.update_if_status(job_id, JobStatus.PENDING, fields)

    async def find_older_than(
        self,
        status: JobStatus | str,
        minutes: float,
        by: str = "created_at",
        limit: int = 500,
    ) -> list[JobRecord]:
        """Live jobs in ``status`` whose ``by`` timestamp is older than ``minutes``."""
        column = {"created_at": AnalysisJob.created_at, "updated_at": AnalysisJob.updated_at}[by]

        async def _find() -> list[JobRecord]:
            now = utcnow()
            cutoff = now - timedelta(minutes=minutes)
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    select(AnalysisJob)
                    .where(
                        and_(
                            AnalysisJob.status == JobStatus(status).value,
                            column < cutoff,
                            self._live(now),
                        )
                    )
                    .order_by(column)
                    .limit(limit)
                )
                return [JobRecord.model_validate(row) for row in result.scalars().all()]

        return await self._with_retry("find old jobs", _find)

    async def purge_expired(self) -> int:
        """Delete job records whose TTL has passed."""

        async def _purge() -> int:
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    delete(AnalysisJob).where(AnalysisJob.expires_at <= utcnow())
                )
                await session.commit()
                return result.rowcount

        deleted = await self._with_retry("purge expired jobs", _purge)
        if deleted:
            logger.info("Purged expired jobs", deleted_count=deleted)
        return deleted

    async def ping(self) -> bool:
        """Readiness check; raises StorageUnavailableError when unreachable."""

        async def _ping() -> bool:
            async with self.database.SessionLocal() as session:
                await session.execute(text("SELECT 1"))
            return True

        return await self._with_retry("ping", _ping)
