"""
Job lifecycle controller: submission, processing and status reporting.

Every transition out of a non-terminal state is a conditional write on the
status the caller expects, so duplicate deliveries, retries and the cleanup
sweeper can race on a job without overwriting each other.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from fastapi import Depends

from webanalyzer.analysis.fetcher import Fetcher, FetchError
from webanalyzer.analysis.parser import parse_html, validate_results
from webanalyzer.config.logging import get_logger
from webanalyzer.config.settings import Settings, get_settings
from webanalyzer.core.exceptions import (
    InvalidJobIdError,
    JobNotFoundError,
    QueueUnavailableError,
    UnknownJobStatusError,
    ValidationError,
)
from webanalyzer.core.job_ids import JobIdGenerator, is_valid_job_id, job_id_generator
from webanalyzer.core.url_validator import UrlValidationResult, validate_url
from webanalyzer.infra.database import Database, get_database
from webanalyzer.jobs.models import ErrorType, JobStatus
from webanalyzer.jobs.queue import QueueAdapter
from webanalyzer.jobs.schemas import (
    BackoffPolicy,
    EnqueueOptions,
    JobRecord,
    JobStatusView,
    WorkItem,
)
from webanalyzer.jobs.store import JobStore

logger = get_logger(__name__)

QUEUE_FAILURE_MESSAGE = "Failed to queue job"
DEFAULT_FAILURE_MESSAGE = "Job processing failed"


class JobLifecycleController:
    """Drives jobs through PENDING, PROCESSING, COMPLETED and FAILED."""

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        queue: QueueAdapter,
        fetcher: Fetcher | None = None,
        parser: Callable[[str, str], dict[str, Any]] = parse_html,
        validator: Callable[[Any], UrlValidationResult] = validate_url,
        id_generator: JobIdGenerator = job_id_generator,
    ):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.fetcher = fetcher
        self.parser = parser
        self.validator = validator
        self.id_generator = id_generator

    def enqueue_options(self) -> EnqueueOptions:
        return EnqueueOptions(
            timeout_ms=self.settings.queue_job_timeout_ms,
            max_attempts=self.settings.queue_max_attempts,
            backoff=BackoffPolicy(
                type=self.settings.queue_backoff_type,
                delay_ms=self.settings.queue_backoff_delay_ms,
            ),
        )

    async def submit(self, url: Any) -> JobRecord:
        """
        Accept a URL for analysis.

        Args:
            url: The submitted URL (any JSON value; validated here)

        Returns:
            The stored PENDING job record

        Raises:
            ValidationError: URL rejected by the validator
            StorageUnavailableError: job could not be persisted; nothing enqueued
            QueueUnavailableError: job stored but could not be enqueued
        """
        validation = self.validator(url)
        if not validation.valid:
            logger.warning("Invalid URL submitted", url=url, error=validation.error)
            raise ValidationError(validation.error, validation.details)

        job_id = self.id_generator.allocate()
        record = await self.store.create(
            {"job_id": job_id, "url": url, "status": JobStatus.PENDING}
        )

        try:
            await self.queue.enqueue(WorkItem(job_id=job_id, url=url), self.enqueue_options())
        except QueueUnavailableError as e:
            logger.error("Failed to enqueue job", job_id=job_id, url=url, error=e.details)
            await self._fail_unqueued(job_id)
            raise

        logger.info("Job queued successfully", job_id=job_id, url=url)
        return record

    async def _fail_unqueued(self, job_id: str) -> None:
        try:
            await self.store.update(
                job_id,
                {
                    "status": JobStatus.FAILED,
                    "error": QUEUE_FAILURE_MESSAGE,
                    "error_type": ErrorType.QUEUE_ERROR.value,
                },
            )
        except Exception as e:
            logger.error(
                "Failed to update job status after queue error", job_id=job_id, error=str(e)
            )

    async def process_work_item(self, item: WorkItem) -> dict[str, Any]:
        """
        Queue handler: run one delivery of a job.

        Retryable fetch failures and storage errors are re-raised so the
        queue redelivers; every other outcome is recorded on the job and
        returned as a result dict.
        """
        job_id, url = item.job_id, item.url
        job_logger = logger.bind(job_id=job_id, attempt=item.attempts_made)
        started = time.monotonic()

        claimed = await self.store.update_if_pending(job_id, {"status": JobStatus.PROCESSING})
        if not claimed:
            job_logger.info("Job already processing or completed, skipping delivery")
            return {"success": False, "reason": "Job already processing or completed"}

        job_logger.info("Job status updated to PROCESSING", url=url)

        try:
            fetched = await self.fetcher.fetch_with_retry(url, self.settings.fetch_max_retries)
        except FetchError as e:
            if e.retryable:
                job_logger.warning(
                    "Retryable fetch failure, handing back to queue",
                    error=e.message,
                    status_code=e.status_code,
                )
                raise

            await self._finish(
                job_id,
                {
                    "status": JobStatus.FAILED,
                    "error": e.message,
                    "error_type": ErrorType(e.error_type).value,
                    "http_status_code": e.status_code or None,
                },
            )
            job_logger.info("Job marked as FAILED (non-retryable)", error=e.message)
            return {"success": False, "error": e.message, "retryable": False}

        # CPU-bound; keeps heartbeats and the item timeout running
        results = await asyncio.to_thread(self.parser, fetched.html, url)
        parse_error = results.get("parse_error")
        if parse_error is None and not validate_results(results):
            parse_error = "Invalid parsing results structure"

        if parse_error is not None:
            message = f"Failed to parse HTML: {parse_error}"
            await self._finish(
                job_id,
                {
                    "status": JobStatus.FAILED,
                    "error": message,
                    "error_type": ErrorType.PARSE_ERROR.value,
                    "http_status_code": fetched.status_code,
                },
            )
            job_logger.info("Job marked as FAILED (parse error)", error=parse_error)
            return {"success": False, "error": message, "retryable": False}

        await self._finish(
            job_id,
            {
                "status": JobStatus.COMPLETED,
                "results": results,
                "http_status_code": fetched.status_code,
            },
        )
        job_logger.info(
            "Job completed successfully",
            url=url,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            html_version=results["html_version"],
        )
        return {"success": True, "results": results}

    async def _finish(self, job_id: str, fields: dict[str, Any]) -> bool:
        # Only the owner of PROCESSING may write a terminal state
        applied = await self.store.update_if_status(job_id, JobStatus.PROCESSING, fields)
        if not applied:
            logger.warning(
                "Job left PROCESSING before its result was written, result discarded",
                job_id=job_id,
                status=JobStatus(fields["status"]).value,
            )
        return applied

    async def handle_retry(self, item: WorkItem) -> None:
        """Queue retry listener: hand the job back to PENDING for redelivery."""
        reset = await self.store.update_if_status(
            item.job_id, JobStatus.PROCESSING, {"status": JobStatus.PENDING}
        )
        if reset:
            logger.info(
                "Job reset to PENDING for retry",
                job_id=item.job_id,
                attempts_made=item.attempts_made,
                max_attempts=item.max_attempts,
                error=item.last_error,
            )

    async def handle_exhausted(self, item: WorkItem) -> None:
        """Queue failure listener: record a job whose deliveries are used up."""
        error_type = item.last_error_type or ErrorType.UNKNOWN_ERROR.value
        failed = await self.store.update_if_status(
            item.job_id,
            [JobStatus.PENDING, JobStatus.PROCESSING],
            {
                "status": JobStatus.FAILED,
                "error": f"Exceeded retry attempts: {item.last_error}",
                "error_type": error_type,
            },
        )
        if failed:
            logger.error(
                "Job permanently failed after all retries",
                job_id=item.job_id,
                url=item.url,
                attempts_made=item.attempts_made,
                error=item.last_error,
            )

    def register(self, queue: QueueAdapter | None = None) -> None:
        """Subscribe the retry and exhaustion handlers to queue events."""
        queue = queue or self.queue
        queue.on_retry(self.handle_retry)
        queue.on_failed(self.handle_exhausted)

    async def get_status(self, job_id: str) -> JobStatusView:
        """Client-facing status of a job, augmented with live queue state."""
        if not is_valid_job_id(job_id):
            logger.warning("Invalid job_id format", job_id=job_id)
            raise InvalidJobIdError()

        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        view = {"job_id": job.job_id, "url": job.url}

        if job.status == JobStatus.PENDING.value:
            info = await self.queue.get_info(job_id)
            presented = (
                JobStatus.PROCESSING if info.found and info.position > 0 else JobStatus.PENDING
            )
            return JobStatusView(status=presented, **view)

        if job.status == JobStatus.PROCESSING.value:
            return JobStatusView(status=JobStatus.PROCESSING, **view)

        if job.status == JobStatus.COMPLETED.value:
            return JobStatusView(status=JobStatus.COMPLETED, results=job.results, **view)

        if job.status == JobStatus.FAILED.value:
            return JobStatusView(
                status=JobStatus.FAILED, error=job.error or DEFAULT_FAILURE_MESSAGE, **view
            )

        logger.error("Unknown job status", job_id=job_id, status=job.status)
        raise UnknownJobStatusError(job_id, job.status)


def get_controller(
    settings: Settings = Depends(get_settings),
    database: Database = Depends(get_database),
) -> JobLifecycleController:
    """Dependency injection for the API side of the controller (no fetcher)."""
    return JobLifecycleController(
        settings,
        JobStore(settings, database),
        QueueAdapter(settings, database),
    )
