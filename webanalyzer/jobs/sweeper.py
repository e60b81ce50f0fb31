"""
Periodic cleanup of jobs the normal lifecycle never finished.

Catches PENDING jobs whose work item was lost or is stuck in the queue,
PROCESSING jobs whose worker went silent, and old queue bookkeeping.
"""

import asyncio
import time
from typing import Any

from webanalyzer.config.logging import get_logger
from webanalyzer.config.settings import Settings
from webanalyzer.jobs.models import ErrorType, JobStatus, QueueItemState, utcnow
from webanalyzer.jobs.queue import QueueAdapter
from webanalyzer.jobs.schemas import CleanupStats, JobRecord
from webanalyzer.jobs.store import JobStore

logger = get_logger(__name__)

LOST_JOB_MESSAGE = "Job lost in queue after timeout. Please retry."
TERMINAL_QUEUE_STATES = (QueueItemState.COMPLETED.value, QueueItemState.FAILED.value)
PENDING_QUEUE_STATES = tuple(state.value for state in QueueItemState.pending())


def _age_minutes(job: JobRecord) -> float:
    return (utcnow() - job.created_at).total_seconds() / 60


class CleanupSweeper:
    """Runs cleanup passes on a fixed interval inside the worker process."""

    def __init__(self, settings: Settings, store: JobStore, queue: QueueAdapter):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.stats = CleanupStats()
        self.running = False
        self._task: asyncio.Task | None = None

    @property
    def max_age_message(self) -> str:
        minutes = self.settings.cleanup_max_job_age_minutes
        return f"Job exceeded maximum processing time ({minutes:g} minutes)"

    def start(self) -> None:
        """Run a pass now, then every ``cleanup_interval_minutes``."""
        if self.running:
            logger.warning("Cleanup sweeper already running")
            return

        if not self.settings.cleanup_enabled:
            logger.info("Cleanup sweeper is disabled in configuration")
            return

        logger.info(
            "Starting cleanup sweeper",
            interval_minutes=self.settings.cleanup_interval_minutes,
            job_age_minutes=self.settings.cleanup_job_age_minutes,
            max_job_age_minutes=self.settings.cleanup_max_job_age_minutes,
        )
        self.running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if not self.running:
            return

        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Cleanup sweeper stopped", stats=self.stats.model_dump(mode="json"))

    async def _loop(self) -> None:
        interval_s = self.settings.cleanup_interval_minutes * 60
        while self.running:
            await self.run_cleanup()
            await asyncio.sleep(interval_s)

    async def run_cleanup(self) -> int:
        """One cleanup pass; returns the number of jobs failed by it."""
        started = time.monotonic()
        cleaned = 0
        logger.info("Running cleanup pass")

        try:
            stale_pending = await self.store.find_older_than(
                JobStatus.PENDING, self.settings.cleanup_job_age_minutes
            )
            logger.info("Found stale PENDING jobs", count=len(stale_pending))
            for job in stale_pending:
                cleaned += await self._guarded(self.cleanup_job, job)

            stuck_processing = await self.store.find_older_than(
                JobStatus.PROCESSING,
                self.settings.cleanup_max_job_age_minutes,
                by="updated_at",
            )
            if stuck_processing:
                logger.info("Found stuck PROCESSING jobs", count=len(stuck_processing))
            for job in stuck_processing:
                cleaned += await self._guarded(self.cleanup_processing_job, job)

            await self._clean_queue()
            await self.store.purge_expired()

            self.stats.last_error = None
        except Exception as e:
            logger.exception("Cleanup pass failed")
            self.stats.last_error = str(e)

        duration_ms = int((time.monotonic() - started) * 1000)
        self.stats.total_runs_completed += 1
        self.stats.total_jobs_cleaned += cleaned
        self.stats.last_run_at = utcnow()
        self.stats.last_run_duration_ms = duration_ms
        self.stats.last_run_cleaned = cleaned

        logger.info(
            "Cleanup pass completed",
            jobs_cleaned=cleaned,
            duration_ms=duration_ms,
            total_runs=self.stats.total_runs_completed,
        )
        return cleaned

    async def _guarded(self, cleanup, job: JobRecord) -> int:
        # One bad job must not stop the pass
        try:
            return int(await cleanup(job))
        except Exception:
            logger.exception("Error cleaning up job", job_id=job.job_id)
            return 0

    async def cleanup_job(self, job: JobRecord) -> bool:
        """
        Decide the fate of a stale PENDING job from its queue state.

        Returns True when the job was marked FAILED.
        """
        info = await self.queue.get_info(job.job_id)
        if info.error:
            # Queue state unknown; a lost verdict now could be wrong
            logger.warning(
                "Skipping job, queue lookup failed", job_id=job.job_id, error=info.error
            )
            return False

        age_minutes = _age_minutes(job)

        if not info.found or info.state in TERMINAL_QUEUE_STATES:
            logger.warning(
                "Lost job detected",
                job_id=job.job_id,
                url=job.url,
                queue_state=info.state,
                age_minutes=round(age_minutes),
            )
            failed = await self._fail(job, JobStatus.PENDING, LOST_JOB_MESSAGE)
            if failed:
                logger.info("Marked lost job as FAILED", job_id=job.job_id)
            return failed

        if info.state in PENDING_QUEUE_STATES and (
            age_minutes > self.settings.cleanup_max_job_age_minutes
        ):
            logger.warning(
                "Job stuck in queue for too long",
                job_id=job.job_id,
                queue_state=info.state,
                age_minutes=round(age_minutes),
            )
            await self.queue.remove(job.job_id)
            failed = await self._fail(job, JobStatus.PENDING, self.max_age_message)
            if failed:
                logger.info("Removed stuck job from queue", job_id=job.job_id)
            return failed

        return False

    async def cleanup_processing_job(self, job: JobRecord) -> bool:
        """Fail a PROCESSING job that has not been touched past the hard ceiling."""
        logger.warning(
            "Job stuck in PROCESSING",
            job_id=job.job_id,
            updated_at=job.updated_at.isoformat() if job.updated_at else None,
        )
        await self.queue.remove(job.job_id)
        return await self._fail(job, JobStatus.PROCESSING, self.max_age_message)

    async def _fail(self, job: JobRecord, observed: JobStatus, message: str) -> bool:
        return await self.store.update_if_status(
            job.job_id,
            observed,
            {
                "status": JobStatus.FAILED,
                "error": message,
                "error_type": ErrorType.TIMEOUT_ERROR.value,
            },
        )

    async def _clean_queue(self) -> None:
        try:
            completed = await self.queue.clean(
                int(self.settings.cleanup_completed_grace_hours * 3600 * 1000),
                QueueItemState.COMPLETED,
            )
            failed = await self.queue.clean(
                int(self.settings.cleanup_failed_grace_days * 86400 * 1000),
                QueueItemState.FAILED,
            )
        except Exception as e:
            logger.error("Error cleaning queue", error=str(e))
            return

        logger.info("Cleaned old items from queue", completed=completed, failed=failed)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats.model_dump(mode="json"),
            "is_running": self.running,
            "interval_minutes": self.settings.cleanup_interval_minutes,
        }

    async def force_run(self) -> int:
        logger.info("Force running cleanup pass")
        return await self.run_cleanup()
