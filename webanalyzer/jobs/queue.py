"""
Database-backed work queue with retries, heartbeats and stalled-item recovery.
"""

import asyncio
import os
import socket
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from webanalyzer.config.logging import get_logger
from webanalyzer.config.settings import BackoffType, Settings
from webanalyzer.core.exceptions import QueueUnavailableError
from webanalyzer.infra.database import Database
from webanalyzer.jobs.models import QueueItem, QueueItemState, utcnow
from webanalyzer.jobs.schemas import (
    BackoffPolicy,
    DeliveryHandle,
    EnqueueOptions,
    QueueInfo,
    WorkItem,
)

logger = get_logger(__name__)

Handler = Callable[[WorkItem], Awaitable[Any]]
Listener = Callable[[WorkItem], Awaitable[None]]


class JobTimeoutError(Exception):
    """The handler did not finish within the item's timeout."""

    retryable = True
    error_type = "TIMEOUT_ERROR"


def calculate_backoff_ms(policy: BackoffPolicy, attempts_made: int) -> int:
    """Delay before the next delivery after ``attempts_made`` failed attempts."""
    if policy.type == BackoffType.FIXED:
        return policy.delay_ms
    return policy.delay_ms * (2 ** max(attempts_made - 1, 0))


class QueueAdapter:
    """
    At-least-once delivery of work items to async handlers.

    Features:
    - SELECT FOR UPDATE SKIP LOCKED for claiming items across processes
    - Bounded concurrency per process
    - Per-item timeout, retry with exponential or fixed backoff
    - Heartbeats and stalled-item redelivery
    - Retry and failure listeners so the job lifecycle can follow delivery
    """

    def __init__(self, settings: Settings, database: Database, name: str | None = None):
        self.settings = settings
        self.database = database
        self.name = name or settings.queue_name
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self.active_items: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        # Delivery settings of claimed items, keyed by item id
        self._timeouts: dict[str, int | None] = {}
        self._backoffs: dict[str, BackoffPolicy] = {}
        self._retry_listeners: list[Listener] = []
        self._failed_listeners: list[Listener] = []

    # Listeners

    def on_retry(self, listener: Listener) -> None:
        """Register a listener called before a failed item is redelivered."""
        self._retry_listeners.append(listener)

    def on_failed(self, listener: Listener) -> None:
        """Register a listener called when an item fails permanently."""
        self._failed_listeners.append(listener)

    async def _emit(self, event: str, listeners: list[Listener], item: WorkItem) -> None:
        for listener in listeners:
            try:
                await listener(item)
            except Exception:
                logger.exception(
                    "Queue listener failed",
                    queue_event=event,
                    job_id=item.job_id,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                )

    # Producer side

    async def enqueue(
        self, item: WorkItem, options: EnqueueOptions | None = None
    ) -> DeliveryHandle:
        """Add a work item; re-enqueueing an existing job id returns the existing item."""
        if not item.job_id or not item.url:
            raise ValueError("Invalid work item: job_id and url are required")

        options = options or EnqueueOptions(
            timeout_ms=self.settings.queue_job_timeout_ms,
            max_attempts=self.settings.queue_max_attempts,
            backoff=BackoffPolicy(
                type=self.settings.queue_backoff_type,
                delay_ms=self.settings.queue_backoff_delay_ms,
            ),
        )
        now = utcnow()
        row = QueueItem(
            id=item.job_id,
            queue_name=self.name,
            payload=item.payload(),
            state=QueueItemState.WAITING.value,
            attempts_made=0,
            max_attempts=options.max_attempts,
            backoff_type=options.backoff.type.value,
            backoff_delay_ms=options.backoff.delay_ms,
            timeout_ms=options.timeout_ms,
            run_at=now,
            created_at=now,
            updated_at=now,
        )

        try:
            async with self.database.SessionLocal() as session:
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    existing = await session.get(QueueItem, item.job_id)
                    if existing is None:
                        raise
                    logger.info("Work item already queued", job_id=item.job_id)
                    return self._handle(existing, created=False)
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to enqueue job", job_id=item.job_id, error=str(e))
            raise QueueUnavailableError(details=str(e), original_error=e) from e

        logger.info(
            "Job enqueued",
            job_id=item.job_id,
            url=item.url,
            max_attempts=options.max_attempts,
            timeout_ms=options.timeout_ms,
        )
        return self._handle(row)

    @staticmethod
    def _handle(row: QueueItem, created: bool = True) -> DeliveryHandle:
        return DeliveryHandle(
            id=row.id,
            state=row.state,
            attempts_made=row.attempts_made,
            max_attempts=row.max_attempts,
            created=created,
        )

    # Consumer side

    async def process(self, handler: Handler) -> None:
        """Deliver items to ``handler`` until :meth:`stop` is called."""
        if self.running:
            raise RuntimeError("Queue consumer is already running")

        self.running = True
        logger.info(
            "Starting queue consumer",
            queue=self.name,
            worker_id=self.worker_id,
            concurrency=self.settings.worker_concurrency,
            poll_interval_ms=self.settings.queue_poll_interval_ms,
        )

        try:
            await asyncio.gather(
                self._worker_loop(handler),
                self._heartbeat_loop(),
                self._stalled_recovery_loop(),
            )
        finally:
            self.running = False

    async def stop(self, grace_period_s: float | None = None) -> None:
        """Stop claiming work and drain in-flight items within the grace period."""
        grace_period_s = (
            self.settings.worker_shutdown_grace_s if grace_period_s is None else grace_period_s
        )
        logger.info("Stopping queue consumer", worker_id=self.worker_id)
        self.running = False

        if self._tasks:
            _, still_running = await asyncio.wait(set(self._tasks), timeout=grace_period_s)
            if still_running:
                logger.warning(
                    "Queue consumer stopped with active items",
                    worker_id=self.worker_id,
                    active_items=sorted(self.active_items),
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

    async def _sleep_while_running(self, seconds: float) -> None:
        """Sleep in short slices so stop() is noticed promptly."""
        deadline = asyncio.get_running_loop().time() + seconds
        while self.running:
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, 0.1))

    async def _worker_loop(self, handler: Handler) -> None:
        """Claim items while slots are free and run them in background tasks."""
        poll_interval = self.settings.queue_poll_interval_ms / 1000

        while self.running:
            try:
                if len(self.active_items) >= self.settings.worker_concurrency:
                    await self._sleep_while_running(poll_interval)
                    continue

                claimed = await self._claim_items()
                if not self.running:
                    # stop() already took its snapshot of in-flight tasks
                    await self._unclaim(claimed)
                    break

                for item in claimed:
                    task = asyncio.create_task(self._run_item(handler, item))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

                if not claimed:
                    await self._sleep_while_running(poll_interval)

            except Exception:
                logger.exception("Error in queue worker loop", worker_id=self.worker_id)
                await self._sleep_while_running(5)  # Back off on errors

    async def _claim_items(self) -> list[WorkItem]:
        """
        Claim due items using SELECT FOR UPDATE SKIP LOCKED.

        Returns the claimed items with their attempt counters already bumped.
        """
        available_slots = max(0, self.settings.worker_concurrency - len(self.active_items))
        if available_slots == 0:
            return []

        now = utcnow()
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem)
                .where(
                    and_(
                        QueueItem.queue_name == self.name,
                        QueueItem.state.in_(
                            [QueueItemState.WAITING.value, QueueItemState.DELAYED.value]
                        ),
                        QueueItem.run_at <= now,
                    )
                )
                .order_by(QueueItem.run_at, QueueItem.id)
                .limit(available_slots)
                .with_for_update(skip_locked=True)
            )
            rows = result.scalars().all()
            if not rows:
                return []

            ids = [row.id for row in rows]
            await session.execute(
                update(QueueItem)
                .where(QueueItem.id.in_(ids))
                .values(
                    state=QueueItemState.ACTIVE.value,
                    locked_by=self.worker_id,
                    locked_at=now,
                    heartbeat_at=now,
                    attempts_made=QueueItem.attempts_made + 1,
                    updated_at=now,
                ),
                execution_options={"synchronize_session": False},
            )
            await session.commit()

        self.active_items.update(ids)
        items = [
            WorkItem(
                job_id=row.payload["job_id"],
                url=row.payload["url"],
                attempts_made=row.attempts_made + 1,
                max_attempts=row.max_attempts,
                last_error=row.last_error,
                last_error_type=row.last_error_type,
            )
            for row in rows
        ]
        for row in rows:
            self._timeouts[row.id] = row.timeout_ms
            self._backoffs[row.id] = BackoffPolicy(
                type=BackoffType(row.backoff_type), delay_ms=row.backoff_delay_ms
            )

        logger.info(
            "Claimed work items",
            worker_id=self.worker_id,
            item_count=len(items),
            job_ids=ids,
        )
        return items

    async def _unclaim(self, items: list[WorkItem]) -> None:
        """Hand back items claimed after stop() without delivering them."""
        if not items:
            return

        ids = [item.job_id for item in items]
        async with self.database.SessionLocal() as session:
            await session.execute(
                update(QueueItem)
                .where(and_(QueueItem.id.in_(ids), QueueItem.locked_by == self.worker_id))
                .values(
                    state=QueueItemState.WAITING.value,
                    attempts_made=QueueItem.attempts_made - 1,
                    locked_by=None,
                    locked_at=None,
                    heartbeat_at=None,
                    updated_at=utcnow(),
                ),
                execution_options={"synchronize_session": False},
            )
            await session.commit()

        for item_id in ids:
            self.active_items.discard(item_id)
            self._timeouts.pop(item_id, None)
            self._backoffs.pop(item_id, None)
        logger.info("Returned items claimed during shutdown", worker_id=self.worker_id, job_ids=ids)

    async def _run_item(self, handler: Handler, item: WorkItem) -> None:
        """Run one delivery and record its outcome."""
        timeout_ms = self._timeouts.pop(item.job_id, None)
        backoff = self._backoffs.pop(item.job_id, BackoffPolicy())
        item_logger = logger.bind(job_id=item.job_id, attempt=item.attempts_made)

        try:
            item_logger.info("Processing work item started")
            try:
                result = await asyncio.wait_for(
                    handler(item), timeout_ms / 1000 if timeout_ms else None
                )
            except TimeoutError:
                raise JobTimeoutError(f"Job timed out after {timeout_ms}ms") from None

            await self._mark_completed(item, result)
            item_logger.info("Processing work item completed")

        except asyncio.CancelledError:
            # Left active; stalled recovery will redeliver it
            item_logger.warning("Work item processing cancelled")
            raise

        except Exception as e:
            item_logger.warning(
                "Work item processing failed",
                error=str(e),
                error_class=e.__class__.__name__,
            )
            await self._handle_failure(item, e, backoff)

        finally:
            self.active_items.discard(item.job_id)

    async def _mark_completed(self, item: WorkItem, result: Any) -> None:
        now = utcnow()
        async with self.database.SessionLocal() as session:
            await session.execute(
                update(QueueItem)
                .where(and_(QueueItem.id == item.job_id, QueueItem.locked_by == self.worker_id))
                .values(
                    state=QueueItemState.COMPLETED.value,
                    result=result if isinstance(result, dict) else {"value": result},
                    locked_by=None,
                    locked_at=None,
                    heartbeat_at=None,
                    finished_at=now,
                    updated_at=now,
                ),
                execution_options={"synchronize_session": False},
            )
            await session.commit()

    async def _handle_failure(
        self, item: WorkItem, error: Exception, backoff: BackoffPolicy
    ) -> None:
        """Schedule a redelivery or fail the item permanently."""
        item.last_error = str(error) or error.__class__.__name__
        item.last_error_type = getattr(error, "error_type", None)
        if hasattr(item.last_error_type, "value"):
            item.last_error_type = item.last_error_type.value

        retryable = getattr(error, "retryable", True)
        now = utcnow()

        if retryable and not item.is_final_attempt:
            delay_ms = calculate_backoff_ms(backoff, item.attempts_made)
            await self._emit("retry", self._retry_listeners, item)
            await self._release(
                item,
                state=QueueItemState.DELAYED,
                run_at=now + timedelta(milliseconds=delay_ms),
                finished_at=None,
            )
            logger.info(
                "Work item scheduled for retry",
                job_id=item.job_id,
                attempt=item.attempts_made,
                max_attempts=item.max_attempts,
                delay_ms=delay_ms,
            )
            return

        await self._release(item, state=QueueItemState.FAILED, run_at=None, finished_at=now)
        logger.error(
            "Work item permanently failed",
            job_id=item.job_id,
            attempts_made=item.attempts_made,
            max_attempts=item.max_attempts,
            retryable=retryable,
            error=item.last_error,
        )
        await self._emit("failed", self._failed_listeners, item)

    async def _release(
        self,
        item: WorkItem,
        state: QueueItemState,
        run_at: datetime | None,
        finished_at: datetime | None,
    ) -> None:
        values: dict[str, Any] = {
            "state": state.value,
            "locked_by": None,
            "locked_at": None,
            "heartbeat_at": None,
            "last_error": item.last_error,
            "last_error_type": item.last_error_type,
            "finished_at": finished_at,
            "updated_at": utcnow(),
        }
        if run_at is not None:
            values["run_at"] = run_at

        async with self.database.SessionLocal() as session:
            await session.execute(
                update(QueueItem)
                .where(and_(QueueItem.id == item.job_id, QueueItem.locked_by == self.worker_id))
                .values(**values),
                execution_options={"synchronize_session": False},
            )
            await session.commit()

    async def _heartbeat_loop(self) -> None:
        """Refresh heartbeats for items this worker holds."""
        while self.running:
            try:
                await self.heartbeat()
                await self._sleep_while_running(self.settings.queue_heartbeat_interval_s)
            except Exception:
                logger.exception("Error updating heartbeats", worker_id=self.worker_id)
                await self._sleep_while_running(self.settings.queue_heartbeat_interval_s)

    async def heartbeat(self) -> None:
        if not self.active_items:
            return
        async with self.database.SessionLocal() as session:
            await session.execute(
                update(QueueItem)
                .where(
                    and_(
                        QueueItem.id.in_(list(self.active_items)),
                        QueueItem.locked_by == self.worker_id,
                    )
                )
                .values(heartbeat_at=utcnow()),
                execution_options={"synchronize_session": False},
            )
            await session.commit()

    async def _stalled_recovery_loop(self) -> None:
        """Periodically redeliver items whose worker stopped heartbeating."""
        while self.running:
            try:
                await self.recover_stalled_items()
            except Exception:
                logger.exception("Error in stalled item recovery")
            await self._sleep_while_running(self.settings.queue_stalled_interval_s)

    async def recover_stalled_items(self) -> int:
        """
        Return stalled active items to the wait line, or fail them when their
        attempts are used up. Returns the number of items recovered.

        Each stalled item is first taken over by this worker with a
        conditional update, so a concurrent recovery or a late heartbeat from
        the original worker makes the takeover a no-op.
        """
        stalled_interval = self.settings.queue_stalled_interval_s
        cutoff = utcnow() - timedelta(seconds=stalled_interval)

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem).where(
                    and_(
                        QueueItem.queue_name == self.name,
                        QueueItem.state == QueueItemState.ACTIVE.value,
                        or_(QueueItem.heartbeat_at < cutoff, QueueItem.heartbeat_at.is_(None)),
                    )
                )
            )
            stalled_rows = result.scalars().all()

        recovered = 0
        for row in stalled_rows:
            if not await self._take_over(row, cutoff):
                continue

            item = WorkItem(
                job_id=row.payload["job_id"],
                url=row.payload["url"],
                attempts_made=row.attempts_made,
                max_attempts=row.max_attempts,
                last_error=f"Job stalled after {stalled_interval}s without heartbeat",
                last_error_type="TIMEOUT_ERROR",
            )
            exhausted = item.is_final_attempt
            logger.warning(
                "Recovered stalled work item",
                job_id=item.job_id,
                previous_worker=row.locked_by,
                attempts_made=item.attempts_made,
                max_attempts=item.max_attempts,
                permanently_failed=exhausted,
            )

            if exhausted:
                await self._release(
                    item, state=QueueItemState.FAILED, run_at=None, finished_at=utcnow()
                )
                await self._emit("failed", self._failed_listeners, item)
            else:
                # The job is reset before the item becomes claimable again
                await self._emit("retry", self._retry_listeners, item)
                await self._release(
                    item, state=QueueItemState.WAITING, run_at=utcnow(), finished_at=None
                )
            recovered += 1

        return recovered

    async def _take_over(self, row: QueueItem, cutoff: datetime) -> bool:
        """Claim ownership of a stalled item; False if something else touched it first."""
        heartbeat_unchanged = (
            QueueItem.heartbeat_at.is_(None)
            if row.heartbeat_at is None
            else QueueItem.heartbeat_at < cutoff
        )
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                update(QueueItem)
                .where(
                    and_(
                        QueueItem.id == row.id,
                        QueueItem.state == QueueItemState.ACTIVE.value,
                        QueueItem.attempts_made == row.attempts_made,
                        heartbeat_unchanged,
                    )
                )
                .values(locked_by=self.worker_id, heartbeat_at=utcnow(), updated_at=utcnow()),
                execution_options={"synchronize_session": False},
            )
            await session.commit()
        return result.rowcount > 0

    # Inspection and maintenance

    async def get_info(self, job_id: str) -> QueueInfo:
        """Report where a job's work item is; never raises."""
        try:
            async with self.database.SessionLocal() as session:
                row = await session.get(QueueItem, job_id)
                if row is None or row.queue_name != self.name:
                    return QueueInfo(found=False)

                if row.state == QueueItemState.WAITING.value:
                    ahead = await session.execute(
                        select(func.count(QueueItem.id)).where(
                            and_(
                                QueueItem.queue_name == self.name,
                                QueueItem.state == QueueItemState.WAITING.value,
                                or_(
                                    QueueItem.run_at < row.run_at,
                                    and_(QueueItem.run_at == row.run_at, QueueItem.id < row.id),
                                ),
                            )
                        )
                    )
                    position = (ahead.scalar() or 0) + 1

                    active = await session.execute(
                        select(func.count(QueueItem.id)).where(
                            and_(
                                QueueItem.queue_name == self.name,
                                QueueItem.state == QueueItemState.ACTIVE.value,
                            )
                        )
                    )
                    active_count = active.scalar() or 0
                    estimated_wait = round(
                        position * self.settings.queue_avg_processing_s / max(active_count, 1)
                    )
                    return QueueInfo(
                        found=True,
                        state=row.state,
                        position=position,
                        estimated_wait=estimated_wait,
                    )

                if row.state == QueueItemState.ACTIVE.value:
                    return QueueInfo(found=True, state=row.state, position=0)

                return QueueInfo(found=True, state=row.state, position=-1)

        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to get queue info", job_id=job_id, error=str(e))
            return QueueInfo(found=False, error=str(e))

    async def remove(self, job_id: str) -> bool:
        """Remove a work item from the queue; returns False if absent or on error."""
        try:
            async with self.database.SessionLocal() as session:
                result = await session.execute(
                    delete(QueueItem).where(
                        and_(QueueItem.id == job_id, QueueItem.queue_name == self.name)
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to remove job from queue", job_id=job_id, error=str(e))
            return False

        removed = result.rowcount > 0
        if removed:
            logger.info("Job removed from queue", job_id=job_id)
        return removed

    async def clean(self, grace_ms: int, state: QueueItemState | str) -> int:
        """Delete finished items in ``state`` older than ``grace_ms``."""
        state = QueueItemState(state)
        if state not in (QueueItemState.COMPLETED, QueueItemState.FAILED):
            raise ValueError(f"Only finished items can be cleaned, got: {state.value}")

        cutoff = utcnow() - timedelta(milliseconds=grace_ms)
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                delete(QueueItem).where(
                    and_(
                        QueueItem.queue_name == self.name,
                        QueueItem.state == state.value,
                        QueueItem.finished_at < cutoff,
                    )
                )
            )
            await session.commit()

        cleaned = result.rowcount
        logger.info("Cleaned old queue items", count=cleaned, state=state.value, grace_ms=grace_ms)
        return cleaned

    async def counts(self) -> dict[str, int]:
        """Number of items per delivery state."""
        async with self.database.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem.state, func.count(QueueItem.id))
                .where(QueueItem.queue_name == self.name)
                .group_by(QueueItem.state)
            )
            by_state = dict(result.all())
        return {state.value: by_state.get(state.value, 0) for state in QueueItemState}
