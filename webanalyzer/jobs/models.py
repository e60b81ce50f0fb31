"""
Persistence models for analysis jobs and their queue work items.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, TIMESTAMP, CheckConstraint, Index, Integer, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from webanalyzer.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns timestamps without tzinfo)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def terminal(cls) -> tuple["JobStatus", ...]:
        return (cls.COMPLETED, cls.FAILED)


class ErrorType(str, Enum):
    """Classification stored alongside a failed job."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    QUEUE_ERROR = "QUEUE_ERROR"
    NOT_FOUND_ERROR = "NOT_FOUND_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class QueueItemState(str, Enum):
    """Delivery state of a queue work item."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def pending(cls) -> tuple["QueueItemState", ...]:
        """States in which the item still owes a delivery."""
        return (cls.WAITING, cls.ACTIVE, cls.DELAYED)


class AnalysisJob(Base):
    """
    Durable job record: the source of truth for a job's business state.

    Rows expire ``job_ttl_hours`` after their last write; expired rows are
    invisible to reads and purged by the cleanup sweeper.
    """

    __tablename__ = "analysis_jobs"

    job_id: Mapped[str] = mapped_column(String(19), primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False, comment="Submitted URL")
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="PENDING|PROCESSING|COMPLETED|FAILED",
    )

    # Outcome
    results: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Extracted page metadata"
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    http_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, comment="TTL deadline"
    )

    __table_args__ = (
        Index("ix_analysis_jobs_status_created_at", "status", "created_at"),
        Index("ix_analysis_jobs_expires_at", "expires_at"),
    )


class QueueItem(Base):
    """
    Work item in the database-backed delivery queue.

    The item id is the job id, so each job owns at most one work item.
    """

    __tablename__ = "queue_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    queue_name: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Work item data {job_id, url}"
    )

    # Delivery state
    state: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=QueueItemState.WAITING.value,
        comment="waiting|active|delayed|completed|failed",
    )
    attempts_made: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=3)
    backoff_type: Mapped[str] = mapped_column(Text, nullable=False, default="exponential")
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    timeout_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    run_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, comment="Earliest delivery time"
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Outcome
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_type: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "state IN ('waiting', 'active', 'delayed', 'completed', 'failed')",
            name="queue_items_state_check",
        ),
        Index("ix_queue_items_claim", "queue_name", "state", "run_at"),
    )
