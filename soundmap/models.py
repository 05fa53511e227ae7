"""Soundmap transcode pipeline - SQLAlchemy ORM models.

Database tables:
1. transcode_jobs (durable queue ledger)
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class JobStatus:
    """Lifecycle states of a queued transcode job."""

    QUEUED = "queued"
    ACTIVE = "active"
    DEAD = "dead"


class TranscodeJob(Base):
    """One transcode request held by the durable queue.

    Successful jobs are deleted on ack; exhausted jobs stay with status "dead"
    for operator inspection.
    """

    __tablename__ = "transcode_jobs"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Queue-assigned identifier (used for correlation and staging paths)
    job_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    # Raw job payload as JSON text. Validated by the worker, not the queue.
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=JobStatus.QUEUED, index=True
    )

    # Number of deliveries so far (incremented at claim time)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Not deliverable before this instant (backoff)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Lease held by the worker slot currently processing the job
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    worker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Last failure (error code + message)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_jobs_status_available", "status", "available_at"),
        Index("ix_jobs_lease_expires_at", "lease_expires_at"),
    )
