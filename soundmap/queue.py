"""Soundmap transcode pipeline - Durable job queue.

At-least-once delivery of transcode jobs with lease-based redelivery.

Semantics:
  - enqueue() stores the raw payload; validation belongs to the worker.
  - dequeue() claims one deliverable job under a lease of LEASE_TTL_SECONDS
    and counts the attempt at claim time.
  - ack() removes the job (successful jobs are not kept in history).
  - fail() schedules a retry with exponential backoff, or dead-letters the
    job once MAX_ATTEMPTS_TOTAL attempts have failed. Dead jobs are retained.
  - A lease that expires without ack/fail is reclaimed by requeue_stalled():
    the job is redelivered (or dead-lettered if attempts are exhausted).
    This can duplicate side effects when processing outlives the lease.

ack()/fail() carrying a lease token that no longer matches (the job was
reclaimed and redelivered meanwhile) are ignored and return False.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update

from soundmap.config import LEASE_TTL_SECONDS, MAX_ATTEMPTS_TOTAL, RETRY_BASE_DELAY_SECONDS
from soundmap.models import JobStatus, TranscodeJob, utc_now

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

    from soundmap.schemas import FailedOutcome, ReadyOutcome

logger = logging.getLogger(__name__)

# Error code recorded when a lease runs out on the last allowed attempt
LEASE_EXPIRED = "LEASE_EXPIRED"

# Claim retries when another worker slot wins the race for the same row
_CLAIM_RACE_RETRIES = 5


def generate_job_id() -> str:
    """Generate a unique job ID (uuid4 hex, 32 chars)."""
    return uuid.uuid4().hex


def backoff_delay_seconds(attempt: int, base_delay: int = RETRY_BASE_DELAY_SECONDS) -> int:
    """Delay before the next delivery after ``attempt`` failed.

    attempt 1 -> base, attempt 2 -> 2 * base, attempt 3 -> 4 * base, ...
    """
    return base_delay * 2 ** (max(attempt, 1) - 1)


@dataclass(frozen=True)
class Delivery:
    """One delivered attempt of a job."""

    job_id: str
    attempt: int
    payload: dict[str, Any]
    lease_token: str
    worker_id: str | None = None


class DurableQueue(ABC):
    """Queue contract consumed by the worker loop."""

    @abstractmethod
    def enqueue(self, payload: dict[str, Any]) -> str:
        """Persist a job payload; returns the assigned job id."""

    @abstractmethod
    def dequeue(self, worker_id: str) -> Delivery | None:
        """Claim the next deliverable job, or None when nothing is ready."""

    @abstractmethod
    def ack(self, delivery: Delivery, outcome: ReadyOutcome) -> bool:
        """Report success for a delivered attempt."""

    @abstractmethod
    def fail(self, delivery: Delivery, outcome: FailedOutcome) -> bool:
        """Report failure for a delivered attempt."""

    @abstractmethod
    def requeue_stalled(self) -> int:
        """Reclaim jobs whose lease expired; returns the number reclaimed."""


# --- SQL-backed queue ---


class SqlJobQueue(DurableQueue):
    """Durable queue on the transcode_jobs table.

    Each call runs in its own session, so one instance can be shared by all
    worker slots of a process.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        lease_ttl_seconds: int = LEASE_TTL_SECONDS,
        max_attempts: int = MAX_ATTEMPTS_TOTAL,
        retry_base_delay: int = RETRY_BASE_DELAY_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.lease_ttl_seconds = lease_ttl_seconds
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self._clock = clock

    def enqueue(self, payload: dict[str, Any]) -> str:
        job_id = generate_job_id()
        now = self._clock()
        with self._session_factory() as session:
            session.add(
                TranscodeJob(
                    job_id=job_id,
                    payload_json=json.dumps(payload),
                    status=JobStatus.QUEUED,
                    attempts=0,
                    available_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            session.commit()
        logger.info("Enqueued job_id=%s", job_id)
        return job_id

    def dequeue(self, worker_id: str) -> Delivery | None:
        self.requeue_stalled()

        for _ in range(_CLAIM_RACE_RETRIES):
            now = self._clock()
            with self._session_factory() as session:
                stmt = (
                    select(TranscodeJob)
                    .where(
                        TranscodeJob.status == JobStatus.QUEUED,
                        TranscodeJob.available_at <= now,
                    )
                    .order_by(TranscodeJob.available_at, TranscodeJob.id)
                    .limit(1)
                )
                candidate = session.execute(stmt).scalar_one_or_none()
                if candidate is None:
                    return None

                lease_token = uuid.uuid4().hex
                attempt = candidate.attempts + 1
                # Conditional update: only one slot can move the row out of "queued"
                result = session.execute(
                    update(TranscodeJob)
                    .where(
                        TranscodeJob.id == candidate.id,
                        TranscodeJob.status == JobStatus.QUEUED,
                    )
                    .values(
                        status=JobStatus.ACTIVE,
                        attempts=attempt,
                        lease_token=lease_token,
                        lease_expires_at=now + timedelta(seconds=self.lease_ttl_seconds),
                        worker_id=worker_id,
                        updated_at=now,
                    )
                )
                session.commit()

                if result.rowcount != 1:
                    logger.debug("Lost claim race for job_id=%s, retrying", candidate.job_id)
                    continue

                logger.info(
                    "Claimed job_id=%s attempt=%d/%d worker_id=%s",
                    candidate.job_id,
                    attempt,
                    self.max_attempts,
                    worker_id,
                )
                return Delivery(
                    job_id=candidate.job_id,
                    attempt=attempt,
                    payload=json.loads(candidate.payload_json),
                    lease_token=lease_token,
                    worker_id=worker_id,
                )
        return None

    def ack(self, delivery: Delivery, outcome: ReadyOutcome) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                delete(TranscodeJob).where(
                    TranscodeJob.job_id == delivery.job_id,
                    TranscodeJob.lease_token == delivery.lease_token,
                    TranscodeJob.status == JobStatus.ACTIVE,
                )
            )
            session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Ignoring ack for job_id=%s: lease no longer held", delivery.job_id
            )
            return False
        logger.info("Acked job_id=%s output=%s", delivery.job_id, outcome.output_key)
        return True

    def fail(self, delivery: Delivery, outcome: FailedOutcome) -> bool:
        now = self._clock()
        dead = delivery.attempt >= self.max_attempts
        values: dict[str, Any] = {
            "error_code": outcome.error_code,
            "error_message": outcome.message,
            "lease_token": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if dead:
            values["status"] = JobStatus.DEAD
        else:
            delay = backoff_delay_seconds(delivery.attempt, self.retry_base_delay)
            values["status"] = JobStatus.QUEUED
            values["available_at"] = now + timedelta(seconds=delay)

        with self._session_factory() as session:
            # Lease is re-checked in the write itself, like ack()
            result = session.execute(
                update(TranscodeJob)
                .where(
                    TranscodeJob.job_id == delivery.job_id,
                    TranscodeJob.lease_token == delivery.lease_token,
                    TranscodeJob.status == JobStatus.ACTIVE,
                    TranscodeJob.attempts == delivery.attempt,
                )
                .values(**values)
            )
            session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Ignoring fail for job_id=%s: lease no longer held", delivery.job_id
            )
            return False
        if dead:
            _log_dead_letter(delivery.job_id, delivery.attempt, outcome.error_code)
        else:
            logger.info(
                "Scheduling retry: job_id=%s, next_attempt=%d, delay=%ds",
                delivery.job_id,
                delivery.attempt + 1,
                delay,
            )
        return True

    def requeue_stalled(self) -> int:
        now = self._clock()
        reclaimed = 0
        with self._session_factory() as session:
            stmt = select(
                TranscodeJob.id,
                TranscodeJob.job_id,
                TranscodeJob.lease_token,
                TranscodeJob.attempts,
                TranscodeJob.worker_id,
            ).where(
                TranscodeJob.status == JobStatus.ACTIVE,
                TranscodeJob.lease_expires_at < now,
            )
            for row in session.execute(stmt).all():
                exhausted = row.attempts >= self.max_attempts
                values: dict[str, Any] = {
                    "lease_token": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                }
                if exhausted:
                    values.update(
                        status=JobStatus.DEAD,
                        error_code=LEASE_EXPIRED,
                        error_message="Lease expired on final attempt",
                    )
                else:
                    values.update(status=JobStatus.QUEUED, available_at=now)

                # The holder may ack or fail between the select and this write
                result = session.execute(
                    update(TranscodeJob)
                    .where(
                        TranscodeJob.id == row.id,
                        TranscodeJob.status == JobStatus.ACTIVE,
                        TranscodeJob.lease_token == row.lease_token,
                    )
                    .values(**values)
                )
                if result.rowcount != 1:
                    logger.debug("Job job_id=%s was reported before reclaim", row.job_id)
                    continue

                logger.warning(
                    "Reclaiming stalled job_id=%s (worker_id=%s, attempt=%d)",
                    row.job_id,
                    row.worker_id,
                    row.attempts,
                )
                if exhausted:
                    _log_dead_letter(row.job_id, row.attempts, LEASE_EXPIRED)
                reclaimed += 1
            session.commit()
        return reclaimed

    # --- Operator helpers ---

    def get(self, job_id: str) -> TranscodeJob | None:
        with self._session_factory() as session:
            stmt = select(TranscodeJob).where(TranscodeJob.job_id == job_id)
            return session.execute(stmt).scalar_one_or_none()

    def list_jobs(self, status: str | None = None, limit: int = 100) -> list[TranscodeJob]:
        with self._session_factory() as session:
            stmt = select(TranscodeJob).order_by(TranscodeJob.id).limit(limit)
            if status is not None:
                stmt = stmt.where(TranscodeJob.status == status)
            return list(session.execute(stmt).scalars())

    def retry(self, job_id: str) -> bool:
        """Move a dead job back to the queue with a fresh attempt budget."""
        now = self._clock()
        with self._session_factory() as session:
            result = session.execute(
                update(TranscodeJob)
                .where(TranscodeJob.job_id == job_id, TranscodeJob.status == JobStatus.DEAD)
                .values(status=JobStatus.QUEUED, attempts=0, available_at=now, updated_at=now)
            )
            session.commit()
        if result.rowcount == 1:
            logger.info("Requeued dead job_id=%s", job_id)
            return True
        return False


def _log_dead_letter(job_id: str, attempts: int, error_code: str) -> None:
    logger.warning(
        "Dead-letter: job_id=%s, attempts=%d, error=%s",
        job_id,
        attempts,
        error_code,
    )


# --- In-memory queue ---


@dataclass
class _MemoryJob:
    job_id: str
    payload: dict[str, Any]
    status: str = JobStatus.QUEUED
    attempts: int = 0
    available_at: datetime = field(default_factory=utc_now)
    lease_token: str | None = None
    lease_expires_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None


class MemoryJobQueue(DurableQueue):
    """Process-local queue with the same contract, for tests and local runs."""

    def __init__(
        self,
        lease_ttl_seconds: int = LEASE_TTL_SECONDS,
        max_attempts: int = MAX_ATTEMPTS_TOTAL,
        retry_base_delay: int = RETRY_BASE_DELAY_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.lease_ttl_seconds = lease_ttl_seconds
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, _MemoryJob] = {}

    def enqueue(self, payload: dict[str, Any]) -> str:
        job_id = generate_job_id()
        with self._lock:
            # Copy so later caller mutation cannot alter the stored envelope
            self._jobs[job_id] = _MemoryJob(
                job_id=job_id, payload=dict(payload), available_at=self._clock()
            )
        return job_id

    def dequeue(self, worker_id: str) -> Delivery | None:
        self.requeue_stalled()
        now = self._clock()
        with self._lock:
            ready = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.QUEUED and job.available_at <= now
            ]
            if not ready:
                return None
            job = min(ready, key=lambda j: j.available_at)
            job.status = JobStatus.ACTIVE
            job.attempts += 1
            job.lease_token = uuid.uuid4().hex
            job.lease_expires_at = now + timedelta(seconds=self.lease_ttl_seconds)
            return Delivery(
                job_id=job.job_id,
                attempt=job.attempts,
                payload=dict(job.payload),
                lease_token=job.lease_token,
                worker_id=worker_id,
            )

    def ack(self, delivery: Delivery, outcome: ReadyOutcome) -> bool:
        with self._lock:
            job = self._held(delivery)
            if job is None:
                return False
            del self._jobs[job.job_id]
            return True

    def fail(self, delivery: Delivery, outcome: FailedOutcome) -> bool:
        now = self._clock()
        with self._lock:
            job = self._held(delivery)
            if job is None:
                return False
            job.error_code = outcome.error_code
            job.error_message = outcome.message
            job.lease_token = None
            job.lease_expires_at = None
            if job.attempts >= self.max_attempts:
                job.status = JobStatus.DEAD
            else:
                job.status = JobStatus.QUEUED
                job.available_at = now + timedelta(
                    seconds=backoff_delay_seconds(job.attempts, self.retry_base_delay)
                )
            return True

    def requeue_stalled(self) -> int:
        now = self._clock()
        reclaimed = 0
        with self._lock:
            for job in self._jobs.values():
                if job.status != JobStatus.ACTIVE or job.lease_expires_at >= now:
                    continue
                job.lease_token = None
                job.lease_expires_at = None
                if job.attempts >= self.max_attempts:
                    job.error_code = LEASE_EXPIRED
                    job.status = JobStatus.DEAD
                else:
                    job.status = JobStatus.QUEUED
                    job.available_at = now
                reclaimed += 1
        return reclaimed

    def status_of(self, job_id: str) -> str | None:
        """Current status, or None once the job was acked."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.status if job else None

    def _held(self, delivery: Delivery) -> _MemoryJob | None:
        job = self._jobs.get(delivery.job_id)
        if job is None or job.status != JobStatus.ACTIVE or job.lease_token != delivery.lease_token:
            logger.warning("Ignoring report for job_id=%s: lease no longer held", delivery.job_id)
            return None
        return job
