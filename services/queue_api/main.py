"""Soundmap transcode pipeline - Queue admin API FastAPI application.

Enqueue transcode jobs and inspect the durable queue ledger. Payloads are not
validated here: the worker's validation step owns that, so a malformed payload
shows up as a failed (and eventually dead) job rather than an HTTP error.

Run with:
    uvicorn services.queue_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Body, Depends, FastAPI, Query
from fastapi.responses import JSONResponse

from soundmap.db import init_db
from soundmap.models import JobStatus, TranscodeJob
from soundmap.queue import SqlJobQueue
from soundmap.schemas import EnqueueResponse, ErrorResponse, JobResponse

logger = logging.getLogger(__name__)

JOB_NOT_FOUND = "JOB_NOT_FOUND"
JOB_NOT_DEAD = "JOB_NOT_DEAD"

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    global _session_factory
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_queue() -> SqlJobQueue:
    """Dependency that provides the queue."""
    return SqlJobQueue(get_session_factory())


# --- Lifespan ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the queue ledger on startup unless a test injected one."""
    global _session_factory
    if _session_factory is None:
        _, _session_factory = init_db()
    yield


# --- FastAPI App ---


app = FastAPI(
    title="Soundmap Transcode Queue API",
    description="Enqueue transcode jobs and inspect the queue ledger.",
    version="0.1.0",
    lifespan=lifespan,
)


def make_error_response(status_code: int, error_code: str, error_message: str) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=error_code, error_message=error_message).model_dump(),
    )


def to_job_response(job: TranscodeJob) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        status=job.status,
        attempts=job.attempts,
        payload=json.loads(job.payload_json),
        available_at=job.available_at,
        lease_expires_at=job.lease_expires_at,
        worker_id=job.worker_id,
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


# --- Endpoints ---


@app.post(
    "/v1/jobs",
    response_model=EnqueueResponse,
    status_code=201,
    summary="Enqueue a transcode job",
)
def enqueue_job(
    payload: Annotated[dict[str, Any], Body(description="Job payload (soundId, sourceKey, ...)")],
    queue: Annotated[SqlJobQueue, Depends(get_queue)],
):
    job_id = queue.enqueue(payload)
    return EnqueueResponse(job_id=job_id)


@app.get("/v1/jobs", response_model=list[JobResponse], summary="List queued jobs")
def list_jobs(
    queue: Annotated[SqlJobQueue, Depends(get_queue)],
    status: Annotated[str | None, Query(description="Filter by status")] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
):
    return [to_job_response(job) for job in queue.list_jobs(status=status, limit=limit)]


@app.get(
    "/v1/jobs/{job_id}",
    response_model=JobResponse,
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    summary="Get one job",
)
def get_job(job_id: str, queue: Annotated[SqlJobQueue, Depends(get_queue)]):
    """Acked jobs are deleted, so a finished job also answers 404."""
    job = queue.get(job_id)
    if job is None:
        return make_error_response(404, JOB_NOT_FOUND, f"Job not found: {job_id}")
    return to_job_response(job)


@app.post(
    "/v1/jobs/{job_id}/retry",
    response_model=JobResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Job not found"},
        409: {"model": ErrorResponse, "description": "Job is not dead-lettered"},
    },
    summary="Requeue a dead-lettered job",
)
def retry_job(job_id: str, queue: Annotated[SqlJobQueue, Depends(get_queue)]):
    job = queue.get(job_id)
    if job is None:
        return make_error_response(404, JOB_NOT_FOUND, f"Job not found: {job_id}")
    if job.status != JobStatus.DEAD or not queue.retry(job_id):
        return make_error_response(409, JOB_NOT_DEAD, f"Job {job_id} is {job.status}")
    return to_job_response(queue.get(job_id))


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory ---


def override_session_factory(factory):
    """Override the session factory for testing."""
    global _session_factory
    _session_factory = factory
