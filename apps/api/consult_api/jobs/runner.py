"""
Run claimed jobs: shared by the worker loop and the degraded poller.

Handlers are synchronous database work. Each one runs in a worker thread with
its own session, so the job timeout can fire while the body is blocked on a
statement and the event loop (the API's, for the degraded poller) stays free.
A timed-out body is abandoned, not killed: it may still commit, which is safe
because every handler is idempotent and the job goes back to pending.
"""

from __future__ import annotations

import functools
import logging
from contextlib import AbstractContextManager
from typing import Callable
from uuid import UUID

import anyio
from sqlalchemy.orm import Session

from consult_api.core.clock import Clock, system_clock
from consult_api.core.config import settings
from consult_api.core.structured_logging import build_log_context
from consult_api.db.enums import JobStatus
from consult_api.db.models import Job
from consult_api.db.session import SessionLocal
from consult_api.jobs.registry import JobHandler, resolve_job_handler
from consult_api.services import job_service

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


def _run_handler(
    handler: JobHandler, job_id: UUID, session_factory: SessionFactory, clock: Clock
) -> None:
    with session_factory() as db:
        job = db.get(Job, job_id)
        if job is None:
            raise ValueError(f"Job {job_id} disappeared before it ran")
        handler(db, job, clock=clock)


async def process_job(
    job,
    *,
    clock: Clock = system_clock,
    session_factory: SessionFactory = SessionLocal,
) -> None:
    """Dispatch a single job to its handler, bounded by the job timeout."""
    logger.info("Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts)
    handler = resolve_job_handler(job.job_type)
    with anyio.fail_after(settings.JOB_TIMEOUT_SECONDS):
        await anyio.to_thread.run_sync(
            functools.partial(_run_handler, handler, job.id, session_factory, clock),
            abandon_on_cancel=True,
        )


async def run_claimed_job(
    db,
    job,
    *,
    clock: Clock = system_clock,
    session_factory: SessionFactory = SessionLocal,
) -> bool:
    """
    Process a job already claimed (status=running) and record the outcome.

    Returns True on success. Failures (timeouts included) go back to pending
    until the job runs out of attempts, then are logged as permanent.
    """
    try:
        await process_job(job, clock=clock, session_factory=session_factory)
    except Exception as e:
        await anyio.to_thread.run_sync(db.rollback)
        error_msg = f"{type(e).__name__}: {e}"
        await anyio.to_thread.run_sync(
            functools.partial(job_service.mark_job_failed, db, job, error_msg, now=clock.now())
        )
        context = build_log_context(
            session_id=(job.payload or {}).get("session_id"),
            session_type=(job.payload or {}).get("session_type"),
            job_id=str(job.id),
            job_type=job.job_type,
        )
        if job.status == JobStatus.FAILED.value:
            logger.error(
                "Job %s permanently failed after %s attempts (session=%s): %s",
                job.id,
                job.attempts,
                context.get("session_id"),
                error_msg,
                extra=context,
            )
        else:
            logger.warning(
                "Job %s failed (attempt %s/%s), will retry: %s",
                job.id,
                job.attempts,
                job.max_attempts,
                type(e).__name__,
                extra=context,
            )
        return False

    await anyio.to_thread.run_sync(
        functools.partial(job_service.mark_job_completed, db, job, now=clock.now())
    )
    logger.info("Job %s completed successfully", job.id)
    return True


async def drain_due_jobs(
    db,
    *,
    limit: int,
    clock: Clock = system_clock,
    queues=None,
    session_factory: SessionFactory = SessionLocal,
) -> int:
    """Claim up to `limit` due jobs and run them. Returns the number claimed."""
    jobs = await anyio.to_thread.run_sync(
        functools.partial(
            job_service.claim_pending_jobs, db, limit=limit, now=clock.now(), queues=queues
        )
    )
    if jobs:
        logger.info("Found %s pending jobs", len(jobs))
    for job in jobs:
        await run_claimed_job(db, job, clock=clock, session_factory=session_factory)
    return len(jobs)
