"""Job service - business logic for background job scheduling and processing."""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from consult_api.core.clock import system_clock
from consult_api.core.config import settings
from consult_api.db.enums import JobQueueName, JobStatus, JobType
from consult_api.db.models import Job

logger = logging.getLogger(__name__)


def schedule_job(
    db: Session,
    job_type: JobType,
    payload: dict,
    *,
    queue: JobQueueName | str,
    available_at: datetime | None = None,
    idempotency_key: str | None = None,
    max_attempts: int | None = None,
) -> Job:
    """
    Schedule a new background job.

    If available_at is None, the job is ready immediately.
    If idempotency_key is provided and a job with that key already exists,
    the existing job is returned instead of scheduling a duplicate.
    """
    if idempotency_key:
        existing = get_job_by_idempotency_key(db, idempotency_key)
        if existing:
            return existing

    job = Job(
        queue=queue.value if isinstance(queue, JobQueueName) else queue,
        job_type=job_type.value,
        payload=payload,
        available_at=available_at or system_clock.now(),
        status=JobStatus.PENDING.value,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        idempotency_key=idempotency_key,
    )
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        # Lost a race with a concurrent scheduler using the same key
        existing = get_job_by_idempotency_key(db, idempotency_key) if idempotency_key else None
        if existing is None:
            raise
        return existing
    db.commit()
    db.refresh(job)
    return job


def get_job_by_idempotency_key(db: Session, idempotency_key: str) -> Job | None:
    return db.query(Job).filter(Job.idempotency_key == idempotency_key).first()


def get_pending_jobs(
    db: Session,
    limit: int = 10,
    *,
    now: datetime | None = None,
    queues: list[JobQueueName] | None = None,
) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and available_at <= now, oldest first.
    """
    now = now or system_clock.now()
    query = db.query(Job).filter(
        Job.status == JobStatus.PENDING.value,
        Job.available_at <= now,
    )
    if queues:
        query = query.filter(Job.queue.in_([q.value for q in queues]))
    return query.order_by(Job.available_at).limit(limit).all()


def claim_pending_jobs(
    db: Session,
    limit: int = 10,
    *,
    now: datetime | None = None,
    job_types: list[JobType] | None = None,
    queues: list[JobQueueName] | None = None,
) -> list[Job]:
    """
    Atomically claim due jobs for this process.

    Rows are locked with SKIP LOCKED (PostgreSQL) so concurrent claimers never
    receive the same pending row; each claimed job is marked running and its
    attempt counter incremented before the transaction commits.
    """
    now = now or system_clock.now()
    stmt = (
        select(Job)
        .where(Job.status == JobStatus.PENDING.value, Job.available_at <= now)
        .order_by(Job.available_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if job_types:
        stmt = stmt.where(Job.job_type.in_([t.value for t in job_types]))
    if queues:
        stmt = stmt.where(Job.queue.in_([q.value for q in queues]))

    jobs = list(db.execute(stmt).scalars().all())
    for job in jobs:
        job.status = JobStatus.RUNNING.value
        job.attempts += 1
        job.locked_at = now
    db.commit()
    for job in jobs:
        db.refresh(job)
    return jobs


def get_job(db: Session, job_id: UUID) -> Job | None:
    """Get a job by ID."""
    return db.query(Job).filter(Job.id == job_id).first()


def list_jobs(
    db: Session,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    queue: JobQueueName | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs with optional filters, newest first."""
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status.value)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    if queue:
        query = query.filter(Job.queue == queue.value)
    return query.order_by(Job.created_at.desc()).limit(limit).all()


def mark_job_completed(db: Session, job: Job, *, now: datetime | None = None) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = now or system_clock.now()
    job.locked_at = None
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str, *, now: datetime | None = None) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending for retry after a short backoff.
    """
    now = now or system_clock.now()
    job.last_error = error[:2000]
    job.locked_at = None
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
        job.available_at = now + timedelta(seconds=settings.JOB_RETRY_BACKOFF_SECONDS)
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
    db.commit()
    db.refresh(job)
    return job


def release_stale_jobs(
    db: Session,
    *,
    now: datetime | None = None,
    stale_after_seconds: int | None = None,
) -> int:
    """
    Re-queue jobs whose worker died mid-run.

    A job left 'running' past the stale window is returned to 'pending' (or
    failed when out of attempts). Handlers are idempotent, so running the
    job again is always safe.
    """
    now = now or system_clock.now()
    cutoff = now - timedelta(seconds=stale_after_seconds or settings.JOB_STALE_AFTER_SECONDS)
    stale = (
        db.query(Job)
        .filter(Job.status == JobStatus.RUNNING.value, Job.locked_at < cutoff)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in stale:
        job.locked_at = None
        job.last_error = "Worker lost while running job"
        if job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING.value
            job.available_at = now
        else:
            job.status = JobStatus.FAILED.value
            job.completed_at = now
        logger.warning("Released stale job %s (type=%s, attempts=%s)", job.id, job.job_type, job.attempts)
    db.commit()
    return len(stale)
