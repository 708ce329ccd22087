"""Queue client used by the session lifecycle to enqueue delayed jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy.orm import Session

from consult_api.db.enums import JobQueueName, JobType
from consult_api.db.models import Job
from consult_api.services import job_service


class JobQueue(Protocol):
    def enqueue(
        self,
        db: Session,
        job_type: JobType,
        payload: dict,
        *,
        queue: JobQueueName,
        run_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> Job: ...


class DatabaseJobQueue:
    """Durable queue backed by the jobs table."""

    def enqueue(
        self,
        db: Session,
        job_type: JobType,
        payload: dict,
        *,
        queue: JobQueueName,
        run_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> Job:
        return job_service.schedule_job(
            db,
            job_type,
            payload,
            queue=queue,
            available_at=run_at,
            idempotency_key=idempotency_key,
        )


default_queue = DatabaseJobQueue()
