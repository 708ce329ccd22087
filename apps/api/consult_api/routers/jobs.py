"""Jobs router - ops view of the session job queue (internal secret required)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from consult_api.core.deps import get_db
from consult_api.db.enums import JobQueueName, JobStatus, JobType
from consult_api.routers.internal import verify_internal_secret
from consult_api.schemas.job import JobListItem, JobRead
from consult_api.services import job_service

router = APIRouter(tags=["Jobs"], dependencies=[Depends(verify_internal_secret)])


@router.get("", response_model=list[JobListItem])
def list_jobs(
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    queue: JobQueueName | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """List recent jobs."""
    return job_service.list_jobs(
        db, status=status, job_type=job_type, queue=queue, limit=min(limit, 100)
    )


@router.get("/{job_id}", response_model=JobRead)
def get_job(job_id: UUID, db: Session = Depends(get_db)):
    """Get a job by ID."""
    job = job_service.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job
