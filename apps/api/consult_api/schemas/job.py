"""Pydantic schemas for background jobs."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class JobRead(BaseModel):
    """Job response schema."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    queue: str
    job_type: str
    payload: dict
    available_at: datetime
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None
    locked_at: datetime | None
    created_at: datetime
    completed_at: datetime | None
    idempotency_key: str | None


class JobListItem(BaseModel):
    """Job list item (minimal)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    queue: str
    job_type: str
    status: str
    available_at: datetime
    attempts: int
    created_at: datetime
    completed_at: datetime | None


class QueueRunResponse(BaseModel):
    processed: int


class ReconcileResponse(BaseModel):
    released_jobs: int
    promoted_calls: int
    expired_sessions: int
    repaired_units: int
