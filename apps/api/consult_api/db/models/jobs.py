"""SQLAlchemy ORM model for the durable job queue."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from consult_api.db.base import Base
from consult_api.db.enums import DEFAULT_JOB_STATUS
from consult_api.db.types import JsonType


class Job(Base):
    """
    Background job for async processing.

    Used for: session auto-deductions, auto-ends, call promotion, billing
    reconciliation sweeps. The worker (and the degraded poller on HTTP
    traffic) claims due jobs and processes them. Delivery is at-least-once:
    handlers must tolerate running more than once.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_pending", "status", "available_at"),
        Index("idx_jobs_queue", "queue", "status", "available_at"),
        Index(
            "uq_job_idempotency",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    queue: Mapped[str] = mapped_column(String(50), nullable=False)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    available_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        server_default=text(f"'{DEFAULT_JOB_STATUS.value}'"),
        default=DEFAULT_JOB_STATUS.value,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, server_default=text("0"), default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(
        Integer, server_default=text("3"), default=3, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Idempotency key for deduplication (unique when set)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
