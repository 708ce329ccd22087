"""FastAPI dependencies for database sessions, time, queueing and the caller."""

from typing import Generator
from uuid import UUID

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from consult_api.core.clock import Clock, system_clock
from consult_api.db.session import SessionLocal
from consult_api.services.queue_client import JobQueue, default_queue


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return system_clock


def get_job_queue() -> JobQueue:
    return default_queue


def get_current_user_id(x_user_id: str = Header(...)) -> UUID:
    """
    Caller identity as forwarded by the authenticating gateway.

    Authentication happens upstream; this service only needs the user id to
    check session participation.
    """
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id header")


def get_session_factory():
    """Factory for the per-job sessions queue handlers run in."""
    return SessionLocal
