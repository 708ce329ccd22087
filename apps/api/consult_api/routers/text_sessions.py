"""Text sessions router - start, activate, end and poll text consultations."""

from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from consult_api.core.clock import Clock
from consult_api.core.config import settings
from consult_api.core.deps import get_clock, get_current_user_id, get_db, get_job_queue
from consult_api.core.rate_limit import limiter
from consult_api.schemas.common import Envelope, ok
from consult_api.schemas.session import DoctorResponseCheck, SessionRead, TextSessionStart
from consult_api.services import session_service
from consult_api.services.queue_client import JobQueue

router = APIRouter(tags=["text-sessions"])


@router.post("/start", response_model=Envelope[SessionRead], status_code=201)
@limiter.limit(f"{settings.RATE_LIMIT_API}/minute")
def start_text_session(
    request: Request,
    data: TextSessionStart,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_id: UUID = Depends(get_current_user_id),
):
    """Open a text session; the doctor has a short window to respond."""
    now = clock.now()
    session = session_service.start_text_session(
        db,
        patient_id=user_id,
        doctor_id=data.doctor_id,
        appointment_id=data.appointment_id,
        now=now,
    )
    return ok(session_service.session_payload(session, now))


@router.post("/{session_id}/activate", response_model=Envelope[SessionRead])
def activate_text_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    queue: JobQueue = Depends(get_job_queue),
    user_id: UUID = Depends(get_current_user_id),
):
    """Doctor's first reply: starts the billing clock."""
    now = clock.now()
    session = session_service.activate_text_session(
        db, session_id, actor_id=user_id, now=now, queue=queue
    )
    return ok(session_service.session_payload(session, now))


@router.post("/{session_id}/end", response_model=Envelope[SessionRead])
def end_text_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_id: UUID = Depends(get_current_user_id),
):
    """Manual end by either participant."""
    now = clock.now()
    session = session_service.end_text_session(db, session_id, actor_id=user_id, now=now)
    return ok(session_service.session_payload(session, now))


@router.get("/{session_id}/check-response", response_model=Envelope[DoctorResponseCheck])
def check_doctor_response(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ok(session_service.check_doctor_response(db, session_id, now=clock.now()))


@router.get("/{session_id}", response_model=Envelope[SessionRead])
def get_text_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    session = session_service.get_text_session(db, session_id, now=now)
    return ok(session_service.session_payload(session, now))
