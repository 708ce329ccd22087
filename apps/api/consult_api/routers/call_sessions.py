"""Call sessions router - voice and video call lifecycle."""

from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from consult_api.core.clock import Clock
from consult_api.core.config import settings
from consult_api.core.deps import get_clock, get_current_user_id, get_db, get_job_queue
from consult_api.core.rate_limit import limiter
from consult_api.db.enums import Modality
from consult_api.schemas.common import Envelope, ok
from consult_api.schemas.session import CallSessionStart, SessionRead
from consult_api.services import session_service
from consult_api.services.queue_client import JobQueue

router = APIRouter(tags=["call-sessions"])


@router.post("/start", response_model=Envelope[SessionRead], status_code=201)
@limiter.limit(f"{settings.RATE_LIMIT_API}/minute")
def start_call_session(
    request: Request,
    data: CallSessionStart,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_id: UUID = Depends(get_current_user_id),
):
    now = clock.now()
    call = session_service.start_call_session(
        db,
        patient_id=user_id,
        doctor_id=data.doctor_id,
        modality=Modality(data.call_type),
        appointment_id=data.appointment_id,
        now=now,
    )
    return ok(session_service.session_payload(call, now))


@router.post("/{session_id}/answer", response_model=Envelope[SessionRead])
def answer_call(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    queue: JobQueue = Depends(get_job_queue),
    user_id: UUID = Depends(get_current_user_id),
):
    """Answer a ringing call. Promotion to connected follows after a short grace period."""
    now = clock.now()
    call = session_service.answer_call(db, session_id, actor_id=user_id, now=now, queue=queue)
    return ok(session_service.session_payload(call, now))


@router.post("/{session_id}/decline", response_model=Envelope[SessionRead])
def decline_call(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_id: UUID = Depends(get_current_user_id),
):
    now = clock.now()
    call = session_service.decline_call(db, session_id, actor_id=user_id, now=now)
    return ok(session_service.session_payload(call, now))


@router.post("/{session_id}/end", response_model=Envelope[SessionRead])
def end_call(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_id: UUID = Depends(get_current_user_id),
):
    """Hang up; bills elapsed intervals plus one unit when the call was answered."""
    now = clock.now()
    call = session_service.end_call(db, session_id, actor_id=user_id, now=now)
    return ok(session_service.session_payload(call, now))


@router.get("/{session_id}", response_model=Envelope[SessionRead])
def get_call_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    call = session_service.get_call_session(db, session_id, now=now)
    return ok(session_service.session_payload(call, now))
