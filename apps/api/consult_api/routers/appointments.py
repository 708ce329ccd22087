"""Appointments router - legacy billing path and session status."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from consult_api.core.clock import Clock
from consult_api.core.deps import get_clock, get_current_user_id, get_db
from consult_api.schemas.appointment import AppointmentRead, AppointmentSessionStatus
from consult_api.schemas.common import Envelope, ok
from consult_api.services import session_service

router = APIRouter(tags=["appointments"])


@router.get("/{appointment_id}/session-status", response_model=Envelope[AppointmentSessionStatus])
def get_appointment_session_status(
    appointment_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return ok(
        session_service.get_appointment_session_status(db, appointment_id, now=clock.now())
    )


@router.post("/{appointment_id}/end", response_model=Envelope[AppointmentRead])
def end_appointment(
    appointment_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_id: UUID = Depends(get_current_user_id),
):
    """
    Complete and bill an appointment through the legacy path.

    Refused with SESSION_BILLING_REQUIRED when a session owns the appointment
    and the guardrail is enforced.
    """
    appointment = session_service.end_appointment(
        db,
        appointment_id,
        actor_id=user_id,
        endpoint="POST /appointments/{appointment_id}/end",
        now=clock.now(),
    )
    return ok(AppointmentRead.model_validate(appointment))
