"""Session service - start, answer, end and read text and call sessions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from consult_api.core import session_rules
from consult_api.core.clock import ensure_utc, system_clock
from consult_api.core.config import settings
from consult_api.core.errors import (
    InsufficientQuotaError,
    InvalidTransitionError,
    NotParticipantError,
    SessionConflictError,
    SessionNotFoundError,
)
from consult_api.core.structured_logging import build_log_context
from consult_api.db.enums import (
    AppointmentStatus,
    EndReason,
    Modality,
    SessionStatus,
    SessionType,
)
from consult_api.db.models import Appointment, CallSession, SessionMixin, TextSession
from consult_api.services import billing_guardrail, billing_service, lifecycle_service
from consult_api.services.queue_client import JobQueue

logger = logging.getLogger(__name__)

OPEN_TEXT_STATUSES = [SessionStatus.WAITING_FOR_DOCTOR.value, SessionStatus.ACTIVE.value]
OPEN_CALL_STATUSES = [
    SessionStatus.PENDING.value,
    SessionStatus.ANSWERED.value,
    SessionStatus.CONNECTED.value,
]


# =============================================================================
# Helpers
# =============================================================================


def _require_participant(session: SessionMixin | Appointment, actor_id: uuid.UUID) -> None:
    if actor_id not in (session.patient_id, session.doctor_id):
        raise NotParticipantError("Only the patient or the doctor can do this")


def _require_quota(db: Session, patient_id: uuid.UUID, modality: Modality) -> int:
    remaining = billing_service.remaining_quota(db, patient_id, modality.value)
    if remaining < 1:
        raise InsufficientQuotaError(f"No remaining {modality.value} sessions in subscription")
    return remaining


def _link_appointment(
    db: Session,
    session: SessionMixin,
    appointment_id: uuid.UUID | None,
) -> None:
    """Hand billing of a booked appointment over to the session."""
    if appointment_id is None:
        return
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if appointment is None:
        raise SessionNotFoundError(f"Appointment {appointment_id} not found")
    if (appointment.patient_id, appointment.doctor_id) != (session.patient_id, session.doctor_id):
        raise NotParticipantError("Appointment belongs to a different patient/doctor pair")
    if appointment.session_id is not None and appointment.session_id != session.id:
        raise SessionConflictError("Appointment already has a session")
    if appointment.billed_at is not None:
        raise SessionConflictError("Appointment was already billed")

    appointment.session_type = session.session_type.value
    appointment.session_id = session.id
    appointment.status = AppointmentStatus.IN_PROGRESS.value
    session.appointment_id = appointment.id


def _load(db: Session, model: type[SessionMixin], session_id: uuid.UUID) -> SessionMixin:
    session = db.query(model).filter(model.id == session_id).first()
    if session is None:
        raise SessionNotFoundError(f"{model.session_type.value} {session_id} not found")
    return session


def _load_fresh(
    db: Session, model: type[SessionMixin], session_id: uuid.UUID, now: datetime
) -> SessionMixin:
    """Load a session, persisting any expiration its deadlines imply."""
    session = _load(db, model, session_id)
    lifecycle_service.persist_lazy_expiration(db, session, now=now)
    return session


def session_payload(session: SessionMixin, now: datetime | None = None) -> dict[str, Any]:
    """Serializable view of a session plus its derived billing state."""
    now = ensure_utc(now or system_clock.now())
    payload: dict[str, Any] = {
        "id": session.id,
        "session_type": session.session_type.value,
        "patient_id": session.patient_id,
        "doctor_id": session.doctor_id,
        "modality": session.modality,
        "appointment_id": session.appointment_id,
        "status": session.status,
        "reason": session.reason,
        "created_at": session.created_at,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
        "is_active": session.is_active,
        "sessions_remaining_before_start": session.sessions_remaining_before_start,
        "sessions_used": session.sessions_used,
        "auto_deductions_processed": session.auto_deductions_processed,
        "manual_deduction_applied": session.manual_deduction_applied,
        "elapsed_minutes": session_rules.elapsed_minutes(session, now),
        "remaining_time_minutes": session_rules.remaining_time_minutes(session, now),
        "remaining_sessions": session_rules.remaining_sessions(session, now),
        "next_auto_deduction_at": (
            session_rules.next_auto_deduction_at(session, now) if session.is_active else None
        ),
    }
    if isinstance(session, TextSession):
        payload["doctor_response_deadline"] = session.doctor_response_deadline
    if isinstance(session, CallSession):
        payload.update(
            answered_at=session.answered_at,
            answered_by=session.answered_by,
            connected_at=session.connected_at,
            declined_at=session.declined_at,
        )
    return payload


# =============================================================================
# Text sessions
# =============================================================================


def start_text_session(
    db: Session,
    *,
    patient_id: uuid.UUID,
    doctor_id: uuid.UUID,
    appointment_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> TextSession:
    """
    Open a text session waiting for the doctor.

    One open text session per patient/doctor pair. The quota snapshot taken
    here bounds how long the session may run.
    """
    now = ensure_utc(now or system_clock.now())

    open_sessions = (
        db.query(TextSession)
        .filter(
            TextSession.patient_id == patient_id,
            TextSession.doctor_id == doctor_id,
            TextSession.status.in_(OPEN_TEXT_STATUSES),
        )
        .all()
    )
    for existing in open_sessions:
        lifecycle_service.persist_lazy_expiration(db, existing, now=now)
        if existing.status in OPEN_TEXT_STATUSES:
            raise SessionConflictError("An open text session already exists with this doctor")

    remaining = _require_quota(db, patient_id, Modality.TEXT)

    session = TextSession(
        patient_id=patient_id,
        doctor_id=doctor_id,
        modality=Modality.TEXT.value,
        status=SessionStatus.WAITING_FOR_DOCTOR.value,
        created_at=now,
        last_activity_at=now,
        doctor_response_deadline=now + timedelta(seconds=settings.TEXT_SESSION_RESPONSE_WINDOW_SECONDS),
        sessions_remaining_before_start=remaining,
    )
    db.add(session)
    db.flush()
    _link_appointment(db, session, appointment_id)
    db.commit()
    db.refresh(session)

    logger.info(
        "Text session created (quota=%s)",
        remaining,
        extra=build_log_context(session_id=str(session.id), session_type=SessionType.TEXT.value),
    )
    return session


def activate_text_session(
    db: Session,
    session_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    now: datetime | None = None,
    queue: JobQueue | None = None,
) -> TextSession:
    """
    The doctor's first response: start the billing clock and schedule jobs.

    Repeating the call on an already active session returns it unchanged.
    """
    now = ensure_utc(now or system_clock.now())
    session = _load_fresh(db, TextSession, session_id, now)
    if actor_id != session.doctor_id:
        raise NotParticipantError("Only the doctor can activate a text session")

    result = db.execute(
        update(TextSession)
        .where(
            TextSession.id == session.id,
            TextSession.status == SessionStatus.WAITING_FOR_DOCTOR.value,
        )
        .values(
            status=SessionStatus.ACTIVE.value,
            started_at=now,
            last_activity_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        db.refresh(session)
        if session.status == SessionStatus.ACTIVE.value:
            return session
        raise InvalidTransitionError(f"Cannot activate a session that is {session.status}")
    db.commit()
    db.refresh(session)

    logger.info(
        "Text session activated",
        extra=build_log_context(session_id=str(session.id), session_type=SessionType.TEXT.value),
    )
    lifecycle_service.schedule_billing_jobs(db, session, queue=queue)
    return session


def end_text_session(
    db: Session,
    session_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    now: datetime | None = None,
) -> TextSession:
    """
    Manually end a text session.

    An active session is billed for every full interval plus one unit. A
    session the doctor never answered expires without billing. Ending an
    already finished session returns it unchanged.
    """
    now = ensure_utc(now or system_clock.now())
    session = _load(db, TextSession, session_id)
    _require_participant(session, actor_id)
    lifecycle_service.persist_lazy_expiration(db, session, now=now)

    if session.status == SessionStatus.ACTIVE.value:
        lifecycle_service.finalize_session(
            db,
            session,
            target_status=SessionStatus.ENDED,
            reason=EndReason.MANUAL_END,
            is_manual_end=True,
            now=now,
        )
    elif session.status == SessionStatus.WAITING_FOR_DOCTOR.value:
        db.execute(
            update(TextSession)
            .where(
                TextSession.id == session.id,
                TextSession.status == SessionStatus.WAITING_FOR_DOCTOR.value,
            )
            .values(
                status=SessionStatus.EXPIRED.value,
                ended_at=now,
                reason=EndReason.MANUAL_END.value,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    db.refresh(session)
    return session


def get_text_session(
    db: Session, session_id: uuid.UUID, *, now: datetime | None = None
) -> TextSession:
    now = ensure_utc(now or system_clock.now())
    return _load_fresh(db, TextSession, session_id, now)


def check_doctor_response(
    db: Session, session_id: uuid.UUID, *, now: datetime | None = None
) -> dict[str, Any]:
    """Poll endpoint for the patient while waiting for the doctor's first reply."""
    now = ensure_utc(now or system_clock.now())
    session = _load_fresh(db, TextSession, session_id, now)

    time_remaining = 0
    if session.status == SessionStatus.WAITING_FOR_DOCTOR.value and session.doctor_response_deadline:
        time_remaining = max(
            0, int((ensure_utc(session.doctor_response_deadline) - now).total_seconds())
        )
    return {
        "session_id": session.id,
        "status": session.status,
        "doctor_responded": session.started_at is not None,
        "time_remaining_seconds": time_remaining,
        "reason": session.reason,
    }


# =============================================================================
# Call sessions
# =============================================================================


def start_call_session(
    db: Session,
    *,
    patient_id: uuid.UUID,
    doctor_id: uuid.UUID,
    modality: Modality,
    appointment_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> CallSession:
    """Open a ringing voice or video call."""
    now = ensure_utc(now or system_clock.now())
    modality = Modality(modality)
    if modality == Modality.TEXT:
        raise InvalidTransitionError("Call sessions are voice or video")

    open_call = (
        db.query(CallSession)
        .filter(
            CallSession.patient_id == patient_id,
            CallSession.doctor_id == doctor_id,
            CallSession.status.in_(OPEN_CALL_STATUSES),
        )
        .first()
    )
    if open_call is not None:
        lifecycle_service.persist_lazy_expiration(db, open_call, now=now)
        if open_call.status in OPEN_CALL_STATUSES:
            raise SessionConflictError("A call with this doctor is already in progress")

    remaining = _require_quota(db, patient_id, modality)

    call = CallSession(
        patient_id=patient_id,
        doctor_id=doctor_id,
        modality=modality.value,
        status=SessionStatus.PENDING.value,
        created_at=now,
        last_activity_at=now,
        sessions_remaining_before_start=remaining,
    )
    db.add(call)
    db.flush()
    _link_appointment(db, call, appointment_id)
    db.commit()
    db.refresh(call)

    logger.info(
        "Call session created (%s, quota=%s)",
        modality.value,
        remaining,
        extra=build_log_context(session_id=str(call.id), session_type=SessionType.CALL.value),
    )
    return call


def answer_call(
    db: Session,
    session_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    now: datetime | None = None,
    queue: JobQueue | None = None,
) -> CallSession:
    """
    Record the answer and schedule promotion after the grace period.

    The billing clock is anchored here (answered_at) even though the call is
    only marked connected by the promotion job.
    """
    now = ensure_utc(now or system_clock.now())
    call = _load(db, CallSession, session_id)
    _require_participant(call, actor_id)

    result = db.execute(
        update(CallSession)
        .where(
            CallSession.id == call.id,
            CallSession.status == SessionStatus.PENDING.value,
        )
        .values(
            status=SessionStatus.ANSWERED.value,
            answered_at=now,
            answered_by=actor_id,
            last_activity_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        db.refresh(call)
        if call.status in (SessionStatus.ANSWERED.value, SessionStatus.CONNECTED.value):
            return call
        raise InvalidTransitionError(f"Cannot answer a call that is {call.status}")
    db.commit()
    db.refresh(call)

    logger.info(
        "Call answered",
        extra=build_log_context(session_id=str(call.id), session_type=SessionType.CALL.value),
    )
    lifecycle_service.schedule_call_promotion(db, call, queue=queue)
    return call


def decline_call(
    db: Session,
    session_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    now: datetime | None = None,
) -> CallSession:
    now = ensure_utc(now or system_clock.now())
    call = _load(db, CallSession, session_id)
    _require_participant(call, actor_id)

    result = db.execute(
        update(CallSession)
        .where(
            CallSession.id == call.id,
            CallSession.status.in_(
                sorted(session_rules.allowed_prior_statuses(SessionType.CALL, SessionStatus.DECLINED))
            ),
            CallSession.connected_at.is_(None),
        )
        .values(
            status=SessionStatus.DECLINED.value,
            declined_at=now,
            ended_at=now,
            reason=EndReason.DECLINED.value,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        db.refresh(call)
        if call.status == SessionStatus.DECLINED.value:
            return call
        raise InvalidTransitionError(f"Cannot decline a call that is {call.status}")
    db.commit()
    db.refresh(call)
    return call


def end_call(
    db: Session,
    session_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    now: datetime | None = None,
) -> CallSession:
    """
    Hang up.

    A call that was never answered fails as missed. An answered call is billed
    from answered_at whether or not the promotion job has run yet.
    """
    now = ensure_utc(now or system_clock.now())
    call = _load(db, CallSession, session_id)
    _require_participant(call, actor_id)
    lifecycle_service.persist_lazy_expiration(db, call, now=now)

    if call.status == SessionStatus.PENDING.value:
        db.execute(
            update(CallSession)
            .where(
                CallSession.id == call.id,
                CallSession.status == SessionStatus.PENDING.value,
            )
            .values(
                status=SessionStatus.FAILED.value,
                ended_at=now,
                reason=EndReason.MISSED.value,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    elif call.status in session_rules.ENDABLE_STATUSES[SessionType.CALL]:
        if call.status == SessionStatus.ANSWERED.value:
            logger.warning(
                "Call ended before promotion; backfilling connected_at",
                extra=build_log_context(session_id=str(call.id), session_type=SessionType.CALL.value),
            )
        lifecycle_service.finalize_session(
            db,
            call,
            target_status=SessionStatus.ENDED,
            reason=EndReason.MANUAL_END,
            is_manual_end=True,
            now=now,
        )
    db.refresh(call)
    return call


def get_call_session(
    db: Session, session_id: uuid.UUID, *, now: datetime | None = None
) -> CallSession:
    now = ensure_utc(now or system_clock.now())
    return _load_fresh(db, CallSession, session_id, now)


# =============================================================================
# Appointments
# =============================================================================


def get_appointment(db: Session, appointment_id: uuid.UUID) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if appointment is None:
        raise SessionNotFoundError(f"Appointment {appointment_id} not found")
    return appointment


def get_appointment_session_status(
    db: Session, appointment_id: uuid.UUID, *, now: datetime | None = None
) -> dict[str, Any]:
    """Which path bills this appointment, and the owning session's state."""
    now = ensure_utc(now or system_clock.now())
    appointment = get_appointment(db, appointment_id)
    source = billing_guardrail.billing_source_for(appointment)

    session_data = None
    if isinstance(source, billing_guardrail.SessionBacked) and source.session_type:
        model = lifecycle_service.model_for(source.session_type)
        session = _load_fresh(db, model, source.session_id, now)
        session_data = session_payload(session, now)
        db.refresh(appointment)

    return {
        "appointment_id": appointment.id,
        "appointment_status": appointment.status,
        "billing_source": (
            "session" if isinstance(source, billing_guardrail.SessionBacked) else "appointment"
        ),
        "billed_at": appointment.billed_at,
        "session": session_data,
    }


def end_appointment(
    db: Session,
    appointment_id: uuid.UUID,
    *,
    actor_id: uuid.UUID,
    endpoint: str,
    now: datetime | None = None,
) -> Appointment:
    """Complete and bill a legacy appointment (guardrail applies)."""
    appointment = get_appointment(db, appointment_id)
    _require_participant(appointment, actor_id)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise InvalidTransitionError("Cannot end a cancelled appointment")
    if appointment.billed_at is not None:
        return appointment

    billing_service.process_appointment_end(db, appointment, endpoint=endpoint, now=now)
    db.refresh(appointment)
    return appointment
