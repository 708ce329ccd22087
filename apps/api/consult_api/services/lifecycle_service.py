"""
Session lifecycle transitions driven by time: auto-deductions, auto-ends,
call promotion, lazy expiration and the reconciliation sweep.

Every mutation here is a conditional update (or runs under a row lock), so a
job that is delivered twice, or run by the worker and the degraded poller at
the same time, changes state at most once. Billing happens only after the
state change has committed, and the billing engine is itself idempotent.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from consult_api.core import session_rules
from consult_api.core.clock import ensure_utc, system_clock
from consult_api.core.config import settings
from consult_api.core.structured_logging import build_log_context
from consult_api.db.enums import EndReason, JobQueueName, JobType, SessionStatus, SessionType
from consult_api.db.models import CallSession, SessionMixin, TextSession
from consult_api.services import billing_service, job_service
from consult_api.services.queue_client import JobQueue, default_queue

logger = logging.getLogger(__name__)

SESSION_MODELS: dict[SessionType, type[SessionMixin]] = {
    SessionType.TEXT: TextSession,
    SessionType.CALL: CallSession,
}

SESSION_QUEUES: dict[SessionType, JobQueueName] = {
    SessionType.TEXT: JobQueueName.TEXT_SESSIONS,
    SessionType.CALL: JobQueueName.CALL_SESSIONS,
}


def model_for(session_type: SessionType | str) -> type[SessionMixin]:
    return SESSION_MODELS[SessionType(session_type)]


def get_session(db: Session, session_type: SessionType | str, session_id: uuid.UUID) -> SessionMixin | None:
    model = model_for(session_type)
    return db.query(model).filter(model.id == session_id).first()


def _context(session: SessionMixin, **extra) -> dict:
    return build_log_context(
        session_id=str(session.id), session_type=session.session_type.value, **extra
    )


# =============================================================================
# Scheduling
# =============================================================================


def schedule_billing_jobs(
    db: Session, session: SessionMixin, *, queue: JobQueue | None = None
) -> int:
    """
    Enqueue the auto-deductions and the auto-end for a session whose billing
    clock just started. Idempotency keys make repeated calls harmless.
    """
    queue = queue or default_queue
    anchor = session_rules.billing_anchor(session)
    if anchor is None:
        return 0

    session_type = session.session_type
    queue_name = SESSION_QUEUES[session_type]
    scheduled = 0
    for count, run_at in session_rules.deduction_schedule(anchor, session.sessions_remaining_before_start):
        queue.enqueue(
            db,
            JobType.SESSION_AUTO_DEDUCTION,
            {
                "session_type": session_type.value,
                "session_id": str(session.id),
                "expected_deduction_count": count,
            },
            queue=queue_name,
            run_at=run_at,
            idempotency_key=f"auto_deduction:{session_type.value}:{session.id}:{count}",
        )
        scheduled += 1

    deadline = session_rules.quota_deadline(session)
    if deadline is not None:
        queue.enqueue(
            db,
            JobType.SESSION_AUTO_END,
            {
                "session_type": session_type.value,
                "session_id": str(session.id),
                "reason": EndReason.TIME_EXPIRED.value,
            },
            queue=queue_name,
            run_at=deadline,
            idempotency_key=f"auto_end:{session_type.value}:{session.id}",
        )
        scheduled += 1

    logger.info("Scheduled %s billing jobs", scheduled, extra=_context(session))
    return scheduled


def schedule_call_promotion(
    db: Session, call: CallSession, *, queue: JobQueue | None = None
) -> None:
    queue = queue or default_queue
    run_at = ensure_utc(call.answered_at) + timedelta(seconds=settings.CALL_CONNECT_GRACE_SECONDS)
    queue.enqueue(
        db,
        JobType.CALL_PROMOTE_CONNECTED,
        {"session_id": str(call.id)},
        queue=JobQueueName.CALL_SESSIONS,
        run_at=run_at,
        idempotency_key=f"call_promote:{call.id}",
    )


# =============================================================================
# Ending
# =============================================================================


def finalize_session(
    db: Session,
    session: SessionMixin,
    *,
    target_status: SessionStatus,
    reason: EndReason,
    is_manual_end: bool,
    now: datetime | None = None,
) -> bool:
    """
    Move a running session to ended/expired and settle it.

    Only the caller whose conditional update matches performs the transition
    and the settlement; concurrent callers get False. An answered call ended
    before promotion gets connected_at = answered_at in the same statement.
    Automatic ends are stamped no later than the quota deadline.
    """
    now = ensure_utc(now or system_clock.now())
    model = type(session)
    session_type = session.session_type
    allowed = session_rules.ENDABLE_STATUSES[session_type] & session_rules.allowed_prior_statuses(
        session_type, target_status
    )

    ended_at = now
    if not is_manual_end:
        deadline = session_rules.quota_deadline(session)
        if deadline is not None and deadline < now:
            ended_at = deadline

    values = {
        "status": target_status.value,
        "ended_at": ended_at,
        "reason": reason.value,
        "manual_deduction_applied": is_manual_end,
    }
    if session_type == SessionType.CALL:
        values["connected_at"] = func.coalesce(CallSession.connected_at, CallSession.answered_at)

    result = db.execute(
        update(model)
        .where(
            model.id == session.id,
            model.status.in_(sorted(allowed)),
            model.ended_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.info("Session already ended; skipping", extra=_context(session))
        return False
    db.commit()
    db.refresh(session)

    logger.info(
        "Session %s (%s)", target_status.value, reason.value, extra=_context(session)
    )
    billing_service.process_session_end(db, session, is_auto_end=not is_manual_end, now=now)
    return True


# =============================================================================
# Job bodies
# =============================================================================


def apply_auto_deduction(
    db: Session,
    session_type: SessionType | str,
    session_id: uuid.UUID,
    expected_count: int,
    *,
    now: datetime | None = None,
) -> bool:
    """
    Apply the Nth periodic deduction of a running session.

    Skips when the session is no longer running, the quota snapshot does not
    cover N, the interval has not elapsed, or deduction N (or a later one) was
    already applied. Returns True only when this call billed a unit.
    """
    now = ensure_utc(now or system_clock.now())
    session = get_session(db, session_type, session_id)
    if session is None:
        logger.warning("Auto-deduction for missing session %s", session_id)
        return False

    context = _context(session)
    if not session_rules.is_billing_active(session):
        logger.info("Auto-deduction skipped: session is %s", session.status, extra=context)
        return False
    if expected_count > session.sessions_remaining_before_start:
        logger.info("Auto-deduction %s skipped: beyond quota", expected_count, extra=context)
        return False
    if session_rules.auto_deduction_units(session, now) < expected_count:
        logger.info("Auto-deduction %s skipped: interval not elapsed", expected_count, extra=context)
        return False
    if billing_service.remaining_quota(db, session.patient_id, session.modality) < 1:
        logger.warning("Patient quota exhausted mid-session; ending early", extra=context)
        finalize_session(
            db,
            session,
            target_status=SessionStatus.ENDED,
            reason=EndReason.QUOTA_EXHAUSTED,
            is_manual_end=False,
            now=now,
        )
        return False

    model = type(session)
    result = db.execute(
        update(model)
        .where(
            model.id == session.id,
            model.status == session_rules.BILLING_ACTIVE_STATUS[session.session_type],
            model.auto_deductions_processed < expected_count,
        )
        .values(
            auto_deductions_processed=expected_count,
            sessions_used=model.sessions_used + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.info("Auto-deduction %s already applied", expected_count, extra=context)
        return False

    unit_index = db.execute(
        select(model.sessions_used).where(model.id == session.id)
    ).scalar_one()
    db.commit()
    db.refresh(session)

    billing_service.process_auto_deduction(db, session, unit_index=unit_index)
    logger.info("Auto-deduction %s applied as unit %s", expected_count, unit_index, extra=context)
    return True


def apply_auto_end(
    db: Session,
    session_type: SessionType | str,
    session_id: uuid.UUID,
    reason: EndReason | str = EndReason.TIME_EXPIRED,
    *,
    now: datetime | None = None,
) -> bool:
    """End a session whose quota ran out. No-op once the session is terminal."""
    session = get_session(db, session_type, session_id)
    if session is None:
        logger.warning("Auto-end for missing session %s", session_id)
        return False
    if session.status not in session_rules.ENDABLE_STATUSES[session.session_type]:
        logger.info("Auto-end skipped: session is %s", session.status, extra=_context(session))
        return False
    return finalize_session(
        db,
        session,
        target_status=SessionStatus.ENDED,
        reason=EndReason(reason),
        is_manual_end=False,
        now=now,
    )


def promote_call_to_connected(
    db: Session,
    session_id: uuid.UUID,
    *,
    now: datetime | None = None,
    queue: JobQueue | None = None,
) -> bool:
    """
    Promote an answered call to connected, anchoring billing at answered_at.

    Runs under a row lock on the call. A call that already ended without a
    connected_at is backfilled instead (status untouched). Returns True when
    the row changed.
    """
    call = db.execute(
        select(CallSession).where(CallSession.id == session_id).with_for_update()
    ).scalar_one_or_none()
    if call is None:
        db.rollback()
        logger.warning("Promotion for missing call %s", session_id)
        return False

    context = _context(call)
    if call.connected_at is not None:
        db.commit()
        logger.info("Call already connected", extra=context)
        return False
    if call.answered_at is None:
        db.commit()
        logger.info("Call never answered (status=%s); nothing to promote", call.status, extra=context)
        return False

    if call.ended_at is not None:
        call.connected_at = call.answered_at
        db.commit()
        logger.warning("Backfilled connected_at on call ended before promotion", extra=context)
        return True

    if call.status != SessionStatus.ANSWERED.value:
        db.commit()
        return False

    call.status = SessionStatus.CONNECTED.value
    call.connected_at = call.answered_at
    if call.started_at is None:
        call.started_at = call.answered_at
    db.commit()
    db.refresh(call)
    logger.info("Call promoted to connected", extra=context)

    schedule_billing_jobs(db, call, queue=queue)
    return True


# =============================================================================
# Lazy expiration and sweeps
# =============================================================================


def persist_lazy_expiration(
    db: Session, session: SessionMixin, *, now: datetime | None = None
) -> bool:
    """Apply the expiration a read discovered. Returns True when this call expired it."""
    now = ensure_utc(now or system_clock.now())
    transition = session_rules.apply_lazy_expiration(session, now)
    if transition is None:
        return False

    if transition.billable:
        return finalize_session(
            db,
            session,
            target_status=transition.target_status,
            reason=transition.reason,
            is_manual_end=False,
            now=now,
        )

    model = type(session)
    result = db.execute(
        update(model)
        .where(
            model.id == session.id,
            model.status.in_(
                sorted(
                    session_rules.allowed_prior_statuses(session.session_type, transition.target_status)
                    - session_rules.ENDABLE_STATUSES[session.session_type]
                )
            ),
        )
        .values(
            status=transition.target_status.value,
            ended_at=now,
            reason=transition.reason.value,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        db.refresh(session)
        return False
    db.commit()
    db.refresh(session)
    logger.info("Session expired on read (%s)", transition.reason.value, extra=_context(session))
    return True


def expire_stale_sessions(db: Session, *, now: datetime | None = None) -> int:
    """Expire sessions whose deadline passed without their job running."""
    now = ensure_utc(now or system_clock.now())
    expired = 0
    candidates: list[SessionMixin] = []
    candidates += (
        db.query(TextSession)
        .filter(
            TextSession.status.in_(
                [SessionStatus.WAITING_FOR_DOCTOR.value, SessionStatus.ACTIVE.value]
            )
        )
        .all()
    )
    candidates += (
        db.query(CallSession)
        .filter(
            CallSession.status.in_(
                [SessionStatus.ANSWERED.value, SessionStatus.CONNECTED.value]
            )
        )
        .all()
    )
    for session in candidates:
        if persist_lazy_expiration(db, session, now=now):
            expired += 1
    return expired


def promote_missed_connections(
    db: Session,
    *,
    now: datetime | None = None,
    queue: JobQueue | None = None,
) -> int:
    """
    Fallback for lost promotion jobs: answered calls past the grace period,
    and ended calls that never got connected_at.
    """
    now = ensure_utc(now or system_clock.now())
    grace_cutoff = now - timedelta(seconds=settings.CALL_CONNECT_GRACE_SECONDS)
    call_ids = db.execute(
        select(CallSession.id).where(
            CallSession.connected_at.is_(None),
            CallSession.answered_at.is_not(None),
            or_(
                (CallSession.status == SessionStatus.ANSWERED.value)
                & (CallSession.answered_at <= grace_cutoff),
                CallSession.ended_at.is_not(None),
            ),
        )
    ).scalars().all()
    db.commit()

    promoted = 0
    for call_id in call_ids:
        if promote_call_to_connected(db, call_id, now=now, queue=queue):
            promoted += 1
    if promoted:
        logger.warning("Promoted %s calls missed by the promotion job", promoted)
    return promoted


def reconcile_recent_sessions(
    db: Session, *, now: datetime | None = None, lookback_hours: int = 24
) -> int:
    """Re-settle sessions ended in the lookback window and repair running ones."""
    now = ensure_utc(now or system_clock.now())
    since = now - timedelta(hours=lookback_hours)
    repaired = 0
    for model in SESSION_MODELS.values():
        sessions = (
            db.query(model)
            .filter(
                or_(
                    model.ended_at >= since,
                    model.status == session_rules.BILLING_ACTIVE_STATUS[model.session_type],
                )
            )
            .all()
        )
        for session in sessions:
            repaired += billing_service.reconcile_session_billing(db, session, now=now)
    return repaired


def run_reconcile_sweep(
    db: Session,
    *,
    now: datetime | None = None,
    queue: JobQueue | None = None,
) -> dict[str, int]:
    """Every repair pass, in dependency order."""
    now = ensure_utc(now or system_clock.now())
    summary = {
        "released_jobs": job_service.release_stale_jobs(db, now=now),
        "promoted_calls": promote_missed_connections(db, now=now, queue=queue),
        "expired_sessions": expire_stale_sessions(db, now=now),
        "repaired_units": reconcile_recent_sessions(db, now=now),
    }
    logger.info("Reconcile sweep complete: %s", summary)
    return summary
