"""Auto-deductions, auto-end, lazy expiration and reconciliation sweeps."""

from datetime import timedelta

import pytest

from consult_api.core.errors import InvalidTransitionError
from consult_api.db.enums import EndReason, JobStatus, JobType, SessionStatus, SessionType
from consult_api.db.models import Job, TextSession, WalletTransaction
from consult_api.services import job_service, lifecycle_service, session_service


def _start(db, participants, clock, *, quota=None) -> TextSession:
    if quota is not None:
        participants.subscription.text_sessions_remaining = quota
        db.commit()
    session = session_service.start_text_session(
        db,
        patient_id=participants.patient_id,
        doctor_id=participants.doctor_id,
        now=clock.now(),
    )
    return session_service.activate_text_session(
        db, session.id, actor_id=participants.doctor_id, now=clock.now()
    )


def _units(db, session_id) -> list[int]:
    rows = (
        db.query(WalletTransaction.unit_index)
        .filter(WalletTransaction.session_id == session_id)
        .order_by(WalletTransaction.unit_index)
        .all()
    )
    return [row[0] for row in rows]


def test_activation_schedules_deductions_and_auto_end(db, participants, clock):
    session = _start(db, participants, clock, quota=3)

    jobs = db.query(Job).order_by(Job.available_at).all()
    assert [(j.job_type, j.available_at) for j in jobs] == [
        (JobType.SESSION_AUTO_DEDUCTION.value, clock.now() + timedelta(minutes=10)),
        (JobType.SESSION_AUTO_DEDUCTION.value, clock.now() + timedelta(minutes=20)),
        (JobType.SESSION_AUTO_END.value, clock.now() + timedelta(minutes=30)),
    ]
    assert jobs[1].payload == {
        "session_type": SessionType.TEXT.value,
        "session_id": str(session.id),
        "expected_deduction_count": 2,
    }


def test_rescheduling_is_idempotent(db, participants, clock):
    session = _start(db, participants, clock, quota=3)
    lifecycle_service.schedule_billing_jobs(db, session)
    assert db.query(Job).count() == 3


def test_auto_end_bills_the_full_quota(db, participants, clock):
    session = _start(db, participants, clock, quota=2)

    clock.advance(minutes=10)
    lifecycle_service.apply_auto_deduction(db, SessionType.TEXT, session.id, 1, now=clock.now())
    clock.advance(minutes=10)
    assert lifecycle_service.apply_auto_end(db, SessionType.TEXT, session.id, now=clock.now())

    db.refresh(session)
    assert session.status == SessionStatus.ENDED.value
    assert session.reason == EndReason.TIME_EXPIRED.value
    assert session.manual_deduction_applied is False
    assert session.sessions_used == 2
    assert _units(db, session.id) == [1, 2]


def test_late_auto_end_is_stamped_at_quota_deadline(db, participants, clock):
    start = clock.now()
    session = _start(db, participants, clock, quota=2)
    clock.advance(minutes=27)

    lifecycle_service.apply_auto_end(db, SessionType.TEXT, session.id, now=clock.now())

    db.refresh(session)
    assert session.ended_at == start + timedelta(minutes=20)
    assert _units(db, session.id) == [1, 2]


def test_auto_end_runs_once(db, participants, clock):
    session = _start(db, participants, clock, quota=1)
    clock.advance(minutes=10)

    assert lifecycle_service.apply_auto_end(db, SessionType.TEXT, session.id, now=clock.now())
    assert not lifecycle_service.apply_auto_end(db, SessionType.TEXT, session.id, now=clock.now())
    assert _units(db, session.id) == [1]


def test_auto_deduction_after_end_is_a_no_op(db, participants, clock):
    session = _start(db, participants, clock, quota=3)
    clock.advance(minutes=10, seconds=30)
    session_service.end_text_session(db, session.id, actor_id=participants.patient_id, now=clock.now())

    assert not lifecycle_service.apply_auto_deduction(
        db, SessionType.TEXT, session.id, 1, now=clock.now()
    )
    db.refresh(session)
    assert session.sessions_used == 2
    assert _units(db, session.id) == [1, 2]


def test_early_auto_deduction_is_skipped(db, participants, clock):
    session = _start(db, participants, clock, quota=3)
    clock.advance(minutes=9)
    assert not lifecycle_service.apply_auto_deduction(
        db, SessionType.TEXT, session.id, 1, now=clock.now()
    )
    db.refresh(session)
    assert session.auto_deductions_processed == 0


def test_auto_deduction_counter_is_monotonic(db, participants, clock):
    """Deduction 2 landing before deduction 1 must not let 1 apply afterwards."""
    session = _start(db, participants, clock, quota=3)
    clock.advance(minutes=21)

    assert lifecycle_service.apply_auto_deduction(db, SessionType.TEXT, session.id, 2, now=clock.now())
    assert not lifecycle_service.apply_auto_deduction(db, SessionType.TEXT, session.id, 1, now=clock.now())
    db.refresh(session)
    assert session.auto_deductions_processed == 2
    assert session.sessions_used == 1


def test_quota_exhausted_mid_session_ends_early(db, participants, clock):
    session = _start(db, participants, clock, quota=3)
    participants.subscription.text_sessions_remaining = 0
    db.commit()
    clock.advance(minutes=10)

    assert not lifecycle_service.apply_auto_deduction(
        db, SessionType.TEXT, session.id, 1, now=clock.now()
    )
    db.refresh(session)
    assert session.status == SessionStatus.ENDED.value
    assert session.reason == EndReason.QUOTA_EXHAUSTED.value


def test_read_expires_unanswered_text_session(db, participants, clock):
    session = session_service.start_text_session(
        db,
        patient_id=participants.patient_id,
        doctor_id=participants.doctor_id,
        now=clock.now(),
    )
    clock.advance(seconds=91)

    result = session_service.check_doctor_response(db, session.id, now=clock.now())

    assert result["status"] == SessionStatus.EXPIRED.value
    assert result["reason"] == EndReason.DOCTOR_NO_RESPONSE.value
    assert result["doctor_responded"] is False
    assert _units(db, session.id) == []


def test_read_expires_session_past_quota_and_bills_it(db, participants, clock):
    session = _start(db, participants, clock, quota=2)
    clock.advance(minutes=25)

    fetched = session_service.get_text_session(db, session.id, now=clock.now())

    assert fetched.status == SessionStatus.EXPIRED.value
    assert fetched.reason == EndReason.TIME_EXPIRED.value
    assert _units(db, session.id) == [1, 2]


def test_activation_after_deadline_is_rejected(db, participants, clock):
    session = session_service.start_text_session(
        db,
        patient_id=participants.patient_id,
        doctor_id=participants.doctor_id,
        now=clock.now(),
    )
    clock.advance(minutes=5)

    with pytest.raises(InvalidTransitionError):
        session_service.activate_text_session(
            db, session.id, actor_id=participants.doctor_id, now=clock.now()
        )


def test_reconcile_sweep_expires_and_releases(db, participants, clock):
    session = _start(db, participants, clock, quota=1)
    stuck = job_service.schedule_job(
        db,
        JobType.BILLING_RECONCILE_SWEEP,
        {},
        queue="billing",
        available_at=clock.now(),
    )
    job_service.claim_pending_jobs(db, limit=10, now=clock.now())
    clock.advance(minutes=15)

    summary = lifecycle_service.run_reconcile_sweep(db, now=clock.now())

    assert summary["expired_sessions"] == 1
    assert summary["released_jobs"] >= 1
    db.refresh(session)
    assert session.status == SessionStatus.EXPIRED.value
    assert _units(db, session.id) == [1]
    db.refresh(stuck)
    assert stuck.status == JobStatus.PENDING.value
