from datetime import timedelta

import pytest

from consult_api.db.enums import JobQueueName, JobStatus, JobType
from consult_api.db.models import Job
from consult_api.db.session import SessionLocal
from consult_api.services import job_service


def _schedule(db, clock, job_type=JobType.SESSION_AUTO_END, queue=JobQueueName.TEXT_SESSIONS, **kwargs):
    return job_service.schedule_job(
        db,
        job_type,
        {"session_type": "text_session", "session_id": "x"},
        queue=queue,
        available_at=kwargs.pop("available_at", clock.now()),
        **kwargs,
    )


def test_schedule_job_is_idempotent_by_key(db, clock):
    first = _schedule(db, clock, idempotency_key="auto_end:text_session:x")
    second = _schedule(db, clock, idempotency_key="auto_end:text_session:x")

    assert first.id == second.id
    assert db.query(Job).count() == 1


def test_claim_pending_jobs_marks_running(db, clock):
    _schedule(db, clock)
    _schedule(db, clock, available_at=clock.now() + timedelta(minutes=10))

    claimed = job_service.claim_pending_jobs(db, limit=10, now=clock.now())
    assert len(claimed) == 1
    assert claimed[0].status == JobStatus.RUNNING.value
    assert claimed[0].attempts == 1
    assert claimed[0].locked_at == clock.now()

    assert job_service.claim_pending_jobs(db, limit=10, now=clock.now()) == []


def test_claim_pending_jobs_filters_by_queue(db, clock):
    _schedule(db, clock, queue=JobQueueName.TEXT_SESSIONS)
    _schedule(db, clock, job_type=JobType.BILLING_RECONCILE_SWEEP, queue=JobQueueName.BILLING)

    claimed = job_service.claim_pending_jobs(
        db, limit=10, now=clock.now(), queues=[JobQueueName.BILLING]
    )
    assert [j.job_type for j in claimed] == [JobType.BILLING_RECONCILE_SWEEP.value]


def test_claim_pending_jobs_skip_locked(db, db_engine, clock):
    if db_engine.dialect.name != "postgresql":
        pytest.skip("SKIP LOCKED behavior requires PostgreSQL")

    job = _schedule(db, clock)
    conn1 = db_engine.connect()
    conn2 = db_engine.connect()
    session1 = SessionLocal(bind=conn1)
    session2 = SessionLocal(bind=conn2)
    try:
        session1.query(Job).filter(Job.id == job.id).with_for_update().one()
        assert job_service.claim_pending_jobs(session2, limit=1, now=clock.now()) == []
    finally:
        session1.rollback()
        session2.rollback()
        session1.close()
        session2.close()
        conn1.close()
        conn2.close()


def test_failed_job_retries_with_backoff_then_fails(db, clock):
    job = _schedule(db, clock, max_attempts=2)

    [job] = job_service.claim_pending_jobs(db, limit=1, now=clock.now())
    job_service.mark_job_failed(db, job, "boom", now=clock.now())
    assert job.status == JobStatus.PENDING.value
    assert job.available_at == clock.now() + timedelta(seconds=5)
    assert job.last_error == "boom"

    clock.advance(seconds=5)
    [job] = job_service.claim_pending_jobs(db, limit=1, now=clock.now())
    job_service.mark_job_failed(db, job, "boom again", now=clock.now())
    assert job.status == JobStatus.FAILED.value
    assert job.completed_at == clock.now()


def test_mark_job_completed_clears_lock(db, clock):
    _schedule(db, clock)
    [job] = job_service.claim_pending_jobs(db, limit=1, now=clock.now())

    job_service.mark_job_completed(db, job, now=clock.now())

    assert job.status == JobStatus.COMPLETED.value
    assert job.locked_at is None


def test_release_stale_jobs(db, clock):
    job = _schedule(db, clock)
    job_service.claim_pending_jobs(db, limit=1, now=clock.now())

    clock.advance(seconds=60)
    assert job_service.release_stale_jobs(db, now=clock.now(), stale_after_seconds=120) == 0

    clock.advance(seconds=120)
    assert job_service.release_stale_jobs(db, now=clock.now(), stale_after_seconds=120) == 1
    db.refresh(job)
    assert job.status == JobStatus.PENDING.value
    assert job.last_error == "Worker lost while running job"


def test_list_jobs_filters(db, clock):
    _schedule(db, clock)
    _schedule(db, clock, job_type=JobType.CALL_PROMOTE_CONNECTED, queue=JobQueueName.CALL_SESSIONS)

    assert len(job_service.list_jobs(db)) == 2
    assert len(job_service.list_jobs(db, queue=JobQueueName.CALL_SESSIONS)) == 1
    assert job_service.list_jobs(db, status=JobStatus.FAILED) == []
