"""Pure session rules: elapsed time, units, auto-end, lazy expiration, DAG."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from consult_api.core import session_rules
from consult_api.core.errors import ConnectedAtOverwriteError, InvalidTransitionError
from consult_api.db.enums import EndReason, SessionStatus, SessionType
from consult_api.db.models import CallSession, TextSession

T0 = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


def _text(**overrides):
    values = dict(
        session_type=SessionType.TEXT,
        status=SessionStatus.ACTIVE.value,
        started_at=T0,
        ended_at=None,
        doctor_response_deadline=None,
        sessions_remaining_before_start=3,
        sessions_used=0,
        auto_deductions_processed=0,
        manual_deduction_applied=False,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _call(**overrides):
    values = dict(
        session_type=SessionType.CALL,
        status=SessionStatus.CONNECTED.value,
        started_at=None,
        connected_at=T0,
        ended_at=None,
        sessions_remaining_before_start=2,
        sessions_used=0,
        auto_deductions_processed=0,
        manual_deduction_applied=False,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_elapsed_minutes_zero_before_start():
    session = _text(started_at=None, status=SessionStatus.WAITING_FOR_DOCTOR.value)
    assert session_rules.elapsed_minutes(session, T0 + timedelta(hours=1)) == 0


def test_elapsed_minutes_floors_to_one_once_started():
    session = _text()
    assert session_rules.elapsed_minutes(session, T0 + timedelta(seconds=5)) == 1


def test_elapsed_minutes_uses_ended_at_when_set():
    session = _text(ended_at=T0 + timedelta(minutes=23))
    assert session_rules.elapsed_minutes(session, T0 + timedelta(hours=5)) == 23


def test_elapsed_minutes_clamps_clock_skew():
    session = _text()
    assert session_rules.elapsed_minutes(session, T0 - timedelta(minutes=3)) == 1


def test_call_elapsed_uses_connected_at_not_started_at():
    session = _call(started_at=T0 - timedelta(minutes=30))
    assert session_rules.elapsed_minutes(session, T0 + timedelta(minutes=12)) == 12


def test_call_without_connected_at_has_no_elapsed_time():
    session = _call(connected_at=None, status=SessionStatus.ANSWERED.value)
    assert session_rules.elapsed_minutes(session, T0 + timedelta(minutes=12)) == 0


@pytest.mark.parametrize(
    "minutes,is_manual,expected",
    [
        (5, True, 1),
        (5, False, 0),
        (10, False, 1),
        (23, True, 3),
        (23, False, 2),
        (30, False, 3),
    ],
)
def test_sessions_to_deduct(minutes, is_manual, expected):
    session = _text(ended_at=T0 + timedelta(minutes=minutes))
    assert session_rules.sessions_to_deduct(session, T0, is_manual) == expected


def test_should_auto_end_at_quota_boundary():
    session = _text(sessions_remaining_before_start=2)
    assert not session_rules.should_auto_end(session, T0 + timedelta(minutes=19, seconds=59))
    assert session_rules.should_auto_end(session, T0 + timedelta(minutes=20))


def test_should_auto_end_false_before_start():
    session = _text(started_at=None, status=SessionStatus.WAITING_FOR_DOCTOR.value)
    assert not session_rules.should_auto_end(session, T0 + timedelta(hours=2))


def test_remaining_time_and_sessions():
    session = _text(sessions_remaining_before_start=3)
    now = T0 + timedelta(minutes=14)
    assert session_rules.total_allowed_minutes(session) == 30
    assert session_rules.remaining_time_minutes(session, now) == 16
    assert session_rules.remaining_sessions(session, now) == 2
    assert session_rules.next_auto_deduction_at(session, now) == T0 + timedelta(minutes=20)
    assert session_rules.expected_auto_deductions(session, now) == 1


def test_deduction_schedule_leaves_last_interval_to_auto_end():
    schedule = session_rules.deduction_schedule(T0, 3)
    assert schedule == [
        (1, T0 + timedelta(minutes=10)),
        (2, T0 + timedelta(minutes=20)),
    ]
    assert session_rules.deduction_schedule(T0, 1) == []


def test_lazy_expiration_for_unanswered_text_session():
    session = _text(
        status=SessionStatus.WAITING_FOR_DOCTOR.value,
        started_at=None,
        doctor_response_deadline=T0 + timedelta(seconds=90),
    )
    assert session_rules.apply_lazy_expiration(session, T0 + timedelta(seconds=89)) is None

    transition = session_rules.apply_lazy_expiration(session, T0 + timedelta(seconds=90))
    assert transition.target_status == SessionStatus.EXPIRED
    assert transition.reason == EndReason.DOCTOR_NO_RESPONSE
    assert transition.billable is False


def test_lazy_expiration_for_exhausted_quota_is_billable():
    session = _call(sessions_remaining_before_start=1)
    transition = session_rules.apply_lazy_expiration(session, T0 + timedelta(minutes=11))
    assert transition.reason == EndReason.TIME_EXPIRED
    assert transition.billable is True


def test_answered_call_bills_from_answered_at():
    session = _call(status=SessionStatus.ANSWERED.value, connected_at=None, answered_at=T0)
    assert session_rules.billing_anchor(session) == T0
    transition = session_rules.apply_lazy_expiration(session, T0 + timedelta(minutes=20))
    assert transition.target_status == SessionStatus.EXPIRED
    assert transition.billable is True


def test_lazy_expiration_ignores_terminal_sessions():
    session = _text(status=SessionStatus.ENDED.value, ended_at=T0 + timedelta(minutes=40))
    assert session_rules.apply_lazy_expiration(session, T0 + timedelta(hours=3)) is None


def test_transition_dag_never_moves_backward():
    assert session_rules.can_transition(SessionType.TEXT, "waiting_for_doctor", "active")
    assert session_rules.can_transition(SessionType.TEXT, "active", "ended")
    assert not session_rules.can_transition(SessionType.TEXT, "active", "waiting_for_doctor")
    assert not session_rules.can_transition(SessionType.TEXT, "ended", "active")
    assert session_rules.can_transition(SessionType.CALL, "answered", "ended")
    assert session_rules.can_transition(SessionType.CALL, "answered", "expired")
    assert not session_rules.can_transition(SessionType.CALL, "connected", "answered")
    assert not session_rules.can_transition(SessionType.CALL, "ended", "connected")


def test_allowed_prior_statuses():
    assert session_rules.allowed_prior_statuses(SessionType.CALL, "ended") == {
        "answered",
        "connected",
    }


def test_model_rejects_illegal_transition():
    session = TextSession(status=SessionStatus.WAITING_FOR_DOCTOR.value, modality="text")
    session.status = SessionStatus.ACTIVE.value
    session.status = SessionStatus.ENDED.value
    with pytest.raises(InvalidTransitionError):
        session.status = SessionStatus.ACTIVE.value


def test_model_rejects_bad_initial_status():
    with pytest.raises(InvalidTransitionError):
        CallSession(status=SessionStatus.CONNECTED.value, modality="voice")


def test_connected_at_is_write_once():
    call = CallSession(status=SessionStatus.PENDING.value, modality="voice")
    call.connected_at = T0
    call.connected_at = T0  # same value is a no-op
    with pytest.raises(ConnectedAtOverwriteError):
        call.connected_at = T0 + timedelta(seconds=5)
