"""
Pure session state rules: elapsed time, billable units, and the status DAG.

Nothing here touches the database or the clock; callers pass `now`. Text and
call sessions share one shape, so every function accepts either ORM model (or
any object exposing the same attributes).

Billing anchor:
- text sessions bill from `started_at` (set when the doctor first responds)
- call sessions bill from `connected_at` (set to the moment the call was
  answered, never the moment the promotion job ran); a call still `answered`
  because its promotion has not landed bills from `answered_at`
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from consult_api.core.clock import ensure_utc
from consult_api.db.enums import EndReason, SessionStatus, SessionType

MINUTES_PER_UNIT = 10


class SessionLike(Protocol):
    session_type: SessionType
    status: str
    started_at: datetime | None
    ended_at: datetime | None
    sessions_remaining_before_start: int
    sessions_used: int
    auto_deductions_processed: int
    manual_deduction_applied: bool


# =============================================================================
# Status DAG
# =============================================================================

_S = SessionStatus

TEXT_TRANSITIONS: dict[str, frozenset[str]] = {
    _S.WAITING_FOR_DOCTOR.value: frozenset({_S.ACTIVE.value, _S.EXPIRED.value}),
    _S.ACTIVE.value: frozenset({_S.ENDED.value, _S.EXPIRED.value}),
}

# answered -> ended covers a hang-up that lands before the promotion job, and
# answered -> expired a call whose promotion never ran. Both backfill
# connected_at from answered_at so billing is unaffected.
CALL_TRANSITIONS: dict[str, frozenset[str]] = {
    _S.PENDING.value: frozenset({_S.ANSWERED.value, _S.DECLINED.value, _S.FAILED.value}),
    _S.ANSWERED.value: frozenset(
        {
            _S.CONNECTED.value,
            _S.ENDED.value,
            _S.EXPIRED.value,
            _S.DECLINED.value,
            _S.FAILED.value,
        }
    ),
    _S.CONNECTED.value: frozenset({_S.ENDED.value, _S.EXPIRED.value}),
}

INITIAL_STATUSES: dict[SessionType, frozenset[str]] = {
    SessionType.TEXT: frozenset({_S.WAITING_FOR_DOCTOR.value}),
    SessionType.CALL: frozenset({_S.PENDING.value}),
}

TERMINAL_STATUSES = frozenset(
    {_S.ENDED.value, _S.EXPIRED.value, _S.DECLINED.value, _S.FAILED.value}
)

# Status in which the billing clock runs and auto-deductions apply
BILLING_ACTIVE_STATUS: dict[SessionType, str] = {
    SessionType.TEXT: _S.ACTIVE.value,
    SessionType.CALL: _S.CONNECTED.value,
}

# Statuses from which a session can be ended (and billed)
ENDABLE_STATUSES: dict[SessionType, frozenset[str]] = {
    SessionType.TEXT: frozenset({_S.ACTIVE.value}),
    SessionType.CALL: frozenset({_S.ANSWERED.value, _S.CONNECTED.value}),
}


def _value(status: Any) -> str:
    return status.value if isinstance(status, SessionStatus) else str(status)


def transitions_for(session_type: SessionType) -> dict[str, frozenset[str]]:
    return TEXT_TRANSITIONS if SessionType(session_type) == SessionType.TEXT else CALL_TRANSITIONS


def can_transition(session_type: SessionType, current: Any, target: Any) -> bool:
    """True when `current -> target` is an edge of the session's status DAG."""
    current_value = _value(current)
    target_value = _value(target)
    return target_value in transitions_for(session_type).get(current_value, frozenset())


def allowed_prior_statuses(session_type: SessionType, target: Any) -> frozenset[str]:
    """Statuses a conditional update may expect when moving to `target`."""
    target_value = _value(target)
    return frozenset(
        source
        for source, targets in transitions_for(session_type).items()
        if target_value in targets
    )


def is_terminal(status: Any) -> bool:
    return _value(status) in TERMINAL_STATUSES


def is_billing_active(session: SessionLike) -> bool:
    return session.status == BILLING_ACTIVE_STATUS[SessionType(session.session_type)]


# =============================================================================
# Time and units
# =============================================================================


def billing_anchor(session: SessionLike) -> datetime | None:
    if SessionType(session.session_type) == SessionType.CALL:
        return ensure_utc(
            getattr(session, "connected_at", None) or getattr(session, "answered_at", None)
        )
    return ensure_utc(session.started_at)


def elapsed_minutes(session: SessionLike, now: datetime) -> int:
    """Whole billable minutes; 0 before start, at least 1 once started."""
    anchor = billing_anchor(session)
    if anchor is None:
        return 0
    end = ensure_utc(session.ended_at) or ensure_utc(now)
    seconds = max(0.0, (end - anchor).total_seconds())
    return max(1, int(seconds // 60))


def auto_deduction_units(session: SessionLike, now: datetime) -> int:
    """Full intervals elapsed, i.e. units owed by auto-deduction."""
    return elapsed_minutes(session, now) // MINUTES_PER_UNIT


def sessions_to_deduct(session: SessionLike, now: datetime, is_manual_end: bool) -> int:
    """Units billed for the whole session: every full interval, plus one on manual end."""
    return auto_deduction_units(session, now) + (1 if is_manual_end else 0)


def total_allowed_minutes(session: SessionLike) -> int:
    return (session.sessions_remaining_before_start or 0) * MINUTES_PER_UNIT


def should_auto_end(session: SessionLike, now: datetime) -> bool:
    """True once the pre-purchased quota has been consumed."""
    if billing_anchor(session) is None:
        return False
    return elapsed_minutes(session, now) >= total_allowed_minutes(session)


def remaining_time_minutes(session: SessionLike, now: datetime) -> int:
    return max(0, total_allowed_minutes(session) - elapsed_minutes(session, now))


def remaining_sessions(session: SessionLike, now: datetime) -> int:
    return max(0, (session.sessions_remaining_before_start or 0) - auto_deduction_units(session, now))


def expected_auto_deductions(session: SessionLike, now: datetime) -> int:
    """Auto-deductions that should have been applied by `now`, capped at the quota."""
    return min(auto_deduction_units(session, now), session.sessions_remaining_before_start or 0)


def next_auto_deduction_at(session: SessionLike, now: datetime) -> datetime | None:
    anchor = billing_anchor(session)
    if anchor is None:
        return None
    next_unit = auto_deduction_units(session, now) + 1
    return anchor + timedelta(minutes=next_unit * MINUTES_PER_UNIT)


def quota_deadline(session: SessionLike) -> datetime | None:
    """When the quota snapshot runs out; the auto-end job is scheduled for this instant."""
    anchor = billing_anchor(session)
    if anchor is None:
        return None
    return anchor + timedelta(minutes=total_allowed_minutes(session))


def deduction_schedule(anchor: datetime, quota: int) -> list[tuple[int, datetime]]:
    """
    (expected_count, run_at) for every interval before the quota deadline.

    The last interval is billed by the auto-end job, so quota N schedules
    N - 1 auto-deductions.
    """
    anchor = ensure_utc(anchor)
    return [
        (count, anchor + timedelta(minutes=count * MINUTES_PER_UNIT))
        for count in range(1, max(0, quota))
    ]


# =============================================================================
# Lazy expiration
# =============================================================================


@dataclass(frozen=True)
class LazyTransition:
    """A transition a read path must persist before answering."""

    target_status: SessionStatus
    reason: EndReason
    billable: bool


def apply_lazy_expiration(session: SessionLike, now: datetime) -> LazyTransition | None:
    """
    Decide whether a stale session should be expired on read.

    - Text session still waiting after its doctor-response deadline: expired,
      nothing billable happened.
    - Running session past its quota deadline: expired and billed as an
      auto end (the auto-end job may simply not have run yet).
    """
    now = ensure_utc(now)
    session_type = SessionType(session.session_type)

    if session_type == SessionType.TEXT and session.status == _S.WAITING_FOR_DOCTOR.value:
        deadline = ensure_utc(getattr(session, "doctor_response_deadline", None))
        if deadline is not None and now >= deadline:
            return LazyTransition(_S.EXPIRED, EndReason.DOCTOR_NO_RESPONSE, billable=False)
        return None

    if session.status in ENDABLE_STATUSES[session_type] and should_auto_end(session, now):
        return LazyTransition(_S.EXPIRED, EndReason.TIME_EXPIRED, billable=True)

    return None


def status_details(session: SessionLike, now: datetime) -> dict[str, Any]:
    """Debug snapshot of derived billing state."""
    return {
        "status": session.status,
        "elapsed_minutes": elapsed_minutes(session, now),
        "total_allowed_minutes": total_allowed_minutes(session),
        "remaining_time_minutes": remaining_time_minutes(session, now),
        "remaining_sessions": remaining_sessions(session, now),
        "sessions_remaining_before_start": session.sessions_remaining_before_start,
        "sessions_used": session.sessions_used,
        "auto_deductions_processed": session.auto_deductions_processed,
        "manual_deduction_applied": session.manual_deduction_applied,
        "should_auto_end": should_auto_end(session, now),
        "next_auto_deduction_at": next_auto_deduction_at(session, now),
    }
