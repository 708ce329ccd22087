"""Session lifecycle job handlers.

Each handler takes a session owned by the calling thread and commits its own work.
"""

from __future__ import annotations

import logging
from uuid import UUID

from consult_api.core.clock import Clock, system_clock
from consult_api.db.enums import EndReason

logger = logging.getLogger(__name__)


def _require(payload: dict, *keys: str) -> None:
    missing = [key for key in keys if payload.get(key) in (None, "")]
    if missing:
        raise ValueError(f"Missing {', '.join(missing)} in job payload")


def process_session_auto_deduction(db, job, *, clock: Clock = system_clock) -> None:
    """
    Apply one periodic deduction.

    Payload:
        - session_type: text_session | call_session
        - session_id: UUID
        - expected_deduction_count: N, the deduction this job stands for
    """
    from consult_api.services import lifecycle_service

    payload = job.payload or {}
    _require(payload, "session_type", "session_id", "expected_deduction_count")
    lifecycle_service.apply_auto_deduction(
        db,
        payload["session_type"],
        UUID(payload["session_id"]),
        int(payload["expected_deduction_count"]),
        now=clock.now(),
    )


def process_session_auto_end(db, job, *, clock: Clock = system_clock) -> None:
    """
    End a session whose quota is used up.

    Payload:
        - session_type: text_session | call_session
        - session_id: UUID
        - reason: end reason (defaults to time_expired)
    """
    from consult_api.services import lifecycle_service

    payload = job.payload or {}
    _require(payload, "session_type", "session_id")
    lifecycle_service.apply_auto_end(
        db,
        payload["session_type"],
        UUID(payload["session_id"]),
        payload.get("reason") or EndReason.TIME_EXPIRED.value,
        now=clock.now(),
    )


def process_call_promote_connected(db, job, *, clock: Clock = system_clock) -> None:
    """
    Promote an answered call to connected after the grace period.

    Payload:
        - session_id: call session UUID
    """
    from consult_api.services import lifecycle_service

    payload = job.payload or {}
    _require(payload, "session_id")
    lifecycle_service.promote_call_to_connected(db, UUID(payload["session_id"]), now=clock.now())


def process_billing_reconcile_sweep(db, job, *, clock: Clock = system_clock) -> None:
    """Run every billing repair pass (stale jobs, missed promotions, expirations, ledger gaps)."""
    from consult_api.services import lifecycle_service

    job_id = job.id
    summary = lifecycle_service.run_reconcile_sweep(db, now=clock.now())
    logger.info("Reconcile sweep job %s: %s", job_id, summary)
