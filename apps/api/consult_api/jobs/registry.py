"""Job handler registry."""

from __future__ import annotations

from typing import Callable, Mapping

from consult_api.db.enums import JobType
from consult_api.jobs.handlers import sessions

# Handlers are synchronous; the runner calls them in a worker thread
JobHandler = Callable[..., None]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.SESSION_AUTO_DEDUCTION.value: sessions.process_session_auto_deduction,
    JobType.SESSION_AUTO_END.value: sessions.process_session_auto_end,
    JobType.CALL_PROMOTE_CONNECTED.value: sessions.process_call_promote_connected,
    JobType.BILLING_RECONCILE_SWEEP.value: sessions.process_billing_reconcile_sweep,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
