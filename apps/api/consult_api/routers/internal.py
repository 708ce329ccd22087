"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from an external scheduler when no worker process is deployed.
"""

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from consult_api.core.clock import Clock
from consult_api.core.config import settings
from consult_api.core.deps import get_clock, get_db, get_session_factory
from consult_api.jobs.runner import drain_due_jobs
from consult_api.schemas.job import QueueRunResponse, ReconcileResponse
from consult_api.services import lifecycle_service

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


@router.post(
    "/process-queue",
    response_model=QueueRunResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def process_queue(
    limit: int | None = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    session_factory=Depends(get_session_factory),
):
    """Claim and run due jobs, as one worker poll would."""
    processed = await drain_due_jobs(
        db,
        limit=min(limit or settings.WORKER_BATCH_SIZE, 100),
        clock=clock,
        session_factory=session_factory,
    )
    return QueueRunResponse(processed=processed)


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def reconcile(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Billing repair sweep:
    - stale running jobs back to pending
    - answered calls missed by the promotion job
    - sessions past their deadline with no auto-end
    - ledger units missing for recent sessions
    """
    return ReconcileResponse(**lifecycle_service.run_reconcile_sweep(db, now=clock.now()))
