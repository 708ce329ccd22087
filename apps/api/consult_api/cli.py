"""CLI tools for session billing operations."""

import anyio
import click

from consult_api.core.config import settings
from consult_api.db.session import SessionLocal
from consult_api.jobs.runner import drain_due_jobs
from consult_api.services import job_service, lifecycle_service


@click.group()
def cli():
    """Consultation billing CLI tools."""
    pass


@cli.command()
@click.option("--limit", default=None, type=int, help="Max jobs to run (default: WORKER_BATCH_SIZE)")
def process_queue(limit: int | None):
    """
    Run due session jobs once, without a long-running worker.

    Example:
        python -m consult_api.cli process-queue --limit 50
    """
    batch = limit or settings.WORKER_BATCH_SIZE

    async def _run() -> int:
        with SessionLocal() as db:
            return await drain_due_jobs(db, limit=batch)

    processed = anyio.run(_run)
    click.echo(f"✅ Processed {processed} jobs")


@cli.command()
def promote_missed_connections():
    """
    Promote answered calls whose promotion job never ran, and backfill
    connected_at on calls that ended before promotion.
    """
    with SessionLocal() as db:
        promoted = lifecycle_service.promote_missed_connections(db)
    click.echo(f"✅ Promoted {promoted} calls")


@cli.command()
@click.option("--lookback-hours", default=24, help="Re-settle sessions ended within this window")
def reconcile_billing(lookback_hours: int):
    """Credit ledger units missing for recent sessions and expire stale ones."""
    with SessionLocal() as db:
        promoted = lifecycle_service.promote_missed_connections(db)
        expired = lifecycle_service.expire_stale_sessions(db)
        repaired = lifecycle_service.reconcile_recent_sessions(db, lookback_hours=lookback_hours)
    click.echo(f"✅ Promoted {promoted} calls, expired {expired} sessions, repaired {repaired} units")


@cli.command()
@click.option("--stale-after", default=None, type=int, help="Seconds a job may stay running")
def release_stale_jobs(stale_after: int | None):
    """Return jobs abandoned by a crashed worker to the queue."""
    with SessionLocal() as db:
        released = job_service.release_stale_jobs(db, stale_after_seconds=stale_after)
    click.echo(f"✅ Released {released} stale jobs")


if __name__ == "__main__":
    cli()
