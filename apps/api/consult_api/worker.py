"""
Background worker for processing scheduled session jobs.

Usage:
    python -m consult_api.worker

The worker polls for due jobs (auto-deductions, auto-ends, call promotions,
reconcile sweeps) and processes them. For production, run this as a separate
process; the API's degraded poller only covers gaps while no worker runs.
"""

import asyncio
import logging
import os

from consult_api.core.clock import Clock, system_clock
from consult_api.core.config import settings
from consult_api.core.structured_logging import build_log_context
from consult_api.db.session import SessionLocal
from consult_api.jobs.runner import drain_due_jobs

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Worker configuration
POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL
BATCH_SIZE = settings.WORKER_BATCH_SIZE


async def run_once(*, clock: Clock = system_clock, batch_size: int = BATCH_SIZE) -> int:
    """One poll: claim and run a batch of due jobs."""
    with SessionLocal() as db:
        return await drain_due_jobs(db, limit=batch_size, clock=clock)


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)", POLL_INTERVAL_SECONDS, BATCH_SIZE
    )

    while True:
        try:
            await run_once()
        except Exception as e:
            logger.error("Error in worker loop: %s", e)

        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(
                request_id=os.getenv("WORKER_INSTANCE_ID"),
                route="worker",
                method="background",
            ),
        )
        raise


if __name__ == "__main__":
    main()
