"""
Degraded-mode job polling from HTTP traffic.

When no worker process is running, due session jobs would sit in the queue
forever. The API middleware calls `maybe_poll()` after serving a request; at
most one scan runs per interval. The window is throttled in-process and, when
REDIS_URL is configured, across API processes with a `SET NX EX` lock.
Claims go through the same SKIP LOCKED path as the worker, so a running
worker and the poller never execute the same job concurrently.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from redis.exceptions import RedisError

from consult_api.core.clock import Clock, system_clock
from consult_api.core.config import settings
from consult_api.core.redis_client import get_sync_redis_client
from consult_api.db.enums import JobQueueName
from consult_api.db.session import SessionLocal
from consult_api.jobs.runner import drain_due_jobs

logger = logging.getLogger(__name__)

POLL_LOCK_KEY = "consult:degraded-poll"
POLLED_QUEUES = [JobQueueName.TEXT_SESSIONS, JobQueueName.CALL_SESSIONS]


class DegradedModePoller:
    """Runs a small batch of due session jobs at most once per interval."""

    def __init__(
        self,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        enabled: bool | None = None,
        clock: Clock = system_clock,
        session_factory: Callable = SessionLocal,
        redis_factory: Callable = get_sync_redis_client,
    ):
        self.interval = timedelta(
            seconds=interval_seconds or settings.DEGRADED_POLL_INTERVAL_SECONDS
        )
        self.batch_size = batch_size or settings.DEGRADED_POLL_BATCH_SIZE
        self.enabled = settings.DEGRADED_POLL_ENABLED if enabled is None else enabled
        self.clock = clock
        self._session_factory = session_factory
        self._redis_factory = redis_factory
        self._last_run: datetime | None = None

    def _acquire_window(self) -> bool:
        now = self.clock.now()
        if self._last_run is not None and now - self._last_run < self.interval:
            return False
        self._last_run = now

        client = self._redis_factory()
        if client is None:
            return True
        try:
            acquired = client.set(
                POLL_LOCK_KEY, now.isoformat(), nx=True, ex=int(self.interval.total_seconds())
            )
        except RedisError as e:
            logger.warning("Redis unavailable for degraded poll lock, using local throttle: %s", e)
            return True
        return bool(acquired)

    async def maybe_poll(self) -> int:
        """Scan for due session jobs if the window is open. Returns jobs claimed."""
        if not self.enabled or not self._acquire_window():
            return 0

        with self._session_factory() as db:
            try:
                claimed = await drain_due_jobs(
                    db,
                    limit=self.batch_size,
                    clock=self.clock,
                    queues=POLLED_QUEUES,
                    session_factory=self._session_factory,
                )
            except Exception:
                logger.exception("Degraded poll failed")
                return 0
        if claimed:
            logger.warning("Degraded poller ran %s jobs; is the worker down?", claimed)
        return claimed


poller = DegradedModePoller()
