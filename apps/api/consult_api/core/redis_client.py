"""Shared Redis connection for cross-process coordination (poll lock, rate limits).

Redis is optional. With REDIS_URL unset (or set to memory://) every caller
gets None and falls back to in-process state.
"""

from __future__ import annotations

from consult_api.core.config import settings

REDIS_DISABLED_URL = "memory://"
REDIS_TIMEOUT_SECONDS = 2.0

_client = None


def get_redis_url() -> str | None:
    url = (settings.REDIS_URL or "").strip()
    if not url or url.lower() == REDIS_DISABLED_URL:
        return None
    return url


def get_sync_redis_client():
    """Pooled client, created on first use. None when Redis is not configured."""
    url = get_redis_url()
    if url is None:
        return None

    global _client
    if _client is None:
        import redis

        _client = redis.Redis(
            connection_pool=redis.ConnectionPool.from_url(
                url,
                max_connections=max(1, settings.REDIS_MAX_CONNECTIONS),
                socket_connect_timeout=REDIS_TIMEOUT_SECONDS,
                socket_timeout=REDIS_TIMEOUT_SECONDS,
                retry_on_timeout=True,
            )
        )
    return _client
