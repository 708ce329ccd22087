"""Rate limiting configuration for the consultation API."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from consult_api.core.config import settings
from consult_api.core.redis_client import get_redis_url

logger = logging.getLogger(__name__)

# Redis storage for multi-worker support; in-memory for dev/test
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)


def _storage_uri() -> str:
    redis_url = get_redis_url()
    if IS_TESTING or not redis_url:
        return "memory://"
    try:
        import redis

        r = redis.from_url(redis_url, socket_connect_timeout=1)
        r.ping()
        return redis_url
    except Exception as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        return "memory://"


limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_storage_uri(),
    default_limits=DEFAULT_LIMITS,
    enabled=not IS_TESTING,
)
