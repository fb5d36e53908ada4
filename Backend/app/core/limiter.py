"""
Rate Limiting Module
Uses slowapi to protect the admin API from runaway clients and pollers.
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from app.core.config import settings

logger = logging.getLogger(__name__)


def _storage_uri() -> str:
    """Redis when reachable, in-process memory otherwise."""
    if not settings.REDIS_URL:
        return "memory://"
    try:
        import redis
        client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
    except Exception as e:
        logger.warning(f"Rate Limiter: Redis not available ({e}). Falling back to memory storage.")
        return "memory://"
    logger.info(f"Rate Limiter connected to Redis at {settings.REDIS_URL}")
    return settings.REDIS_URL


limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=_storage_uri() if settings.RATE_LIMIT_ENABLED else "memory://",
)

# Endpoint-specific limits
UPLOAD_LIMIT = "10/minute"
EXPORT_LIMIT = "30/minute"
JOB_LIMIT = "20/minute"
STATUS_LIMIT = "120/minute"

logger.info(f"Rate limiting {'ENABLED' if settings.RATE_LIMIT_ENABLED else 'DISABLED'}")
