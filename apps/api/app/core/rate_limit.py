"""Rate limiting configuration for the external API."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

logger = logging.getLogger(__name__)

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

EXTERNAL_LIMIT = f"{settings.RATE_LIMIT_EXTERNAL}/minute"
BULK_LIMIT = f"{settings.RATE_LIMIT_BULK}/minute"


def _external_key(request) -> str:
    """Key on the presented API key so every caller behind one NAT is not pooled."""
    api_key = request.headers.get("x-external-api-key")
    if api_key:
        return f"key:{api_key[-8:]}"
    return get_remote_address(request)


if IS_TESTING or not settings.REDIS_URL:
    # In-memory storage for tests and single-worker deployments
    limiter = Limiter(
        key_func=_external_key,
        storage_uri="memory://",
        enabled=not IS_TESTING,
    )
else:
    # Try Redis, fall back to memory if connection fails
    try:
        import redis

        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        r.ping()
        limiter = Limiter(key_func=_external_key, storage_uri=settings.REDIS_URL)
    except Exception as e:
        logger.warning("Redis unavailable for rate limiting, using in-memory: %s", e)
        limiter = Limiter(key_func=_external_key, storage_uri="memory://")
