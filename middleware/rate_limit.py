# middleware/rate_limit.py
"""
Rate limiting via slowapi, bucketed per client IP.

Usage in route files:
    from middleware.rate_limit import limiter

    @router.post("/chat")
    @limiter.limit("20/minute")
    async def chat(request: Request):
        ...
"""
import logging
import os

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)


def _get_rate_limit_key(request: Request) -> str:
    """Client IP, preferring the first hop of X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",", 1)[0].strip()
    if first:
        return first
    return get_remote_address(request)


# Env-overridable so limits can be tuned per environment.
DEFAULT_RATE_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")

limiter = Limiter(
    key_func=_get_rate_limit_key,
    default_limits=[DEFAULT_RATE_LIMIT],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
    strategy="fixed-window",
)
