"""
Request logging middleware. Path, status and time-to-first-byte only;
bodies are chat content and never logged.
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path (no query), status and duration until headers are sent.

    Streaming responses keep running after this returns, so for ``/api/chat``
    the duration is time-to-first-byte; the orchestrator logs the full turn.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        method = request.method
        path = request.scope.get("path", "")
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed method=%s path=%s", method, path)
            raise
        duration_ms = (time.perf_counter() - start) * 1000
        status = response.status_code
        streaming = response.headers.get("content-type", "").startswith("text/event-stream")
        logger.log(
            _level_for(status),
            "request_finished method=%s path=%s status=%s duration_ms=%.1f streaming=%s",
            method, path, status, duration_ms, streaming,
        )
        return response
