"""Request logging middleware.

Binds the request id, and the stream key for ``/api/streams/{key}/...``
paths, into structlog's context so every log line a route emits while
serving the request carries them. Health probes are logged at debug.
"""

import time
import uuid
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger(__name__)

STREAMS_PREFIX = "/api/streams/"
QUIET_PATHS = frozenset({"/health"})
_NOT_STREAM_KEYS = frozenset({"create"})


def stream_key_from_path(path: str) -> Optional[str]:
    """Stream key addressed by a request path, if any."""
    if not path.startswith(STREAMS_PREFIX):
        return None
    key = path[len(STREAMS_PREFIX):].split("/", 1)[0]
    if not key or key in _NOT_STREAM_KEYS:
        return None
    return key


class LoggingMiddleware(BaseHTTPMiddleware):
    """Per-request context binding and completion logging."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        context = {"request_id": request_id}
        stream_key = stream_key_from_path(request.url.path)
        if stream_key:
            context["stream_key"] = stream_key

        start_time = time.perf_counter()
        with structlog.contextvars.bound_contextvars(**context):
            response = await call_next(request)
            log = logger.debug if request.url.path in QUIET_PATHS else logger.info
            log(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=round(time.perf_counter() - start_time, 3),
            )

        response.headers["X-Request-ID"] = request_id
        return response
