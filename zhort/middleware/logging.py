"""
Request Logging Middleware

One log line per HTTP request on the "zhort.http" logger:

    METHOD PATH STATUS TIMEms IP:addr rid:request-id

- 5xx responses log at ERROR, 4xx at WARNING, everything else at INFO
- Health probes are not logged
- Every response carries X-Process-Time and X-Request-ID; an incoming
  X-Request-ID from the edge is reused so log lines can be correlated
"""

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from zhort.api.dependencies import get_client_ip

logger = logging.getLogger("zhort.http")

QUIET_PATHS = frozenset({"/health"})


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        started = time.perf_counter()

        response = await call_next(request)

        elapsed = time.perf_counter() - started
        response.headers["X-Process-Time"] = f"{elapsed:.6f}"
        response.headers["X-Request-ID"] = request_id

        if request.url.path not in QUIET_PATHS:
            logger.log(
                _level_for(response.status_code),
                f"{request.method} {request.url.path} {response.status_code} "
                f"{elapsed * 1000:.2f}ms IP:{get_client_ip(request)} rid:{request_id}"
            )

        return response


def add_logging_middleware(app):
    """Register LoggingMiddleware on the FastAPI app."""
    app.add_middleware(LoggingMiddleware)
