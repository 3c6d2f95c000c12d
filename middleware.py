"""
HTTP middleware: request ids, timing and request logging
"""

import time
from typing import Callable, Set

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from logging_config import logger, set_request_id, set_user_id, generate_request_id


# Paths that skip request logging (health checks, docs)
SKIP_LOGGING_PATHS: Set[str] = {
    "/",
    "/health",
    "/favicon.ico",
    "/docs",
    "/redoc",
    "/openapi.json",
}


def should_skip_logging(path: str) -> bool:
    return path in SKIP_LOGGING_PATHS or path.startswith("/uploads/")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns (or propagates) X-Request-ID, times the request and logs
    method, path, status and duration. Unhandled exceptions pass through
    to the global handler in main.py, which logs them.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)
        set_user_id("")

        path = request.url.path
        start_time = time.perf_counter()

        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id

        # set by get_current_user, which runs in the endpoint's own context
        user_id = getattr(request.state, "user_id", "")
        if user_id:
            set_user_id(user_id)

        if not should_skip_logging(path):
            client_ip = request.client.host if request.client else "unknown"
            logger.log_request(
                request.method,
                path,
                response.status_code,
                round(duration_ms, 2),
                client_ip=client_ip,
            )

        return response
