"""
TimeSync Backend — Request Logging Middleware
===============================================

What:  Access log line for every HTTP request and response.
How:   Measures the time from middleware entry to response, picks the log
       level from the status code and attaches structured fields via `extra`.
Who:   Applied to every request via Starlette middleware.
When:  After RequestIDMiddleware (uses request ID for correlation).

What we log vs what we don't:
    Log:       method, path, status, duration, client IP, request ID
    Don't log: request bodies (change sets carry user data)
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from timesync.middleware.request_id import request_id_var

logger = logging.getLogger("timesync.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per HTTP request.

    Level by status:
        5xx → ERROR
        4xx → WARNING (409s here are clients told to resync)
        else → INFO

    Health checks are not logged; they run every few seconds.
    """

    SKIPPED_PATHS = {"/health"}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in self.SKIPPED_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = getattr(request.client, "host", "unknown") if request.client else "unknown"
        method = request.method
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )

        return response
