"""Request middleware: correlation IDs and access logging."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from vodforge.core.logging import (
    clear_correlation_id,
    log_error,
    log_info,
    set_correlation_id,
)

CORRELATION_ID_HEADER = "X-Correlation-ID"

logger = logging.getLogger("vodforge.requests")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID to the request and log its outcome.

    The ID comes from the ``X-Correlation-ID`` header when the caller sends
    one and is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception as e:
                log_error(
                    logger,
                    "Request failed",
                    exception=e,
                    method=request.method,
                    path=request.url.path,
                    duration_ms=_elapsed_ms(started),
                )
                raise

            log_info(
                logger,
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(started),
            )
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
