"""
Request logging middleware

Assigns every inbound call a readable request id, binds it to the structlog
context for the duration of the call and echoes it as X-Request-Id. Bodies
announced larger than the configured limit are refused with 413.
"""

import time
from typing import Optional

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from capture_relay.core.helpers import RequestIdGenerator

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-Id"


class RequestLoggingMiddleware:
    """Callable for app.middleware("http")"""

    def __init__(self, max_body_bytes: Optional[int] = None, id_generator=None):
        self.max_body_bytes = max_body_bytes
        self.new_request_id = id_generator or RequestIdGenerator()

    def _too_large(self, request: Request) -> bool:
        if not self.max_body_bytes:
            return False
        try:
            return int(request.headers.get("content-length", 0)) > self.max_body_bytes
        except ValueError:
            return False

    async def __call__(self, request: Request, call_next):
        request_id = self.new_request_id()
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        logger.debug("Request started", method=request.method, path=request.url.path)

        if self._too_large(request):
            logger.warning("Request body too large", path=request.url.path, limit=self.max_body_bytes)
            response = JSONResponse(
                status_code=413,
                content={
                    "error": "PayloadTooLarge",
                    "message": f"Request body exceeds {self.max_body_bytes} bytes",
                    "request_id": request_id,
                }
            )
        else:
            response = await call_next(request)

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        logger.info(
            "Request finished",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        structlog.contextvars.clear_contextvars()
        return response
