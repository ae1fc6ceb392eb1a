"""
MODULE OVERVIEW:
HTTP middleware for the relay's ops endpoints.

WHAT IS HAPPENING HERE:
Every plain HTTP request gets an `X-Request-Id` (the caller's, if it sent one)
and an `X-Process-Time-Ms` header. Requests slower than `slow_ms` are logged
as warnings; health probes are not logged at all. WebSocket upgrades bypass
BaseHTTPMiddleware entirely.
"""
import time
import uuid

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

QUIET_PATHS = ("/healthz",)


class TimingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, slow_ms: float = 500.0):
        super().__init__(app)
        self.slow_ms = slow_ms

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"

        path = request.url.path
        if elapsed_ms > self.slow_ms:
            logger.warning(
                f"request_id={request_id} method={request.method} path={path} "
                f"status={response.status_code} elapsed_ms={elapsed_ms:.2f} event=slow_request"
            )
        elif path not in QUIET_PATHS:
            logger.debug(
                f"request_id={request_id} method={request.method} path={path} "
                f"status={response.status_code} elapsed_ms={elapsed_ms:.2f}"
            )
        return response
