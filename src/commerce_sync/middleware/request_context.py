"""Request context middleware: request ids in logs and response timing."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-Id"


def request_id_from(request: Request) -> str:
    """Reuse an incoming request id or mint a new one."""
    incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
    return incoming[:128] if incoming else uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds ``request_id`` into structlog contextvars for the request's lifetime."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request_id_from(request)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time-Ms"] = str(duration_ms)
        logger.info(
            "request_completed",
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            status=response.status_code,
            duration_ms=duration_ms,
        )
        return response
