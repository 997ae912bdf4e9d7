"""API middleware for cross-cutting concerns."""

import logging
import time
import uuid
from collections.abc import Callable
from contextvars import ContextVar

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Context variable for request ID - accessible from anywhere in the request
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Incoming request IDs longer than this are replaced
MAX_REQUEST_ID_LENGTH = 128


def get_request_id() -> str | None:
    """Get the current request ID from context.

    Can be called from anywhere during request processing to get the
    correlation ID for logging.
    """
    return request_id_var.get()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware that adds a unique request ID to each request.

    - Checks for incoming X-Request-ID header (for distributed tracing)
    - Generates a new UUID if not present
    - Adds the request ID to the response headers
    - Stores it in a context variable for logging
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get("X-Request-ID", "")
        if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH and incoming.isprintable():
            request_id = incoming
        else:
            request_id = str(uuid.uuid4())

        token = request_id_var.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start_time) * 1000
            # Path only: query strings on verify URLs carry tokens
            logger.exception(
                f"{request.method} {request.url.path} failed after {duration_ms:.1f}ms"
            )
            raise
        else:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(
                f"{request.method} {request.url.path} "
                f"completed {response.status_code} in {duration_ms:.1f}ms"
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


class AuthHeadersMiddleware(BaseHTTPMiddleware):
    """Keep token-bearing auth responses out of caches and Referer headers."""

    def __init__(self, app, path_prefix: str = "/api/auth") -> None:
        super().__init__(app)
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        if request.url.path.startswith(self.path_prefix):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Referrer-Policy"] = "no-referrer"
        return response


class RequestContextFilter(logging.Filter):
    """Logging filter that adds request_id to all log records.

    Usage:
        handler = logging.StreamHandler()
        handler.addFilter(RequestContextFilter())
        formatter = logging.Formatter('%(asctime)s [%(request_id)s] %(message)s')
        handler.setFormatter(formatter)
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True
