# dispatch_engine/transport/middleware.py
"""
Request tracing, access logging and last-resort error handling.

Job and attempt ids are lifted from the path (``/jobs/{id}/...``,
``/attempts/{id}/...``) into the log context, so an access log line can be
joined with the engine's own ``job_id`` / ``attempt_id`` logs.  Metrics use
the route template (``/jobs/{id}/dispatch``), never the raw path.
"""
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from dispatch_engine.infra.logging_config import LogContext, get_logger
from dispatch_engine.infra.metrics import inc_counter, observe_histogram

logger = get_logger(__name__)

_RESOURCE_PATH = re.compile(r"^/(jobs|attempts)/([^/]+)")
_PROBE_PATHS = frozenset({"/health", "/ready"})
_MAX_REQUEST_ID_LENGTH = 128


def path_context(path: str) -> dict[str, str]:
    """``{"job_id": ...}`` or ``{"attempt_id": ...}`` for resource paths."""
    match = _RESOURCE_PATH.match(path)
    if not match:
        return {}
    field = "job_id" if match.group(1) == "jobs" else "attempt_id"
    return {field: match.group(2)}


def route_template(path: str) -> str:
    return _RESOURCE_PATH.sub(lambda m: f"/{m.group(1)}/{{id}}", path)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Use the caller's X-Request-ID (or a fresh one) and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", "")
        if not request_id or len(request_id) > _MAX_REQUEST_ID_LENGTH:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access log line and one latency sample per request"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        route = route_template(path)
        log_ctx = LogContext(
            logger,
            request_id=getattr(request.state, "request_id", "unknown"),
            **path_context(path),
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            inc_counter("http_requests_total", method=request.method, status="5xx")
            log_ctx.error(
                f"{request.method} {route} failed: {exc.__class__.__name__} ({duration_ms:.1f}ms)",
                extra={"method": request.method, "route": route, "duration_ms": duration_ms},
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        status_class = f"{response.status_code // 100}xx"
        observe_histogram("http_request_duration_ms", duration_ms, method=request.method, route=route)
        inc_counter("http_requests_total", method=request.method, status=status_class)

        # Probes and conflicts are routine; 5xx are not
        log = log_ctx.debug if path in _PROBE_PATHS else log_ctx.info
        if response.status_code >= 500:
            log = log_ctx.warning
        log(
            f"{request.method} {route} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                "method": request.method,
                "route": route,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and return a JSON 500 with the request ID"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception on {route_template(request.url.path)}: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id, **path_context(request.url.path)},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
            )
