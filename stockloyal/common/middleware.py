"""HTTP middleware for the StockLoyal admin API.

Provides request ID tracing, request logging, and Prometheus HTTP metrics.
All three classes are registered in stockloyal/main.py.

Usage:
    from stockloyal.common.middleware import request_id_var
    rid = request_id_var.get("")
"""

from __future__ import annotations

import re
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

logger = get_logger("API")

# Probe and scrape endpoints are excluded from logs and metrics
_QUIET_PATHS = frozenset({"/health", "/ready", "/metrics"})

# Batch ids (PREP-20250110-093000-ab12cd) and numeric order ids become {id}
_PATH_ID_PATTERNS = [
    (re.compile(r"/PREP-\d{8}-\d{6}-[0-9A-Za-z]{6}"), "/{id}"),
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    (re.compile(r"/\d+"), "/{id}"),
]


def normalize_path(path: str) -> str:
    """Collapse dynamic path segments so metric labels stay low-cardinality.

    Examples:
        /api/orders/123                            -> /api/orders/{id}
        /api/batches/PREP-20250110-093000-ab12cd   -> /api/batches/{id}
    """
    for pattern, replacement in _PATH_ID_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every request and echo it in ``X-Request-ID``.

    An incoming ``X-Request-ID`` header is reused so callers can correlate
    logs across services; otherwise a fresh UUID4 hex is generated.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex
        request_id_var.set(rid)

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status, and duration for each non-probe request."""

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        if request.url.path in _QUIET_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"{request.method} {request.url.path} {response.status_code}",
            extra={
                "data": {
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                }
            },
        )
        return response


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record request count, latency, and in-flight gauge per route."""

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        path = request.url.path
        if path in _QUIET_PATHS:
            return await call_next(request)

        method = request.method
        template = normalize_path(path)
        status_code = "500"

        HTTP_REQUESTS_IN_PROGRESS.labels(method=method).inc()
        start = time.perf_counter()
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            HTTP_REQUESTS_IN_PROGRESS.labels(method=method).dec()
            HTTP_REQUESTS_TOTAL.labels(
                method=method, path_template=template, status_code=status_code
            ).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path_template=template).observe(
                time.perf_counter() - start
            )
