"""Request-id propagation, access logging and HTTP metrics for the API."""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

import structlog
from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import get_logger

REQUEST_ID_HEADER = "X-Request-ID"
# inbound ids are echoed into headers and logs, so only short opaque tokens are trusted
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_QUIET_PATHS = frozenset({"/health", "/metrics"})

_request_id: ContextVar[str | None] = ContextVar("ragbot_request_id", default=None)

HTTP_REQUESTS = Counter(
    "ragbot_http_requests_total",
    "HTTP requests handled, by method, route template and status.",
    ["method", "route", "status_code"],
)
HTTP_LATENCY = Histogram(
    "ragbot_http_request_seconds",
    "Wall time spent handling an HTTP request.",
    ["method", "route"],
)


def get_request_id() -> str | None:
    return _request_id.get()


def resolve_request_id(inbound: str | None) -> str:
    if inbound and _VALID_REQUEST_ID.match(inbound):
        return inbound
    return uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs it once and records HTTP metrics."""

    def __init__(self, app: ASGIApp, *, service_name: str) -> None:
        super().__init__(app)
        self._logger = get_logger(service_name)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = _request_id.set(request_id)
        started = time.perf_counter()
        status_code = 500
        try:
            with structlog.contextvars.bound_contextvars(request_id=request_id):
                try:
                    response = await call_next(request)
                except Exception:
                    self._logger.exception(
                        "http.request.error", method=request.method, path=request.url.path
                    )
                    raise
                status_code = response.status_code
                response.headers[REQUEST_ID_HEADER] = request_id
                if request.url.path not in _QUIET_PATHS:
                    self._logger.info(
                        "http.request.completed",
                        method=request.method,
                        path=request.url.path,
                        status_code=status_code,
                        duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    )
                return response
        finally:
            _observe(request, status_code, time.perf_counter() - started)
            _request_id.reset(token)


def metrics_response() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _observe(request: Request, status_code: int, elapsed: float) -> None:
    # route templates keep label cardinality bounded; unmatched paths share one label
    route = getattr(request.scope.get("route"), "path", None) or "unmatched"
    HTTP_REQUESTS.labels(request.method, route, str(status_code)).inc()
    HTTP_LATENCY.labels(request.method, route).observe(elapsed)
