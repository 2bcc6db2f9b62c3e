"""Structured API request logging middleware."""

from __future__ import annotations

import time
from typing import Any
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from portal.logging import get_logger
from portal.logging_events import log_event

REQUEST_ID_HEADER = "X-Request-ID"


class APILoggingMiddleware(BaseHTTPMiddleware):
    """Emit one ``api.request`` event per request and echo a request id."""

    def __init__(self, app: ASGIApp, *, component: str = "api") -> None:
        super().__init__(app)
        self._logger = get_logger(__name__)
        self._component = component

    async def dispatch(  # type: ignore[override]
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers.setdefault(REQUEST_ID_HEADER, request_id)
            return response
        finally:
            payload: dict[str, Any] = {
                "component": self._component,
                "status": "ok" if status_code < 400 else "error",
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 3),
                "entity_id": request_id,
            }
            log_event(self._logger, "api.request", **payload)


__all__ = ["APILoggingMiddleware", "REQUEST_ID_HEADER"]
