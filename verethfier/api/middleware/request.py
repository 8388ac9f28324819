"""Request middleware — request ID tracking and request size limits.

Adds:
  - X-Request-ID header propagation (or generation) for log correlation
  - Request body size enforcement; verification payloads are tiny
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from verethfier.core.logging import request_id_var

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUEST_SIZE = 64 * 1024  # 64 KB


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or generate X-Request-ID for every request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, max_size: int = DEFAULT_MAX_REQUEST_SIZE) -> None:
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method not in ("POST", "PUT", "PATCH"):
            return await call_next(request)

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={
                    "error": f"Request body too large: {content_length} bytes (max: {self.max_size})",
                    "code": "PAYLOAD_TOO_LARGE",
                    "request_id": getattr(request.state, "request_id", None),
                },
            )
        return await call_next(request)
