"""Structured error responses for the Verethfier API.

Every failure uses the same flat envelope:

    {
        "error": "Human-readable description",
        "code": "NONCE_INVALID",
        "request_id": "abc-123",
        "details": [...optional field-level errors...]
    }

Nonce and signature failures share one generic message. Unexpected exceptions are logged
with their traceback and surface as a generic 500.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from verethfier.core.errors import (
    AssignmentStateError,
    DuplicateRuleError,
    NoQualifyingAssetsError,
    NonceError,
    OwnershipQueryError,
    RuleNotFoundError,
    RolePlatformError,
    SignatureError,
    ValidationError,
    VerethfierError,
)

logger = logging.getLogger(__name__)

VERIFICATION_FAILED_MESSAGE = "Verification failed, please try again."
INTERNAL_ERROR_MESSAGE = "An internal server error occurred. Please try again later."


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Codes for errors raised by the HTTP layer itself."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    BAD_REQUEST = "BAD_REQUEST"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"


class FieldError(BaseModel):
    field: str
    message: str
    type: str


class ErrorResponse(BaseModel):
    error: str
    code: str
    request_id: str | None = None
    details: list[dict[str, Any]] | None = None


_STATUS_TO_CODE: dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    413: ErrorCode.PAYLOAD_TOO_LARGE,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMITED,
    500: ErrorCode.INTERNAL_ERROR,
    502: ErrorCode.DEPENDENCY_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}

# Domain error → (HTTP status, message override). None keeps the error's own message.
_DOMAIN_STATUS: list[tuple[type[VerethfierError], int, str | None]] = [
    (NonceError, 400, VERIFICATION_FAILED_MESSAGE),
    (SignatureError, 400, VERIFICATION_FAILED_MESSAGE),
    (ValidationError, 422, None),
    (NoQualifyingAssetsError, 403, None),
    (RuleNotFoundError, 404, None),
    (DuplicateRuleError, 409, None),
    (AssignmentStateError, 409, None),
    (OwnershipQueryError, 503, "Ownership data is temporarily unavailable. Please try again later."),
    (RolePlatformError, 502, "Could not update your roles. Please try again later."),
]


def _get_request_id(request: Request) -> str | None:
    return request.headers.get("X-Request-ID") or getattr(request.state, "request_id", None)


def _respond(request: Request, status_code: int, message: str, code: str, **extra: Any) -> JSONResponse:
    body = ErrorResponse(
        error=message,
        code=code,
        request_id=_get_request_id(request),
        **extra,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# ── Exception Handlers ──────────────────────────────────────────────────────


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = []
    for err in exc.errors():
        loc = err.get("loc", [])
        field = ".".join(str(part) for part in loc if part != "body")
        details.append(
            FieldError(
                field=field or "unknown",
                message=err.get("msg", "Invalid value"),
                type=err.get("type", "value_error"),
            ).model_dump()
        )
    return _respond(
        request,
        422,
        f"Request validation failed: {len(details)} error(s)",
        ErrorCode.VALIDATION_ERROR.value,
        details=details,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _STATUS_TO_CODE.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = str(exc.detail) if exc.detail else code.value
    return _respond(request, exc.status_code, message, code.value)


async def domain_error_handler(request: Request, exc: VerethfierError) -> JSONResponse:
    for error_type, status_code, override in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            if status_code >= 500 or override == VERIFICATION_FAILED_MESSAGE:
                logger.warning(
                    "%s on %s %s: %s",
                    exc.__class__.__name__,
                    request.method,
                    request.url.path,
                    exc.message,
                    extra={"path": request.url.path, "status_code": status_code},
                )
            return _respond(request, status_code, override or exc.message, exc.code)
    return await unhandled_exception_handler(request, exc)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the full traceback, return a generic message."""
    logger.exception(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
    )
    return _respond(request, 500, INTERNAL_ERROR_MESSAGE, ErrorCode.INTERNAL_ERROR.value)


def register_error_handlers(app: Any) -> None:
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(VerethfierError, domain_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
