"""Error response helpers and exception handler registration."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .exceptions import (
    AnalysisError,
    ConfigurationError,
    CryptoError,
    ForbiddenError,
    InvalidUploadError,
    NotFoundError,
    TranscriptionError,
    UnauthorizedError,
    UpstreamError,
    UpstreamOverloadedError,
    UpstreamQuotaError,
    VoxAnalyzeError,
)
from .privacy import sanitize_error_message
from .service_settings import HTTP_413_TOO_LARGE, HTTP_422_UNPROCESSABLE
from .store import StoreError, StoreTimeoutError

logger = logging.getLogger(__name__)

# Checked in order; subclasses come before their bases
DOMAIN_ERROR_MAP: tuple[tuple[type[VoxAnalyzeError], int, str], ...] = (
    (UnauthorizedError, status.HTTP_401_UNAUTHORIZED, "unauthorized"),
    (ForbiddenError, status.HTTP_403_FORBIDDEN, "forbidden"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (UpstreamQuotaError, status.HTTP_429_TOO_MANY_REQUESTS, "upstream_quota"),
    (UpstreamOverloadedError, status.HTTP_503_SERVICE_UNAVAILABLE, "upstream_overloaded"),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY, "upstream_error"),
    (CryptoError, status.HTTP_500_INTERNAL_SERVER_ERROR, "decryption_error"),
    (TranscriptionError, status.HTTP_502_BAD_GATEWAY, "transcription_error"),
    (AnalysisError, status.HTTP_502_BAD_GATEWAY, "analysis_error"),
    (StoreTimeoutError, status.HTTP_503_SERVICE_UNAVAILABLE, "storage_timeout"),
    (StoreError, status.HTTP_500_INTERNAL_SERVER_ERROR, "storage_error"),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR, "configuration_error"),
)


def create_error_response(
    status_code: int,
    error_type: str,
    message: str,
    request_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """
    Create a standardized error response.

    Args:
        status_code: HTTP status code
        error_type: Error type identifier (e.g., "not_found", "analysis_error")
        message: Human-readable error message
        request_id: Optional request ID for tracing
        details: Optional additional error details

    Returns:
        JSONResponse with structured error format
    """
    error_data: dict[str, Any] = {
        "error": {
            "type": error_type,
            "message": message,
            "status_code": status_code,
        },
        # Plain "detail" field for clients that only read FastAPI's default shape
        "detail": message,
    }

    if request_id:
        error_data["error"]["request_id"] = request_id

    if details:
        error_data["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=error_data,
    )


def classify_domain_error(exc: VoxAnalyzeError) -> tuple[int, str]:
    """Map a domain exception to ``(status_code, error_type)``."""
    if isinstance(exc, InvalidUploadError):
        if exc.too_large:
            return HTTP_413_TOO_LARGE, "file_too_large"
        return status.HTTP_400_BAD_REQUEST, "bad_request"
    for exc_type, status_code, error_type in DOMAIN_ERROR_MAP:
        if isinstance(exc, exc_type):
            return status_code, error_type
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error"


async def domain_exception_handler(request: Request, exc: VoxAnalyzeError) -> JSONResponse:
    """
    Handle the package's own exceptions.

    Messages are passed through the PII sanitizer before they are logged or
    returned; the record id (when known) is echoed in ``details`` so clients
    can follow up with ``/records/{id}``.
    """
    request_id = getattr(request.state, "request_id", None)
    status_code, error_type = classify_domain_error(exc)
    message = sanitize_error_message(exc)

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request failed: %s %s -> %d %s [request_id=%s] - %s",
        request.method,
        request.url.path,
        status_code,
        error_type,
        request_id,
        message,
        extra={
            "request_id": request_id,
            "status_code": status_code,
            "error_type": error_type,
            "record_id": exc.record_id,
        },
    )

    if error_type == "internal_error":
        message = "An unexpected internal error occurred"

    details: dict[str, Any] = {}
    if exc.record_id:
        details["record_id"] = exc.record_id
    if isinstance(exc, UpstreamError) and exc.model:
        details["model"] = exc.model

    response = create_error_response(
        status_code=status_code,
        error_type=error_type,
        message=message,
        request_id=request_id,
        details=details or None,
    )
    if status_code == status.HTTP_401_UNAUTHORIZED:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request validation errors (422).

    FastAPI raises RequestValidationError when request data fails validation
    (e.g., missing upload field, type mismatches in query parameters).
    """
    request_id = getattr(request.state, "request_id", None)

    errors = exc.errors()
    logger.warning(
        "Validation error: %s %s [request_id=%s] - %d validation errors",
        request.method,
        request.url.path,
        request_id,
        len(errors),
        extra={"request_id": request_id},
    )

    formatted_errors = [
        {
            "loc": list(err.get("loc", [])),
            "msg": err.get("msg", "Validation error"),
            "type": err.get("type", "unknown"),
        }
        for err in errors
    ]

    return create_error_response(
        status_code=HTTP_422_UNPROCESSABLE,
        error_type="validation_error",
        message="Request validation failed",
        request_id=request_id,
        details={"validation_errors": formatted_errors},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException raised by FastAPI itself or by route code."""
    request_id = getattr(request.state, "request_id", None)

    logger.warning(
        "HTTP exception: %s %s -> %d [request_id=%s] - %s",
        request.method,
        request.url.path,
        exc.status_code,
        request_id,
        exc.detail,
        extra={"request_id": request_id, "status_code": exc.status_code},
    )

    error_type_map = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        413: "file_too_large",
        500: "internal_error",
        503: "service_unavailable",
    }
    error_type = error_type_map.get(exc.status_code, "http_error")

    return create_error_response(
        status_code=exc.status_code,
        error_type=error_type,
        message=str(exc.detail),
        request_id=request_id,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all unhandled exceptions (500 Internal Server Error).

    The traceback is logged server-side; the client gets a generic message.
    """
    request_id = getattr(request.state, "request_id", None)

    logger.error(
        "Unhandled exception: %s %s [request_id=%s]",
        request.method,
        request.url.path,
        request_id,
        extra={"request_id": request_id, "exception_type": type(exc).__name__},
        exc_info=exc,
    )

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type="internal_error",
        message="An unexpected internal error occurred",
        request_id=request_id,
        details={"hint": "Check server logs for details"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register API exception handlers on the FastAPI app."""
    app.add_exception_handler(VoxAnalyzeError, domain_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
