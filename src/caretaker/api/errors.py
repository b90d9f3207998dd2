"""Standardized error handling for the Caretaker API.

Every response is wrapped in an envelope: ``{"success": true, "data": ...}``
on success and ``{"success": false, "error": {...}}`` on failure.
"""

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode

logger = logging.getLogger(__name__)


class ErrorCode(StrEnum):
    """Error codes raised at the HTTP boundary (outside the domain services)."""

    # Auth errors
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    MISSING_API_KEY = "MISSING_API_KEY"
    INVALID_AUTH_HEADER = "INVALID_AUTH_HEADER"
    INVALID_API_KEY = "INVALID_API_KEY"
    INSUFFICIENT_SCOPE = "INSUFFICIENT_SCOPE"
    NO_TENANT = "NO_TENANT"

    # Generic errors
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    API_KEY_NOT_FOUND = "API_KEY_NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Exhaustive: every domain code has exactly one HTTP status
HTTP_STATUS_BY_CODE: dict[MaintenanceErrorCode, int] = {
    MaintenanceErrorCode.INVALID_REQUEST: 400,
    MaintenanceErrorCode.INTEGRATION_NOT_FOUND: 404,
    MaintenanceErrorCode.PROPOSAL_NOT_FOUND: 404,
    MaintenanceErrorCode.DRIFT_RECORD_NOT_FOUND: 404,
    MaintenanceErrorCode.TOOL_NOT_FOUND: 404,
    MaintenanceErrorCode.INVALID_PROPOSAL_STATE: 409,
    MaintenanceErrorCode.NO_DRIFT_TO_PROPOSE: 409,
    MaintenanceErrorCode.DUPLICATE_INTEGRATION: 409,
    MaintenanceErrorCode.DUPLICATE_TENANT: 409,
    MaintenanceErrorCode.SCHEMA_APPLICATION_ERROR: 422,
}


class APIError(Exception):
    """Base exception for boundary errors with structured responses."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, status_code=404, details=details)


class UnauthorizedError(APIError):
    """Unauthorized error."""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(code, message, status_code=401, details=details)
        self.headers = headers


class ForbiddenError(APIError):
    """Forbidden error."""

    def __init__(
        self,
        message: str = "Access denied",
        code: ErrorCode = ErrorCode.FORBIDDEN,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, status_code=403, details=details)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware that adds a unique request ID to each request."""

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def get_request_id(request: Request) -> str:
    """Get the request ID from the request state."""
    return getattr(request.state, "request_id", str(uuid4()))


def success(data: Any) -> dict[str, Any]:
    """Wrap a JSON-ready payload in the success envelope."""
    return {"success": True, "data": data}


def build_error_response(
    code: str,
    message: str,
    request_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a standardized error response."""
    error_data: dict[str, Any] = {
        "code": str(code),
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if details:
        error_data["details"] = details
    return {"success": False, "error": error_data}


def _validation_details(errors: list[Any]) -> dict[str, Any]:
    field_errors = []
    for error in errors:
        field_path = ".".join(str(loc) for loc in error["loc"])
        field_errors.append(
            {
                "field": field_path,
                "message": error["msg"],
                "type": error["type"],
            }
        )
    return {"errors": field_errors}


async def maintenance_error_handler(request: Request, exc: MaintenanceError) -> JSONResponse:
    """Map a domain error to its HTTP status."""
    status_code = HTTP_STATUS_BY_CODE[exc.code]
    return JSONResponse(
        status_code=status_code,
        content=build_error_response(
            code=exc.code,
            message=exc.message,
            request_id=get_request_id(request),
            details=exc.details,
        ),
    )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    headers = getattr(exc, "headers", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(
            code=exc.code,
            message=exc.message,
            request_id=get_request_id(request),
            details=exc.details,
        ),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle Starlette HTTPException (unknown routes, wrong methods)."""
    code_map = {
        404: ErrorCode.NOT_FOUND,
        405: ErrorCode.METHOD_NOT_ALLOWED,
    }
    code = code_map.get(exc.status_code, ErrorCode.INVALID_REQUEST)
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(
            code=code,
            message=str(exc.detail),
            request_id=get_request_id(request),
        ),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError | ValidationError
) -> JSONResponse:
    """Malformed identifiers or bodies are INVALID_REQUEST (400)."""
    return JSONResponse(
        status_code=400,
        content=build_error_response(
            code=ErrorCode.INVALID_REQUEST,
            message="Request validation failed",
            request_id=get_request_id(request),
            details=_validation_details(list(exc.errors())),
        ),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals."""
    request_id = get_request_id(request)
    logger.exception(
        "Unhandled error on %s %s (request %s)", request.method, request.url.path, request_id
    )
    return JSONResponse(
        status_code=500,
        content=build_error_response(
            code=ErrorCode.INTERNAL_ERROR,
            message="An unexpected error occurred",
            request_id=request_id,
        ),
    )
