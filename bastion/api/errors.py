"""
BASTION - Error Taxonomy
========================

Structured exception types for the authorization and security core.

Every error carries a stable machine-readable ``kind`` plus a
human-readable message. The HTTP layer renders them as:

    {"error": "<KIND>", "message": "...", "correlation_id": "..."}

Categories:
    - UnauthorizedError: missing or invalid credentials
    - ForbiddenError: authenticated but not allowed (incl. blocked IPs)
    - NotFoundError: referenced permission/grant/incident/block is missing
    - ConflictError: duplicate active grant, duplicate name, terminal state
    - ValidationError: malformed request shape or value
    - RateLimitedError: too many requests from one caller
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bastion.api.audit.context import get_correlation_id

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Stable error identifiers returned to clients."""

    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION = "VALIDATION"
    RATE_LIMITED = "RATE_LIMITED"


class AppError(Exception):
    """
    Base exception for all BASTION errors.

    Attributes:
        message: Human-readable error description
        kind: Stable error kind for programmatic handling
        status_code: HTTP status the error maps to
        details: Optional dict with additional context
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.kind.value,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class UnauthorizedError(AppError):
    """No or invalid credentials."""

    kind = ErrorKind.UNAUTHORIZED
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(AppError):
    """Authenticated but not permitted."""

    kind = ErrorKind.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Access denied", **kwargs):
        super().__init__(message, **kwargs)


class NotFoundError(AppError):
    """Referenced entity does not exist."""

    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str = "Resource", **kwargs):
        super().__init__(f"{resource} not found", **kwargs)
        self.resource = resource


class ConflictError(AppError):
    """Request conflicts with current state."""

    kind = ErrorKind.CONFLICT
    status_code = status.HTTP_409_CONFLICT


class ValidationError(AppError):
    """Malformed request shape or value."""

    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST


class RateLimitedError(AppError):
    """Caller exceeded its request budget."""

    kind = ErrorKind.RATE_LIMITED
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "Too many requests", retry_after: int = 60, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


# ==================== Exception Handlers ====================


def _error_response(
    status_code: int,
    body: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body["correlation_id"] = get_correlation_id()
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError with its stable kind."""
    logger.info(
        f"{exc.kind.value} on {request.method} {request.url.path}: {exc.message}"
    )

    metrics = getattr(request.app.state, "metrics", None)
    if metrics is not None:
        metrics.record_error(exc.kind.value)

    headers = None
    if isinstance(exc, UnauthorizedError):
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}

    return _error_response(exc.status_code, exc.to_dict(), headers)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request-shape errors in the VALIDATION kind."""
    metrics = getattr(request.app.state, "metrics", None)
    if metrics is not None:
        metrics.record_error(ErrorKind.VALIDATION.value)

    errors = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        {
            "error": ErrorKind.VALIDATION.value,
            "message": "Request validation failed",
            "details": {"errors": errors},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach BASTION error handlers to an application."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
