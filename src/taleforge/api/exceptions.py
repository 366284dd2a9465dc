"""Exception handlers for TaleForge API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

if TYPE_CHECKING:
    from taleforge.services.provider_errors import ProviderError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base API error."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str | None = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} '{resource_id}' not found"
        super().__init__(message, status_code=404)


class UnauthorizedError(APIError):
    """Authentication required."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class ForbiddenError(APIError):
    """Access denied."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, status_code=403)


class ConflictError(APIError):
    """Resource conflict."""

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class RateLimitError(APIError):
    """Rate limit exceeded."""

    def __init__(self, retry_after: int = 60):
        super().__init__(
            "Rate limit exceeded",
            status_code=429,
            details={"retry_after": retry_after},
        )


class UsageLimitError(APIError):
    """Monthly tier allowance used up."""

    def __init__(
        self,
        message: str,
        current_usage: float | None = None,
        limit: float | None = None,
        upgrade_required: bool = True,
    ):
        super().__init__(
            message,
            status_code=402,
            details={
                "current_usage": current_usage,
                "limit": limit,
                "upgrade_required": upgrade_required,
            },
        )


class ProviderUnavailableError(APIError):
    """Every AI provider for an operation failed."""

    def __init__(self, provider_error: ProviderError):
        self.provider_error = provider_error
        super().__init__(
            provider_error.user_message,
            status_code=503,
            details=provider_error.to_dict(),
        )


class GenerationError(APIError):
    """Story generation failed for a reason other than provider availability."""

    def __init__(self, phase: str, message: str, details: dict | None = None):
        super().__init__(
            message,
            status_code=500,
            details={"phase": phase, **(details or {})},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "details": exc.details,
        },
    )


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle Pydantic validation errors."""
    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "details": exc.errors(include_url=False),
        },
    )


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception("Unexpected error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)
