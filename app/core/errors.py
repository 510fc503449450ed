"""
Error Handling
==============

Standardized error codes, exceptions and exception handlers.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Webhooks (WEBHOOK_001 - WEBHOOK_010)
    WEBHOOK_INVALID_SIGNATURE = "WEBHOOK_001"
    WEBHOOK_INVALID_PAYLOAD = "WEBHOOK_002"
    WEBHOOK_PROVIDER_FETCH_FAILED = "WEBHOOK_003"
    WEBHOOK_STORE_FAILED = "WEBHOOK_004"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_005"

    # Users
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class WebhookSignatureError(AppException):
    """
    Webhook failed signature verification.

    Raised for a missing or malformed ``Stripe-Signature`` header, a bad
    signature, a stale timestamp, or an unset webhook secret.
    """

    def __init__(
        self,
        message: str = "Invalid webhook signature",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.WEBHOOK_INVALID_SIGNATURE,
            message=message,
            **extra,
        )


class WebhookPayloadError(AppException):
    """Signed webhook body could not be parsed."""

    def __init__(
        self,
        message: str = "Invalid JSON payload",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class InternalError(AppException):
    """Retriable server-side failure."""

    def __init__(
        self,
        code: str = ErrorCodes.INTERNAL_ERROR,
        message: str = "An unexpected error occurred",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Service Exceptions
# =============================================================================

class BillingError(Exception):
    """Base for failures inside the billing services. Always retriable."""

    code = ErrorCodes.WEBHOOK_PROCESSING_FAILED


class ProviderFetchError(BillingError):
    """Reading canonical state from Stripe failed."""

    code = ErrorCodes.WEBHOOK_PROVIDER_FETCH_FAILED


class StoreError(BillingError):
    """Writing the subscription snapshot to the user store failed."""

    code = ErrorCodes.WEBHOOK_STORE_FAILED


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    from fastapi.exceptions import RequestValidationError

    if isinstance(exc, RequestValidationError):
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            field = ".".join(str(loc) for loc in first_error.get("loc", []))
            message = first_error.get("msg", "Validation error")
        else:
            field = None
            message = "Validation error"

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": {
                    "code": ErrorCodes.VALIDATION_ERROR,
                    "message": message,
                    "field": field,
                },
            },
        )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": str(exc),
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
