"""
Error Handling
==============

Standardized error codes, the entitlement error taxonomy and
exception handlers.

Entitlement errors fall into three propagation classes:

- transient (``retryable=True``): retried by the caller with backoff
- integrity (``alert=True``): never retried, escalated to operators
- caller input: rejected synchronously with a descriptive reason
"""

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication
    AUTH_INVALID_TOKEN = "AUTH_001"
    AUTH_NOT_AUTHENTICATED = "AUTH_002"
    FORBIDDEN = "FORBIDDEN"

    # Receipts
    INVALID_RECEIPT_FORMAT = "INVALID_RECEIPT_FORMAT"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    VERIFICATION_UNAVAILABLE = "VERIFICATION_UNAVAILABLE"

    # Ledger
    USER_PRODUCT_MISMATCH = "USER_PRODUCT_MISMATCH"
    STALE_RECEIPT = "STALE_RECEIPT"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Persistence
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    FOREIGN_KEY_VIOLATION = "FOREIGN_KEY_VIOLATION"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Entitlement Error Taxonomy
# =============================================================================

class EntitlementError(Exception):
    """Base class for every error raised by the entitlement engine."""

    code: str = ErrorCodes.INTERNAL_ERROR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False
    alert: bool = False

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.retryable:
            detail["retryable"] = True
        detail.update(self.extra)
        return detail


class InvalidReceiptFormat(EntitlementError):
    """Required receipt fields are absent or have unknown values."""

    code = ErrorCodes.INVALID_RECEIPT_FORMAT
    status_code = status.HTTP_400_BAD_REQUEST


class MalformedPayload(EntitlementError):
    """The receipt payload cannot be parsed for its declared platform."""

    code = ErrorCodes.MALFORMED_PAYLOAD
    status_code = status.HTTP_400_BAD_REQUEST


class SignatureInvalid(EntitlementError):
    """The payload failed the platform's authenticity check."""

    code = ErrorCodes.SIGNATURE_INVALID
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class VerificationUnavailable(EntitlementError):
    """The platform verification service could not be reached."""

    code = ErrorCodes.VERIFICATION_UNAVAILABLE
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class UserProductMismatch(EntitlementError):
    """A transaction id is already bound to another user (receipt reuse)."""

    code = ErrorCodes.USER_PRODUCT_MISMATCH
    status_code = status.HTTP_409_CONFLICT
    alert = True


class StaleReceipt(EntitlementError):
    """An outcome older than (or equal to) the applied one. Local no-op."""

    code = ErrorCodes.STALE_RECEIPT
    status_code = status.HTTP_200_OK


class InvalidTransition(EntitlementError):
    """A transition outside the subscription state machine."""

    code = ErrorCodes.INVALID_TRANSITION
    status_code = status.HTTP_409_CONFLICT
    alert = True


class StorageUnavailable(EntitlementError):
    """Persistence failed or timed out."""

    code = ErrorCodes.STORAGE_UNAVAILABLE
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class ForeignKeyViolation(EntitlementError):
    """A referenced row (usually the user) does not exist."""

    code = ErrorCodes.FOREIGN_KEY_VIOLATION
    status_code = status.HTTP_409_CONFLICT


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


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_NOT_AUTHENTICATED,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Permission errors."""

    def __init__(
        self,
        code: str = ErrorCodes.FORBIDDEN,
        message: str = "Access denied",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def entitlement_exception_handler(
    request: Request,
    exc: EntitlementError,
) -> JSONResponse:
    """Handler for EntitlementError."""
    # Picked up by the New Relic middleware
    request.state.error_code = exc.code

    if exc.alert:
        logger.error(
            "Integrity error on %s %s: %s %s",
            request.method,
            request.url.path,
            exc.code,
            exc.message,
            extra={"alert": True},
        )

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.to_dict(),
        },
        headers=headers,
    )


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
        headers=exc.headers,
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
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

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


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception(
        "Unhandled error on %s %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
    )

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

    app.add_exception_handler(EntitlementError, entitlement_exception_handler)
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
