"""
Global error handling middleware.

WHAT: Translate exceptions to appropriate HTTP responses
WHY: Consistent error responses with stable codes and a retry hint
HOW: FastAPI exception handlers for business and request validation errors
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime, timezone

from ..utils.exceptions import (
    BusinessException,
    ValidationError,
    InvalidStateError,
    NotAParticipantError,
    NegotiationNotFoundError,
    ConflictError,
    CollaboratorUnavailableError,
    PaymentNotConfirmedError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InvalidStateError: status.HTTP_409_CONFLICT,
    NotAParticipantError: status.HTTP_403_FORBIDDEN,
    NegotiationNotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    CollaboratorUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentNotConfirmedError: status.HTTP_402_PAYMENT_REQUIRED,
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def status_code_for(exc: BusinessException) -> int:
    """HTTP status for a business exception (400 for unmapped subclasses)."""
    for exc_type in type(exc).__mro__:
        if exc_type in STATUS_CODES:
            return STATUS_CODES[exc_type]
    return status.HTTP_400_BAD_REQUEST


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error: {exc.errors()}")

    # Clean up error details to be JSON serializable
    errors = exc.errors()
    cleaned_errors = []
    for error in errors:
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input")
        }
        # Convert ctx errors to strings
        if "ctx" in error:
            ctx = error["ctx"]
            cleaned_ctx = {}
            for k, v in ctx.items():
                if isinstance(v, Exception):
                    cleaned_ctx[k] = str(v)
                else:
                    cleaned_ctx[k] = v
            cleaned_error["ctx"] = cleaned_ctx
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": {"field_errors": cleaned_errors},
            "retryable": False,
            "timestamp": _timestamp()
        }
    )


async def business_exception_handler(request: Request, exc: BusinessException):
    """
    Handle BusinessException and its subclasses.

    WHAT: Domain error raised by the negotiation service
    WHY: Callers need a stable code and whether retrying can help
    HOW: Map the exception type to a status code; 5xx logged as errors
    """
    status_code = status_code_for(exc)

    if status_code >= 500:
        logger.error(f"Business exception: {exc.code} - {exc.message}")
    else:
        logger.warning(f"Business exception: {exc.code} - {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "retryable": exc.retryable,
            "timestamp": _timestamp()
        },
        headers={"Retry-After": "1"} if exc.retryable else None
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    WHAT: Attach handlers to app
    WHY: Centralized error handling
    HOW: Use app.add_exception_handler

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(BusinessException, business_exception_handler)

    logger.info("Exception handlers registered")
