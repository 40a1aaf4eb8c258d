"""
Global error handling middleware.

WHAT: Translate exceptions to appropriate HTTP responses
WHY: Every rejected action reports a stable error kind and a readable reason
HOW: FastAPI exception handlers for custom exceptions
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from ..utils.exceptions import (
    APIException,
    ConcurrencyConflictError,
    EventNotFoundError,
    InternalError,
    InvalidTransitionError,
    ListingNotFoundError,
    NegotiationAlreadyActiveError,
    NegotiationClosedError,
    NegotiationNotFoundError,
    RoundLimitExceededError,
    UnauthorizedError,
    ValidationError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


def status_code_for(exc: APIException) -> int:
    """HTTP status for a domain exception."""
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, UnauthorizedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, (NegotiationNotFoundError, ListingNotFoundError, EventNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (
        NegotiationClosedError,
        RoundLimitExceededError,
        InvalidTransitionError,
        NegotiationAlreadyActiveError,
        ConcurrencyConflictError,
    )):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, InternalError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
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
    cleaned_errors = []
    for error in exc.errors():
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            cleaned_error["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": cleaned_errors,
            "timestamp": datetime.now().isoformat()
        }
    )


async def api_exception_handler(request: Request, exc: APIException):
    """
    Handle generic APIException.

    WHAT: Domain exception raised by the negotiation core
    WHY: Callers need the error kind to decide whether to retry
    HOW: Return the mapped status code with code, message and details
    """
    status_code = status_code_for(exc)

    if status_code >= 500:
        logger.error(f"API exception: {exc.code} - {exc.message}")
    else:
        logger.warning(f"API exception: {exc.code} - {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "timestamp": datetime.now().isoformat()
        }
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(APIException, api_exception_handler)

    logger.info("Exception handlers registered")
