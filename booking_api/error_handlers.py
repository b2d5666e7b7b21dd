"""
HTTP rendering of domain errors

Domain exceptions know nothing about HTTP; the status for each one is
looked up here (most specific class first) and rendered in the error
envelope.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    BookingException,
    DatabaseError,
    DuplicateResourceError,
    ExchangeRateUnavailableError,
    InstallmentNotFoundError,
    InvalidHoursError,
    OverlappedReservationError,
    RecordNotFoundError,
    ReservationHasPaymentsError,
    ReservationNotFoundError,
    SpaceNotFoundError,
    StorageUnavailableError,
)
from .responses import error_response

logger = structlog.get_logger(__name__)

ERROR_STATUS_MAP = {
    SpaceNotFoundError: 404,
    ReservationNotFoundError: 404,
    InstallmentNotFoundError: 404,
    RecordNotFoundError: 404,
    InvalidHoursError: 400,
    OverlappedReservationError: 409,
    ReservationHasPaymentsError: 409,
    DuplicateResourceError: 409,
    AuthenticationError: 401,
    AuthorizationError: 403,
    ExchangeRateUnavailableError: 503,
    StorageUnavailableError: 503,
    DatabaseError: 500,
}

RETRY_AFTER_SECONDS = "1"


def status_for(exc: BookingException) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_MAP:
            return ERROR_STATUS_MAP[cls]
    return 400


async def booking_exception_handler(request: Request, exc: BookingException):
    """Render a domain exception"""
    status_code = status_for(exc)
    headers = {}
    if getattr(exc, "retryable", False):
        headers["Retry-After"] = RETRY_AFTER_SECONDS
    if isinstance(exc, AuthenticationError):
        headers["WWW-Authenticate"] = "Bearer"

    error = exc.to_dict()
    if status_code >= 500:
        logger.error("request_error", code=error["code"], error=error["message"])
    else:
        logger.info("request_rejected", code=error["code"], status_code=status_code)

    return error_response(
        request, status_code, error["code"], error["message"], error["details"], headers or None
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return error_response(
        request, 422, "validation_error", "Request validation failed", {"errors": errors}
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Unknown routes, wrong methods and other framework-level errors"""
    code = {404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
    return error_response(
        request, exc.status_code, code, str(exc.detail), headers=getattr(exc, "headers", None)
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error("unhandled_exception", error=str(exc), error_type=type(exc).__name__, exc_info=True)
    return error_response(request, 500, "internal_error", "An unexpected error occurred")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingException, booking_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
