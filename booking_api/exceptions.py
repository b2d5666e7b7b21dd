"""
Domain exceptions for the booking engine
A closed set: every failure the engine can report is one of these.
HTTP status mapping lives in error_handlers.py, not here.
"""
from typing import Optional, Any


class BookingException(Exception):
    """Base exception for all booking errors"""

    error_code = "booking_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.message = message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses"""
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details
        }

# ============================================================
# Lookup Exceptions
# ============================================================

class RecordNotFoundError(BookingException):
    """Record not found (or not visible to the requesting user)"""

    error_code = "not_found"

    def __init__(self, resource: str, identifier: Any, error_code: Optional[str] = None):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SpaceNotFoundError(RecordNotFoundError):
    """Referenced space does not exist"""

    error_code = "space_not_found"

    def __init__(self, space_id: Any):
        super().__init__("Space", space_id)
        self.space_id = space_id


class ReservationNotFoundError(RecordNotFoundError):
    """Reservation missing or owned by someone else (indistinguishable on purpose)"""

    error_code = "reservation_not_found"

    def __init__(self, reservation_id: Any):
        super().__init__("Reservation", reservation_id)
        self.reservation_id = reservation_id


class InstallmentNotFoundError(RecordNotFoundError):
    """Installment missing or its reservation is not owned by the caller"""

    def __init__(self, installment_id: Any):
        super().__init__("Installment", installment_id)
        self.installment_id = installment_id


class UserNotFoundError(RecordNotFoundError):
    """User not found"""

    error_code = "user_not_found"

    def __init__(self, user_id: Any):
        super().__init__("User", user_id)

# ============================================================
# Admission Exceptions
# ============================================================

class InvalidHoursError(BookingException):
    """Requested slot falls outside the opening window"""

    error_code = "invalid_hours"

    def __init__(self, start_time: str, duration_hours: int, opening_hour: int = 8, closing_hour: int = 22):
        super().__init__(
            message=(
                f"Reservation {start_time} + {duration_hours}h is outside "
                f"{opening_hour:02d}:00-{closing_hour:02d}:00"
            ),
            details={
                "start_time": start_time,
                "duration_hours": duration_hours,
                "opening_hour": opening_hour,
                "closing_hour": closing_hour
            }
        )


class OverlappedReservationError(BookingException):
    """Another reservation already holds part of the requested interval"""

    error_code = "overlapped_reservation"

    def __init__(self, space_id: Any, date: Any, conflicts: Optional[list] = None):
        super().__init__(
            message=f"Reservation overlaps an existing booking for space {space_id} on {date}",
            details={
                "space_id": str(space_id),
                "date": str(date),
                "conflicts": conflicts or []
            }
        )


class ReservationHasPaymentsError(BookingException):
    """Reservation with a paid installment cannot be rescheduled"""

    error_code = "reservation_has_payments"

    def __init__(self, reservation_id: Any):
        super().__init__(
            message=f"Reservation {reservation_id} has paid installments and cannot be rescheduled",
            details={"reservation_id": str(reservation_id)}
        )
        self.reservation_id = reservation_id

# ============================================================
# Infrastructure Exceptions
# ============================================================

class ExchangeRateUnavailableError(BookingException):
    """Rate provider failed and no fallback rate is configured (retryable)"""

    error_code = "exchange_rate_unavailable"
    retryable = True

    def __init__(self, reason: str = "Exchange rate provider unavailable"):
        super().__init__(message=reason, details={"retryable": True})


class StorageUnavailableError(BookingException):
    """Lock wait / statement timeout, deadlock or serialization failure (retryable)"""

    error_code = "storage_unavailable"
    retryable = True

    def __init__(self, reason: str = "Storage temporarily unavailable, retry the request"):
        super().__init__(message=reason, details={"retryable": True})


class DatabaseError(BookingException):
    """Database connection or query error"""

    error_code = "database_error"


class DuplicateResourceError(BookingException):
    """Resource already exists"""

    error_code = "duplicate_resource"

    def __init__(self, resource: str, identifier: Any, error_code: Optional[str] = None):
        super().__init__(
            message=f"{resource} already exists: {identifier}",
            error_code=error_code,
            details={"resource": resource, "identifier": str(identifier)}
        )

# ============================================================
# Auth Exceptions
# ============================================================

class AuthenticationError(BookingException):
    """Authentication failed"""

    error_code = "invalid_credentials"

    def __init__(self, message: str = "Authentication failed", error_code: Optional[str] = None):
        super().__init__(message=message, error_code=error_code)


class AuthorizationError(BookingException):
    """Authorization failed"""

    error_code = "forbidden"

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message=message)
