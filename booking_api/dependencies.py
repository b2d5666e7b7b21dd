"""
FastAPI dependencies: services from app.state, the authenticated user,
admin and self-or-admin gates, and pagination parameters
"""
from typing import Optional, Sequence

from fastapi import Depends, Path, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import structlog

from .auth import AuthService
from .exceptions import AuthorizationError
from .models import AuthenticatedUser, PaginationParams, SortDirection
from .repository import BookingRepository
from .services import InstallmentLedger, ReservationService

# Bearer token security (errors are raised by us so they use the envelope)
security = HTTPBearer(auto_error=False)


def get_repository(request: Request) -> BookingRepository:
    return request.app.state.repository


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_reservation_service(request: Request) -> ReservationService:
    return request.app.state.reservation_service


def get_installment_ledger(request: Request) -> InstallmentLedger:
    return request.app.state.installment_ledger


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security)
) -> AuthenticatedUser:
    """
    Resolve the caller from the Authorization: Bearer header

    Raises:
        AuthenticationError: missing, expired or invalid token (401)
    """
    auth_service: AuthService = request.app.state.auth_service
    user = auth_service.authenticate(credentials.credentials if credentials else None)

    request.state.user_id = user.user_id
    structlog.contextvars.bind_contextvars(user_id=user.user_id)
    return user


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Allow only the admin role (403 otherwise)"""
    if not user.is_admin:
        raise AuthorizationError("Admin role required")
    return user


async def require_self_or_admin(
    user_id: int = Path(..., gt=0),
    user: AuthenticatedUser = Depends(get_current_user)
) -> AuthenticatedUser:
    """Allow the account owner (path user_id) or an admin (403 otherwise)"""
    if not user.is_admin and user.user_id != user_id:
        raise AuthorizationError("Only the account owner or an admin may do this")
    return user


def paginate(sort_fields: Sequence[str] = (), default_sort: Optional[str] = None):
    """
    Build a pagination dependency for one listing.

    sort_by must be one of sort_fields (422 otherwise); listings without
    sort_fields have a fixed order and reject sort_by altogether.
    """
    def dependency(
        request: Request,
        page: int = Query(1, ge=1, description="Page number (1-based)"),
        limit: Optional[int] = Query(None, ge=1, le=100, description="Items per page"),
        search: Optional[str] = Query(None, max_length=255, description="Case-insensitive name filter"),
        sort_by: Optional[str] = Query(None, description=f"One of: {', '.join(sort_fields) or 'none'}"),
        sort_dir: str = Query("asc", pattern="^(asc|desc|ASC|DESC)$", description="asc or desc")
    ) -> PaginationParams:
        if sort_by is not None and sort_by not in sort_fields:
            raise RequestValidationError([{
                "loc": ("query", "sort_by"),
                "msg": f"sort_by must be one of {list(sort_fields)}",
                "type": "value_error",
            }])

        settings = request.app.state.settings
        limit = limit or settings.page_default_limit
        return PaginationParams(
            page=page,
            limit=min(limit, settings.page_max_limit),
            search=search or None,
            sort_by=sort_by or default_sort,
            sort_dir=SortDirection(sort_dir.lower())
        )

    return dependency


get_pagination = paginate()
