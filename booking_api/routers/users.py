"""
Users Router - profile and account management
Listing, lookup and creation are admin-only; an account can be updated
or deleted by its owner or by an admin. Only admins may change a role.
"""
from fastapi import APIRouter, Depends, Path, Request
import structlog

from ..auth import AuthService
from ..dependencies import (
    get_auth_service,
    get_current_user,
    get_repository,
    paginate,
    require_admin,
    require_self_or_admin,
)
from ..exceptions import AuthorizationError, UserNotFoundError
from ..models import AuthenticatedUser, PaginationParams, UserAdminCreate, UserUpdate
from ..repository import USER_SORT_FIELDS, BookingRepository
from ..responses import pagination_meta, success

router = APIRouter(prefix="/api/users", tags=["users"])
logger = structlog.get_logger(__name__)


@router.get("")
async def list_users(
    request: Request,
    pagination: PaginationParams = Depends(paginate(USER_SORT_FIELDS, default_sort="id")),
    admin: AuthenticatedUser = Depends(require_admin),
    repository: BookingRepository = Depends(get_repository)
):
    """List users (search matches name or email)"""
    users, total = await repository.list_users(
        pagination.limit, pagination.offset, pagination.search,
        sort_by=pagination.sort_by, descending=pagination.descending
    )
    return success(
        request,
        [u.public() for u in users],
        pagination=pagination_meta(request, pagination, total)
    )


@router.get("/me")
async def get_profile(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    repository: BookingRepository = Depends(get_repository)
):
    record = await repository.get_user(user.user_id)
    if record is None:
        raise UserNotFoundError(user.user_id)
    return success(request, record.public())


@router.get("/{user_id}")
async def get_user(
    request: Request,
    user_id: int = Path(..., gt=0),
    admin: AuthenticatedUser = Depends(require_admin),
    repository: BookingRepository = Depends(get_repository)
):
    record = await repository.get_user(user_id)
    if record is None:
        raise UserNotFoundError(user_id)
    return success(request, record.public())


@router.post("", status_code=201)
async def create_user(
    request: Request,
    payload: UserAdminCreate,
    admin: AuthenticatedUser = Depends(require_admin),
    auth_service: AuthService = Depends(get_auth_service)
):
    """Create an account with any role (409 email_in_use if the email is taken)"""
    user = await auth_service.register(payload, role=payload.role)
    logger.info("user_created", user_id=user.id, admin_id=admin.user_id)
    return success(request, user, status_code=201)


@router.api_route("/{user_id}", methods=["PATCH", "PUT"])
async def update_user(
    request: Request,
    payload: UserUpdate,
    user_id: int = Path(..., gt=0),
    caller: AuthenticatedUser = Depends(require_self_or_admin),
    repository: BookingRepository = Depends(get_repository)
):
    """Partial update: only fields present in the body change"""
    if payload.role is not None and not caller.is_admin:
        raise AuthorizationError("Admin role required to change a role")

    record = await repository.update_user(user_id, payload)
    if record is None:
        raise UserNotFoundError(user_id)
    logger.info("user_updated", user_id=user_id, by_user_id=caller.user_id)
    return success(request, record.public())


@router.delete("/{user_id}")
async def delete_user(
    request: Request,
    user_id: int = Path(..., gt=0),
    caller: AuthenticatedUser = Depends(require_self_or_admin),
    repository: BookingRepository = Depends(get_repository)
):
    """Delete an account together with its reservations and installments"""
    if not await repository.delete_user(user_id):
        raise UserNotFoundError(user_id)
    logger.info("user_deleted", user_id=user_id, by_user_id=caller.user_id)
    return success(request, {"id": user_id, "deleted": True})
