"""
Spaces Router - CRUD for bookable spaces
Any authenticated user can read; writes require the admin role.
"""
from fastapi import APIRouter, Depends, Path, Request
import structlog

from ..dependencies import get_current_user, get_repository, paginate, require_admin
from ..exceptions import SpaceNotFoundError
from ..models import AuthenticatedUser, PaginationParams, SpaceCreate, SpaceUpdate
from ..repository import SPACE_SORT_FIELDS, BookingRepository
from ..responses import pagination_meta, success

router = APIRouter(prefix="/api/spaces", tags=["spaces"])
logger = structlog.get_logger(__name__)


@router.get("")
async def list_spaces(
    request: Request,
    pagination: PaginationParams = Depends(paginate(SPACE_SORT_FIELDS, default_sort="id")),
    user: AuthenticatedUser = Depends(get_current_user),
    repository: BookingRepository = Depends(get_repository)
):
    """List spaces, by id unless sort_by is given (search filters by name)"""
    spaces, total = await repository.list_spaces(
        pagination.limit, pagination.offset, pagination.search,
        sort_by=pagination.sort_by, descending=pagination.descending
    )
    return success(request, spaces, pagination=pagination_meta(request, pagination, total))


@router.get("/{space_id}")
async def get_space(
    request: Request,
    space_id: int = Path(..., gt=0),
    user: AuthenticatedUser = Depends(get_current_user),
    repository: BookingRepository = Depends(get_repository)
):
    space = await repository.get_space(space_id)
    if space is None:
        raise SpaceNotFoundError(space_id)
    return success(request, space)


@router.post("", status_code=201)
async def create_space(
    request: Request,
    payload: SpaceCreate,
    admin: AuthenticatedUser = Depends(require_admin),
    repository: BookingRepository = Depends(get_repository)
):
    space = await repository.create_space(payload)
    logger.info("space_created", space_id=space.id, admin_id=admin.user_id)
    return success(request, space, status_code=201)


@router.api_route("/{space_id}", methods=["PATCH", "PUT"])
async def update_space(
    request: Request,
    payload: SpaceUpdate,
    space_id: int = Path(..., gt=0),
    admin: AuthenticatedUser = Depends(require_admin),
    repository: BookingRepository = Depends(get_repository)
):
    """Partial update: only fields present in the body change"""
    space = await repository.update_space(space_id, payload)
    if space is None:
        raise SpaceNotFoundError(space_id)
    logger.info("space_updated", space_id=space_id, admin_id=admin.user_id)
    return success(request, space)


@router.delete("/{space_id}")
async def delete_space(
    request: Request,
    space_id: int = Path(..., gt=0),
    admin: AuthenticatedUser = Depends(require_admin),
    repository: BookingRepository = Depends(get_repository)
):
    """Delete a space together with its reservations and installments"""
    if not await repository.delete_space(space_id):
        raise SpaceNotFoundError(space_id)
    logger.info("space_deleted", space_id=space_id, admin_id=admin.user_id)
    return success(request, {"id": space_id, "deleted": True})
