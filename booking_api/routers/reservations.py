"""
Reservations Router
Every route requires authentication; users only see and change their own
reservations, the full listing is admin-only.
"""
from fastapi import APIRouter, Depends, Path, Request

from ..dependencies import get_current_user, get_pagination, get_reservation_service, require_admin
from ..exceptions import ReservationNotFoundError
from ..models import AuthenticatedUser, PaginationParams, ReservationRequest
from ..responses import pagination_meta, success
from ..services import ReservationService

router = APIRouter(prefix="/api/reservations", tags=["reservations"])


@router.get("")
async def list_reservations(
    request: Request,
    pagination: PaginationParams = Depends(get_pagination),
    admin: AuthenticatedUser = Depends(require_admin),
    service: ReservationService = Depends(get_reservation_service)
):
    """All reservations, newest date first (admin)"""
    reservations, total = await service.list_reservations(pagination.limit, pagination.offset)
    return success(request, reservations, pagination=pagination_meta(request, pagination, total))


@router.get("/me")
async def list_my_reservations(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service)
):
    reservations = await service.list_user_reservations(user.user_id)
    return success(request, reservations)


@router.get("/{reservation_id}")
async def get_reservation(
    request: Request,
    reservation_id: int = Path(..., gt=0),
    user: AuthenticatedUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service)
):
    reservation = await service.get_reservation(reservation_id, user.user_id)
    return success(request, reservation)


@router.post("", status_code=201)
async def create_reservation(
    request: Request,
    payload: ReservationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service)
):
    """
    Book a space

    Errors: 404 space_not_found, 400 invalid_hours, 409 overlapped_reservation,
    503 exchange_rate_unavailable / storage_unavailable (retry)
    """
    result = await service.create_reservation(
        user_id=user.user_id,
        space_id=payload.space_id,
        date=payload.date,
        start_time=payload.start_time,
        duration_hours=payload.duration,
        installment_count=payload.installment_count
    )
    return success(request, result, status_code=201)


@router.put("/{reservation_id}")
async def update_reservation(
    request: Request,
    payload: ReservationRequest,
    reservation_id: int = Path(..., gt=0),
    user: AuthenticatedUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service)
):
    """Reschedule an owned reservation (same checks as create)"""
    result = await service.update_reservation(
        reservation_id=reservation_id,
        user_id=user.user_id,
        space_id=payload.space_id,
        date=payload.date,
        start_time=payload.start_time,
        duration_hours=payload.duration,
        installment_count=payload.installment_count
    )
    return success(request, result)


@router.delete("/{reservation_id}")
async def cancel_reservation(
    request: Request,
    reservation_id: int = Path(..., gt=0),
    user: AuthenticatedUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service)
):
    if not await service.cancel_reservation(reservation_id, user.user_id):
        raise ReservationNotFoundError(reservation_id)
    return success(request, {"id": reservation_id, "deleted": True})
