"""
Installments Router - listing, export and payment of a reservation's
installments (owner only)
"""
from fastapi import APIRouter, Depends, Path, Query, Request, Response

from ..dependencies import get_current_user, get_installment_ledger
from ..models import AuthenticatedUser
from ..responses import success
from ..services import InstallmentLedger

router = APIRouter(prefix="/api/installments", tags=["installments"])


@router.get("/by-reservation/{reservation_id}/export")
async def export_by_reservation(
    request: Request,
    reservation_id: int = Path(..., gt=0),
    format: str = Query("json", pattern="^(json|csv)$", description="json or csv"),
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: InstallmentLedger = Depends(get_installment_ledger)
):
    """Reservation bundle as JSON, or a CSV download (one row per installment)"""
    payload, media_type = await ledger.export_bundle(reservation_id, user.user_id, format)
    if format == "csv":
        return Response(
            content=payload,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="reservation-{reservation_id}-installments.csv"'}
        )
    return success(request, payload)


@router.get("/by-reservation/{reservation_id}")
async def list_by_reservation(
    request: Request,
    reservation_id: int = Path(..., gt=0),
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: InstallmentLedger = Depends(get_installment_ledger)
):
    """Empty list when the reservation does not exist or is not yours"""
    installments = await ledger.list_installments(reservation_id, user.user_id)
    return success(request, installments)


@router.patch("/{installment_id}/pay")
async def pay_installment(
    request: Request,
    installment_id: int = Path(..., gt=0),
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: InstallmentLedger = Depends(get_installment_ledger)
):
    """Mark as paid; repeating the call returns the same paid_at"""
    installment = await ledger.mark_installment_paid(installment_id, user.user_id)
    return success(request, installment)
