"""
Installment ledger

Installments are written by the admission engine; afterwards only their
paid flag and paid_at timestamp change, and only from unpaid to paid.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple

import structlog

from ..exceptions import InstallmentNotFoundError, ReservationNotFoundError
from ..metrics import track_installment_paid
from ..models import Installment
from ..repository import BookingRepository
from ..utils import format_time, to_csv, utcnow

logger = structlog.get_logger(__name__)

EXPORT_FORMATS = ("json", "csv")

CSV_HEADERS = [
    "reservation_id",
    "user_name",
    "user_email",
    "space_name",
    "date",
    "start_time",
    "duration",
    "installment_id",
    "due_date",
    "amount",
    "paid",
    "paid_at",
]


class InstallmentLedger:
    """Listing, payment and export of a reservation's installments"""

    def __init__(self, repository: BookingRepository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    async def list_installments(self, reservation_id: int, user_id: int) -> List[Installment]:
        """
        Installments ordered by due date then id.
        A reservation the caller does not own yields an empty list, not an error.
        """
        return await self.repository.list_installments(reservation_id, user_id)

    async def mark_installment_paid(self, installment_id: int, user_id: int) -> Installment:
        """Idempotent: paying an already paid installment keeps the original paid_at"""
        installment, changed = await self.repository.mark_installment_paid(
            installment_id, user_id, self.clock()
        )
        if installment is None:
            raise InstallmentNotFoundError(installment_id)

        if changed:
            track_installment_paid()
            logger.info(
                "installment_paid",
                installment_id=installment_id,
                reservation_id=installment.reservation_id,
                amount=str(installment.amount)
            )
        return installment

    async def get_bundle(self, reservation_id: int, user_id: int) -> Dict[str, Any]:
        """Reservation with its owner, space and installments"""
        reservation = await self.repository.get_user_reservation(reservation_id, user_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)

        user = await self.repository.get_user(user_id)
        space = await self.repository.get_space(reservation.space_id)
        installments = await self.repository.list_installments(reservation_id, user_id)

        return {
            "reservation": reservation,
            "user": user.public() if user else None,
            "space": space,
            "installments": installments,
        }

    async def export_bundle(self, reservation_id: int, user_id: int, fmt: str = "json") -> Tuple[Any, str]:
        """
        Export a reservation's installments.

        Returns (payload, media_type): the bundle as a JSON-ready dict, or a
        CSV string with one row per installment.
        """
        fmt = (fmt or "json").lower()
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt}")

        bundle = await self.get_bundle(reservation_id, user_id)

        if fmt == "json":
            return {
                "reservation": bundle["reservation"].model_dump(mode="json"),
                "user": bundle["user"].model_dump(mode="json", include={"id", "name", "email"}) if bundle["user"] else None,
                "space": bundle["space"].model_dump(mode="json") if bundle["space"] else None,
                "installments": [i.model_dump(mode="json") for i in bundle["installments"]],
            }, "application/json"

        reservation = bundle["reservation"]
        user = bundle["user"]
        space = bundle["space"]
        rows = [
            {
                "reservation_id": reservation.id,
                "user_name": user.name if user else None,
                "user_email": user.email if user else None,
                "space_name": space.name if space else None,
                "date": reservation.date,
                "start_time": format_time(reservation.start_time),
                "duration": reservation.duration,
                "installment_id": installment.id,
                "due_date": installment.due_date,
                "amount": f"{installment.amount:.2f}",
                "paid": installment.paid,
                "paid_at": installment.paid_at,
            }
            for installment in bundle["installments"]
        ]
        return to_csv(CSV_HEADERS, rows), "text/csv; charset=utf-8"
