"""
Availability checks for one space on one date

Both functions expect a SlotTransaction, i.e. the caller already holds the
(space, date) lock; the answer stays true until that scope exits.
"""
from datetime import date
from typing import List, Optional

from .models import Reservation
from .repository import SlotTransaction
from .utils import TimeLike, format_time, intervals_overlap, minute_interval


async def find_conflicts(
    tx: SlotTransaction,
    space_id: int,
    day: date,
    start_time: TimeLike,
    duration_hours: int,
    exclude_reservation_id: Optional[int] = None
) -> List[Reservation]:
    """Existing reservations whose [start, end) intersects the candidate's"""
    start, end = minute_interval(start_time, duration_hours)
    existing = await tx.list_day_reservations(space_id, day, exclude_reservation_id)

    conflicts = []
    for reservation in existing:
        other_start, other_end = minute_interval(reservation.start_time, reservation.duration)
        if intervals_overlap(start, end, other_start, other_end):
            conflicts.append(reservation)
    return conflicts


async def has_overlap(
    tx: SlotTransaction,
    space_id: int,
    day: date,
    start_time: TimeLike,
    duration_hours: int,
    exclude_reservation_id: Optional[int] = None
) -> bool:
    """
    True iff the candidate overlaps an existing reservation.
    Touching intervals (10:00-12:00 and 12:00-14:00) do not overlap.
    """
    conflicts = await find_conflicts(tx, space_id, day, start_time, duration_hours, exclude_reservation_id)
    return bool(conflicts)


def describe_conflict(reservation: Reservation) -> dict:
    """Conflict entry for error details"""
    _, end = minute_interval(reservation.start_time, reservation.duration)
    return {
        "reservation_id": reservation.id,
        "start_time": format_time(reservation.start_time),
        "end_time": f"{end // 60:02d}:{end % 60:02d}",
        "duration": reservation.duration,
    }
