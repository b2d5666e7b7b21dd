"""
Reservation admission engine

Create and update share one admission path. The exchange rate is read
from the cache first, outside any lock; everything else runs inside a
single slot scope (one transaction holding the (space, date) lock):

    1. resolve the reservation being updated (owned by the caller) and
       refuse it if any of its installments is already paid
    2. resolve the space
    3. check opening hours
    4. check availability against the day's reservations
    5. price it (weekend factor) and convert with the rate read up front
    6. persist the reservation
    7. build/replace the installment schedule

Any exception aborts the scope, so a rejected or failed attempt leaves
no reservation and no installments behind.
"""
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog

from ..availability import describe_conflict, find_conflicts
from ..exceptions import (
    BookingException,
    InvalidHoursError,
    OverlappedReservationError,
    ReservationHasPaymentsError,
    ReservationNotFoundError,
    SpaceNotFoundError,
)
from ..exchange_rate import ExchangeRateCache
from ..metrics import (
    MetricsTimer,
    reservation_admission_duration_seconds,
    track_reservation_attempt,
    track_reservation_cancelled,
)
from ..models import CalculationDetails, Reservation, ReservationResult
from ..repository import BookingRepository
from ..utils import (
    CLOSING_HOUR,
    OPENING_HOUR,
    WEEKEND_FACTOR,
    DateLike,
    TimeLike,
    build_installments,
    calculate_total_price,
    convert_currency,
    format_time,
    is_weekend,
    is_within_allowed_hours,
    parse_date,
    parse_start_time,
    pricing_factor,
)

logger = structlog.get_logger(__name__)


class ReservationService:
    """Admits, reschedules, cancels and lists reservations"""

    def __init__(
        self,
        repository: BookingRepository,
        rate_cache: ExchangeRateCache,
        opening_hour: int = OPENING_HOUR,
        closing_hour: int = CLOSING_HOUR,
        weekend_factor: Decimal = WEEKEND_FACTOR,
        primary_currency: str = "VES",
        secondary_currency: str = "USD"
    ):
        self.repository = repository
        self.rate_cache = rate_cache
        self.opening_hour = opening_hour
        self.closing_hour = closing_hour
        self.weekend_factor = weekend_factor
        self.primary_currency = primary_currency
        self.secondary_currency = secondary_currency

    @classmethod
    def from_settings(cls, repository: BookingRepository, rate_cache: ExchangeRateCache, settings) -> "ReservationService":
        return cls(
            repository,
            rate_cache,
            opening_hour=settings.opening_hour,
            closing_hour=settings.closing_hour,
            weekend_factor=settings.weekend_factor,
            primary_currency=settings.primary_currency,
            secondary_currency=settings.secondary_currency
        )

    # ============================================================
    # Admission
    # ============================================================

    async def create_reservation(
        self,
        user_id: int,
        space_id: int,
        date: DateLike,
        start_time: TimeLike,
        duration_hours: int,
        installment_count: Optional[int] = None
    ) -> ReservationResult:
        """Admit a new reservation for user_id"""
        return await self._admit(
            "create", user_id, space_id, date, start_time, duration_hours, installment_count
        )

    async def update_reservation(
        self,
        reservation_id: int,
        user_id: int,
        space_id: int,
        date: DateLike,
        start_time: TimeLike,
        duration_hours: int,
        installment_count: Optional[int] = None
    ) -> ReservationResult:
        """
        Reschedule an owned reservation.

        The reservation itself is excluded from the availability check, so
        shifting a booking inside its own interval is allowed. Previous
        installments are replaced (or dropped when installment_count <= 1)
        since the new total may differ. Once any installment has been paid
        the reservation can no longer be rescheduled
        (ReservationHasPaymentsError); cancel and book again instead.
        """
        return await self._admit(
            "update", user_id, space_id, date, start_time, duration_hours, installment_count,
            reservation_id=reservation_id
        )

    async def _admit(
        self,
        operation: str,
        user_id: int,
        space_id: int,
        date: DateLike,
        start_time: TimeLike,
        duration_hours: int,
        installment_count: Optional[int],
        reservation_id: Optional[int] = None
    ) -> ReservationResult:
        day = parse_date(date)
        start = parse_start_time(start_time)
        log = logger.bind(
            operation=operation,
            user_id=user_id,
            space_id=space_id,
            date=day.isoformat(),
            start_time=format_time(start),
            duration=duration_hours
        )

        try:
            with MetricsTimer(reservation_admission_duration_seconds, {"operation": operation}):
                # a cache miss may wait on the provider; no lock is held meanwhile
                rate = await self.rate_cache.get_rate()

                async with self.repository.slot_scope(space_id, day) as tx:
                    if reservation_id is not None:
                        existing = await tx.get_reservation_for_update(reservation_id, user_id)
                        if existing is None:
                            raise ReservationNotFoundError(reservation_id)
                        if await tx.has_paid_installments(reservation_id):
                            raise ReservationHasPaymentsError(reservation_id)

                    space = await tx.get_space(space_id)
                    if space is None:
                        raise SpaceNotFoundError(space_id)

                    if duration_hours < 1 or not is_within_allowed_hours(
                        start, duration_hours, self.opening_hour, self.closing_hour
                    ):
                        raise InvalidHoursError(
                            format_time(start), duration_hours, self.opening_hour, self.closing_hour
                        )

                    conflicts = await find_conflicts(
                        tx, space_id, day, start, duration_hours,
                        exclude_reservation_id=reservation_id
                    )
                    if conflicts:
                        raise OverlappedReservationError(
                            space_id, day, [describe_conflict(c) for c in conflicts]
                        )

                    total_primary = calculate_total_price(
                        space.price_per_hour, duration_hours, day, self.weekend_factor
                    )
                    total_secondary = convert_currency(total_primary, rate)

                    if reservation_id is None:
                        reservation = await tx.insert_reservation(user_id, space_id, day, start, duration_hours)
                    else:
                        reservation = await tx.update_reservation(reservation_id, space_id, day, start, duration_hours)

                    installments = None
                    if installment_count and installment_count > 1:
                        drafts = build_installments(total_primary, installment_count, day)
                        installments = await tx.replace_installments(reservation.id, drafts)
                    elif reservation_id is not None:
                        await tx.replace_installments(reservation.id, [])

        except BookingException as e:
            track_reservation_attempt(operation, e.error_code)
            log.info("reservation_rejected", reason=e.error_code)
            raise

        track_reservation_attempt(operation, "admitted")
        log.info(
            "reservation_admitted",
            reservation_id=reservation.id,
            total_primary=str(total_primary),
            total_secondary=str(total_secondary),
            installments=len(installments) if installments else 0
        )

        return ReservationResult(
            reservation_id=reservation.id,
            total_primary=total_primary,
            total_secondary=total_secondary,
            installments=installments,
            calculation_details=CalculationDetails(
                base_rate=space.price_per_hour,
                duration_hours=duration_hours,
                date=day,
                weekend=is_weekend(day),
                factor=pricing_factor(day, self.weekend_factor),
                exchange_rate=rate,
                primary_currency=self.primary_currency,
                secondary_currency=self.secondary_currency
            )
        )

    # ============================================================
    # Queries & Cancellation
    # ============================================================

    async def cancel_reservation(self, reservation_id: int, user_id: int) -> bool:
        """Hard-delete an owned reservation with its installments; False if not found"""
        deleted = await self.repository.delete_user_reservation(reservation_id, user_id)
        if deleted:
            track_reservation_cancelled()
            logger.info("reservation_cancelled", reservation_id=reservation_id, user_id=user_id)
        return deleted

    async def get_reservation(self, reservation_id: int, user_id: int) -> Reservation:
        reservation = await self.repository.get_user_reservation(reservation_id, user_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    async def list_user_reservations(self, user_id: int) -> List[Reservation]:
        """Newest first (date desc, start time desc)"""
        return await self.repository.list_user_reservations(user_id)

    async def list_reservations(self, limit: int, offset: int) -> Tuple[List[Reservation], int]:
        """Admin listing across all users"""
        return await self.repository.list_reservations(limit, offset)
