"""
Tests for the reservation admission engine

Coverage:
- Booking flow: price, conversion, installments, calculation details
- Rejections and their order (space, hours, overlap)
- Nothing persisted when an attempt fails (including late failures)
- Concurrent conflicting bookings: exactly one wins
- Reschedule (update), cancel, listing and ownership
"""
import asyncio
from datetime import date, time
from decimal import Decimal

import pytest

from booking_api.exceptions import (
    ExchangeRateUnavailableError,
    InvalidHoursError,
    OverlappedReservationError,
    ReservationHasPaymentsError,
    ReservationNotFoundError,
    SpaceNotFoundError,
)
from booking_api.exchange_rate import ExchangeRateCache
from booking_api.models import SpaceCreate
from booking_api.repository import slot_key
from booking_api.services import InstallmentLedger, ReservationService
from booking_api.utils import parse_date

from .conftest import MONDAY, SATURDAY, TUESDAY, ScriptedRateProvider


class LockObservingProvider:
    """Records whether the slot lock was held while the rate was fetched"""

    name = "observing"

    def __init__(self, repository, key):
        self.repository = repository
        self.key = key
        self.locked_during_fetch = None

    async def fetch_rate(self) -> Decimal:
        self.locked_during_fetch = self.repository.slot_locks.locked(self.key)
        return Decimal("150.5")


class TestCreateReservation:

    @pytest.mark.asyncio
    async def test_weekday_booking_is_admitted(self, reservation_service, repository, user, cheap_space):
        result = await reservation_service.create_reservation(
            user.id, cheap_space.id, TUESDAY, "09:00", 3
        )

        assert result.total_primary == Decimal("150.00")
        assert result.total_secondary == Decimal("1.00")  # 150.00 / 150.5
        assert result.installments is None
        details = result.calculation_details
        assert details.base_rate == Decimal("50.00")
        assert details.weekend is False
        assert details.factor == Decimal("1.0")
        assert details.exchange_rate == Decimal("150.5")
        assert details.date == date(2024, 1, 9)

        stored = await repository.get_user_reservation(result.reservation_id, user.id)
        assert stored.start_time == time(9, 0)
        assert stored.duration == 3

    @pytest.mark.asyncio
    async def test_weekend_booking_applies_factor(self, reservation_service, user, space):
        result = await reservation_service.create_reservation(user.id, space.id, SATURDAY, "10:00", 2)

        assert result.total_primary == Decimal("240.00")
        assert result.calculation_details.weekend is True
        assert result.calculation_details.factor == Decimal("1.2")

    @pytest.mark.asyncio
    async def test_overlapping_booking_is_rejected(self, reservation_service, user, other_user, cheap_space):
        await reservation_service.create_reservation(user.id, cheap_space.id, TUESDAY, "09:00", 3)

        with pytest.raises(OverlappedReservationError) as exc_info:
            await reservation_service.create_reservation(other_user.id, cheap_space.id, TUESDAY, "10:00", 2)

        conflicts = exc_info.value.details["conflicts"]
        assert [(c["start_time"], c["end_time"]) for c in conflicts] == [("09:00", "12:00")]

    @pytest.mark.asyncio
    async def test_adjacent_booking_is_admitted(self, reservation_service, user, space):
        await reservation_service.create_reservation(user.id, space.id, TUESDAY, "09:00", 3)
        result = await reservation_service.create_reservation(user.id, space.id, TUESDAY, "12:00", 2)

        assert result.reservation_id

    @pytest.mark.asyncio
    async def test_booking_past_closing_is_rejected(self, reservation_service, user, space):
        with pytest.raises(InvalidHoursError):
            await reservation_service.create_reservation(user.id, space.id, TUESDAY, "21:00", 3)

    @pytest.mark.asyncio
    async def test_booking_before_opening_is_rejected(self, reservation_service, user, space):
        with pytest.raises(InvalidHoursError):
            await reservation_service.create_reservation(user.id, space.id, TUESDAY, "07:00", 2)

    @pytest.mark.asyncio
    async def test_unknown_space_is_checked_before_hours(self, reservation_service, user):
        with pytest.raises(SpaceNotFoundError):
            await reservation_service.create_reservation(user.id, 999, TUESDAY, "23:00", 5)

    @pytest.mark.asyncio
    async def test_hours_are_checked_before_overlap(self, reservation_service, user, space):
        await reservation_service.create_reservation(user.id, space.id, TUESDAY, "20:00", 2)

        with pytest.raises(InvalidHoursError):
            await reservation_service.create_reservation(user.id, space.id, TUESDAY, "21:00", 2)

    @pytest.mark.asyncio
    async def test_installments_sum_to_total(self, reservation_service, repository, user):
        space = await repository.create_space(SpaceCreate(name="Sala C", price_per_hour=Decimal("111.11")))

        result = await reservation_service.create_reservation(
            user.id, space.id, "2024-01-15", "09:00", 3, installment_count=4
        )

        assert result.total_primary == Decimal("333.33")
        amounts = [i.amount for i in result.installments]
        assert amounts == [Decimal("83.33"), Decimal("83.33"), Decimal("83.33"), Decimal("83.34")]
        assert sum(amounts) == result.total_primary
        assert [i.due_date for i in result.installments] == [
            date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15)
        ]
        assert all(not i.paid and i.paid_at is None for i in result.installments)

        stored = await repository.list_installments(result.reservation_id, user.id)
        assert [i.id for i in stored] == [i.id for i in result.installments]

    @pytest.mark.asyncio
    async def test_single_installment_creates_none(self, reservation_service, repository, user, space):
        result = await reservation_service.create_reservation(
            user.id, space.id, MONDAY, "09:00", 1, installment_count=1
        )

        assert result.installments is None
        assert await repository.list_installments(result.reservation_id, user.id) == []

    @pytest.mark.asyncio
    async def test_rate_failure_leaves_nothing_behind(self, repository, user, space, clock):
        cache = ExchangeRateCache(ScriptedRateProvider(RuntimeError("down")), clock=clock)
        service = ReservationService(repository, cache)

        with pytest.raises(ExchangeRateUnavailableError):
            await service.create_reservation(user.id, space.id, MONDAY, "09:00", 2, installment_count=3)

        assert await repository.list_user_reservations(user.id) == []
        assert repository.get_stats()["reservations"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_conflicting_bookings_admit_exactly_one(
        self, repository, user, other_user, space, clock
    ):
        # slow provider makes all four attempts reach the slot lock together
        cache = ExchangeRateCache(ScriptedRateProvider("150.5", delay=0.01), clock=clock)
        service = ReservationService(repository, cache)

        attempts = [
            service.create_reservation(user.id, space.id, MONDAY, "10:00", 2),
            service.create_reservation(other_user.id, space.id, MONDAY, "10:30", 2),
            service.create_reservation(user.id, space.id, MONDAY, "09:00", 2),
            service.create_reservation(other_user.id, space.id, MONDAY, "10:00", 1),
        ]
        results = await asyncio.gather(*attempts, return_exceptions=True)

        admitted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(admitted) == 1
        assert all(isinstance(r, OverlappedReservationError) for r in rejected)

        reservations, total = await repository.list_reservations(limit=10, offset=0)
        assert total == 1

    @pytest.mark.asyncio
    async def test_concurrent_bookings_on_different_days_all_succeed(self, reservation_service, user, space):
        days = ["2024-01-08", "2024-01-09", "2024-01-10", "2024-01-11"]
        results = await asyncio.gather(*(
            reservation_service.create_reservation(user.id, space.id, day, "10:00", 2) for day in days
        ))

        assert len({r.reservation_id for r in results}) == len(days)

    @pytest.mark.asyncio
    async def test_rate_is_read_before_the_slot_lock(self, repository, user, space, clock):
        key = slot_key(space.id, parse_date(MONDAY))
        provider = LockObservingProvider(repository, key)
        service = ReservationService(repository, ExchangeRateCache(provider, clock=clock))

        await service.create_reservation(user.id, space.id, MONDAY, "09:00", 1)

        assert provider.locked_during_fetch is False


class TestUpdateReservation:

    @pytest.mark.asyncio
    async def test_shift_within_own_interval(self, reservation_service, repository, user, space):
        created = await reservation_service.create_reservation(user.id, space.id, MONDAY, "09:00", 3)

        result = await reservation_service.update_reservation(
            created.reservation_id, user.id, space.id, MONDAY, "10:00", 3
        )

        assert result.reservation_id == created.reservation_id
        stored = await repository.get_user_reservation(created.reservation_id, user.id)
        assert stored.start_time == time(10, 0)

    @pytest.mark.asyncio
    async def test_update_into_another_booking_is_rejected(self, reservation_service, repository, user, space):
        first = await reservation_service.create_reservation(user.id, space.id, MONDAY, "09:00", 2)
        await reservation_service.create_reservation(user.id, space.id, MONDAY, "14:00", 2)

        with pytest.raises(OverlappedReservationError):
            await reservation_service.update_reservation(
                first.reservation_id, user.id, space.id, MONDAY, "13:00", 2
            )

        stored = await repository.get_user_reservation(first.reservation_id, user.id)
        assert stored.start_time == time(9, 0)

    @pytest.mark.asyncio
    async def test_update_of_foreign_reservation_is_not_found(self, reservation_service, user, other_user, space):
        created = await reservation_service.create_reservation(user.id, space.id, MONDAY, "09:00", 2)

        with pytest.raises(ReservationNotFoundError):
            await reservation_service.update_reservation(
                created.reservation_id, other_user.id, space.id, MONDAY, "15:00", 2
            )

    @pytest.mark.asyncio
    async def test_ownership_is_checked_before_space(self, reservation_service, user):
        with pytest.raises(ReservationNotFoundError):
            await reservation_service.update_reservation(12345, user.id, 999, MONDAY, "09:00", 1)

    @pytest.mark.asyncio
    async def test_update_replaces_installments(self, reservation_service, repository, user, space):
        created = await reservation_service.create_reservation(
            user.id, space.id, MONDAY, "09:00", 3, installment_count=3
        )
        old_ids = {i.id for i in created.installments}

        result = await reservation_service.update_reservation(
            created.reservation_id, user.id, space.id, SATURDAY, "09:00", 2, installment_count=2
        )

        assert result.total_primary == Decimal("240.00")
        stored = await repository.list_installments(created.reservation_id, user.id)
        assert len(stored) == 2
        assert old_ids.isdisjoint({i.id for i in stored})
        assert sum(i.amount for i in stored) == Decimal("240.00")

    @pytest.mark.asyncio
    async def test_update_without_installments_clears_schedule(self, reservation_service, repository, user, space):
        created = await reservation_service.create_reservation(
            user.id, space.id, MONDAY, "09:00", 3, installment_count=3
        )

        await reservation_service.update_reservation(
            created.reservation_id, user.id, space.id, MONDAY, "09:00", 1
        )

        assert await repository.list_installments(created.reservation_id, user.id) == []

    @pytest.mark.asyncio
    async def test_move_to_another_space(self, reservation_service, repository, user, space, cheap_space):
        created = await reservation_service.create_reservation(user.id, space.id, MONDAY, "09:00", 2)

        result = await reservation_service.update_reservation(
            created.reservation_id, user.id, cheap_space.id, MONDAY, "09:00", 2
        )

        assert result.total_primary == Decimal("100.00")
        stored = await repository.get_user_reservation(created.reservation_id, user.id)
        assert stored.space_id == cheap_space.id

    @pytest.mark.asyncio
    async def test_update_after_a_payment_is_rejected(self, reservation_service, repository, user, space):
        created = await reservation_service.create_reservation(
            user.id, space.id, MONDAY, "09:00", 3, installment_count=3
        )
        await InstallmentLedger(repository).mark_installment_paid(created.installments[0].id, user.id)

        with pytest.raises(ReservationHasPaymentsError):
            await reservation_service.update_reservation(
                created.reservation_id, user.id, space.id, MONDAY, "10:00", 3, installment_count=3
            )

        stored = await repository.list_installments(created.reservation_id, user.id)
        assert [i.id for i in stored] == [i.id for i in created.installments]
        assert [i.paid for i in stored] == [True, False, False]
        assert sum(i.amount for i in stored) == Decimal("300.00")
        reservation = await repository.get_user_reservation(created.reservation_id, user.id)
        assert reservation.start_time == time(9, 0)

    @pytest.mark.asyncio
    async def test_payment_landing_during_update_aborts_it(self, reservation_service, repository, user, space):
        created = await reservation_service.create_reservation(
            user.id, space.id, MONDAY, "09:00", 2, installment_count=2
        )
        day = parse_date(MONDAY)

        with pytest.raises(ReservationHasPaymentsError):
            async with repository.slot_scope(space.id, day) as tx:
                assert await tx.has_paid_installments(created.reservation_id) is False
                await tx.update_reservation(created.reservation_id, space.id, day, time(12, 0), 2)
                await tx.replace_installments(created.reservation_id, [])
                await InstallmentLedger(repository).mark_installment_paid(created.installments[0].id, user.id)

        stored = await repository.list_installments(created.reservation_id, user.id)
        assert [i.paid for i in stored] == [True, False]
        reservation = await repository.get_user_reservation(created.reservation_id, user.id)
        assert reservation.start_time == time(9, 0)


class TestCancelAndList:

    @pytest.mark.asyncio
    async def test_cancel_removes_reservation_and_installments(self, reservation_service, repository, user, space):
        created = await reservation_service.create_reservation(
            user.id, space.id, MONDAY, "09:00", 2, installment_count=2
        )

        assert await reservation_service.cancel_reservation(created.reservation_id, user.id) is True
        assert await repository.list_installments(created.reservation_id, user.id) == []
        assert repository.get_stats()["reservations"] == 0

        # slot is free again
        await reservation_service.create_reservation(user.id, space.id, MONDAY, "09:00", 2)

    @pytest.mark.asyncio
    async def test_cancel_foreign_reservation_returns_false(self, reservation_service, user, other_user, space):
        created = await reservation_service.create_reservation(user.id, space.id, MONDAY, "09:00", 2)

        assert await reservation_service.cancel_reservation(created.reservation_id, other_user.id) is False
        assert await reservation_service.get_reservation(created.reservation_id, user.id)

    @pytest.mark.asyncio
    async def test_get_foreign_reservation_is_not_found(self, reservation_service, user, other_user, space):
        created = await reservation_service.create_reservation(user.id, space.id, MONDAY, "09:00", 2)

        with pytest.raises(ReservationNotFoundError):
            await reservation_service.get_reservation(created.reservation_id, other_user.id)

    @pytest.mark.asyncio
    async def test_user_listing_is_newest_first(self, reservation_service, user, other_user, space):
        await reservation_service.create_reservation(user.id, space.id, "2024-01-08", "09:00", 1)
        await reservation_service.create_reservation(user.id, space.id, "2024-01-10", "09:00", 1)
        await reservation_service.create_reservation(user.id, space.id, "2024-01-10", "15:00", 1)
        await reservation_service.create_reservation(other_user.id, space.id, "2024-01-11", "09:00", 1)

        reservations = await reservation_service.list_user_reservations(user.id)

        assert [(r.date.isoformat(), r.start_time.strftime("%H:%M")) for r in reservations] == [
            ("2024-01-10", "15:00"),
            ("2024-01-10", "09:00"),
            ("2024-01-08", "09:00"),
        ]

    @pytest.mark.asyncio
    async def test_admin_listing_is_paginated(self, reservation_service, user, space):
        for hour in ("08:00", "10:00", "12:00"):
            await reservation_service.create_reservation(user.id, space.id, MONDAY, hour, 1)

        page, total = await reservation_service.list_reservations(limit=2, offset=2)

        assert total == 3
        assert [r.start_time for r in page] == [time(8, 0)]
