"""
Property-Based Tests for the admission engine

Uses hypothesis to generate batches of booking requests, submits them
concurrently against a fresh in-process repository and verifies:
- No two admitted reservations for the same space and day overlap
- Every admitted reservation lies inside opening hours
- Every rejection has a reason (out of hours, or a real conflict)
"""
import asyncio
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from booking_api.exceptions import InvalidHoursError, OverlappedReservationError
from booking_api.exchange_rate import ExchangeRateCache, FixedRateProvider
from booking_api.memory_store import MemoryRepository
from booking_api.models import SpaceCreate
from booking_api.services import ReservationService
from booking_api.utils import intervals_overlap, is_within_allowed_hours, minute_interval

DAYS = ["2024-01-06", "2024-01-08"]


# ============================================================
# Test Data Strategies
# ============================================================

@st.composite
def booking_request_strategy(draw):
    """start 06:00-23:45 in 15 minute steps, 1-6 hours, one of two spaces and two days"""
    hour = draw(st.integers(min_value=6, max_value=23))
    minute = draw(st.sampled_from([0, 15, 30, 45]))
    return {
        "space_index": draw(st.integers(min_value=0, max_value=1)),
        "date": draw(st.sampled_from(DAYS)),
        "start_time": f"{hour:02d}:{minute:02d}",
        "duration_hours": draw(st.integers(min_value=1, max_value=6)),
    }


async def _run_batch(requests):
    repository = MemoryRepository(lock_timeout=5.0)
    service = ReservationService(repository, ExchangeRateCache(FixedRateProvider(Decimal("150.5"))))
    user = await repository.create_user("Ana", "ana@example.com", "not-a-real-hash")
    spaces = [
        await repository.create_space(SpaceCreate(name=f"Sala {i}", price_per_hour=Decimal("10.00")))
        for i in range(2)
    ]

    outcomes = await asyncio.gather(*(
        service.create_reservation(
            user.id,
            spaces[r["space_index"]].id,
            r["date"],
            r["start_time"],
            r["duration_hours"]
        )
        for r in requests
    ), return_exceptions=True)

    admitted = await repository.list_user_reservations(user.id)
    return spaces, outcomes, admitted


# ============================================================
# Property Tests
# ============================================================

@pytest.mark.property
@settings(max_examples=60, deadline=None)
@given(requests=st.lists(booking_request_strategy(), min_size=1, max_size=12))
def test_admitted_reservations_never_overlap(requests):
    """Property: for each (space, day) the admitted intervals are pairwise disjoint"""
    _, outcomes, admitted = asyncio.run(_run_batch(requests))

    assert len(admitted) == sum(1 for o in outcomes if not isinstance(o, Exception))

    for i, a in enumerate(admitted):
        for b in admitted[i + 1:]:
            if a.space_id != b.space_id or a.date != b.date:
                continue
            assert not intervals_overlap(
                *minute_interval(a.start_time, a.duration), *minute_interval(b.start_time, b.duration)
            ), f"Overlap between reservations {a.id} and {b.id}"


@pytest.mark.property
@settings(max_examples=60, deadline=None)
@given(requests=st.lists(booking_request_strategy(), min_size=1, max_size=12))
def test_admitted_reservations_respect_opening_hours(requests):
    """Property: every admitted reservation starts and ends inside 08:00-22:00"""
    _, _, admitted = asyncio.run(_run_batch(requests))

    for reservation in admitted:
        assert is_within_allowed_hours(reservation.start_time, reservation.duration)


@pytest.mark.property
@settings(max_examples=60, deadline=None)
@given(requests=st.lists(booking_request_strategy(), min_size=1, max_size=12))
def test_every_rejection_has_a_reason(requests):
    """Property: requests are only rejected for hours or for a real conflict"""
    spaces, outcomes, admitted = asyncio.run(_run_batch(requests))

    for request, outcome in zip(requests, outcomes):
        if not isinstance(outcome, Exception):
            continue

        if isinstance(outcome, InvalidHoursError):
            assert not is_within_allowed_hours(request["start_time"], request["duration_hours"])
            continue

        assert isinstance(outcome, OverlappedReservationError), repr(outcome)
        space_id = spaces[request["space_index"]].id
        wanted = minute_interval(request["start_time"], request["duration_hours"])
        assert any(
            r.space_id == space_id
            and r.date.isoformat() == request["date"]
            and intervals_overlap(*wanted, *minute_interval(r.start_time, r.duration))
            for r in admitted
        )
