"""
Tests for time and pricing utilities

Coverage:
- Opening hours window (start hour only)
- Weekend detection and price factor
- Half-up rounding of totals and conversions
- Monthly installment schedule (dates, remainder, sum)
- Half-open interval overlap
- CSV export format
"""
from datetime import date, time
from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from booking_api.utils import (
    add_months,
    build_installments,
    calculate_total_price,
    convert_currency,
    intervals_overlap,
    is_weekend,
    is_within_allowed_hours,
    minute_interval,
    round2,
    to_csv,
    to_minutes,
)


class TestAllowedHours:

    @pytest.mark.parametrize("start, duration", [
        ("08:00", 1),
        ("08:00", 14),
        ("09:00", 3),
        ("21:00", 1),
        ("21:30", 1),  # minutes are not part of the check
    ])
    def test_accepted(self, start, duration):
        assert is_within_allowed_hours(start, duration)

    @pytest.mark.parametrize("start, duration", [
        ("07:59", 1),
        ("07:00", 2),
        ("21:00", 2),
        ("21:00", 3),
        ("22:00", 1),
        ("08:00", 15),
    ])
    def test_rejected(self, start, duration):
        assert not is_within_allowed_hours(start, duration)

    def test_accepts_time_objects_and_custom_window(self):
        assert is_within_allowed_hours(time(6, 0), 2, opening_hour=6, closing_hour=8)
        assert not is_within_allowed_hours(time(6, 0), 3, opening_hour=6, closing_hour=8)


class TestPricing:

    def test_weekend_detection(self):
        assert is_weekend("2024-01-06")  # Saturday
        assert is_weekend(date(2024, 1, 7))  # Sunday
        assert not is_weekend("2024-01-08")  # Monday
        assert not is_weekend("2024-01-05")  # Friday

    def test_saturday_price_has_weekend_factor(self):
        assert calculate_total_price(100, 2, "2024-01-06") == Decimal("240.00")

    def test_monday_price_is_base(self):
        assert calculate_total_price(100, 2, "2024-01-08") == Decimal("200.00")

    def test_weekday_three_hours_at_fifty(self):
        assert calculate_total_price(Decimal("50"), 3, "2024-01-09") == Decimal("150.00")

    def test_rounding_is_half_up_once(self):
        # 10.125 * 1 * 1.2 = 12.15 exactly; 0.005 cases round up
        assert calculate_total_price(Decimal("10.125"), 1, "2024-01-06") == Decimal("12.15")
        assert round2(Decimal("0.005")) == Decimal("0.01")
        assert round2(Decimal("2.675")) == Decimal("2.68")

    def test_custom_weekend_factor(self):
        assert calculate_total_price(100, 1, "2024-01-06", Decimal("1.5")) == Decimal("150.00")

    def test_convert_currency(self):
        assert convert_currency(Decimal("240.00"), Decimal("150.5")) == Decimal("1.59")
        assert convert_currency(Decimal("150.50"), Decimal("150.5")) == Decimal("1.00")

    def test_convert_currency_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            convert_currency(100, 0)


class TestInstallments:

    def test_three_equal_installments_on_same_day_of_month(self):
        drafts = build_installments(300, 3, "2024-01-15")

        assert len(drafts) == 3
        assert [d.due_date for d in drafts] == [date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15)]
        assert all(d.amount == Decimal("100.00") for d in drafts)

    def test_remainder_goes_to_last_installment(self):
        drafts = build_installments(Decimal("333.33"), 4, "2024-01-15")

        assert [d.amount for d in drafts] == [
            Decimal("83.33"), Decimal("83.33"), Decimal("83.33"), Decimal("83.34")
        ]
        assert sum(d.amount for d in drafts) == Decimal("333.33")

    def test_end_of_month_is_clamped(self):
        drafts = build_installments(400, 4, "2024-01-31")

        assert [d.due_date for d in drafts] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]

    def test_schedule_crosses_year(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_single_installment_is_total(self):
        drafts = build_installments(Decimal("99.99"), 1, "2024-03-10")
        assert len(drafts) == 1
        assert drafts[0].amount == Decimal("99.99")

    def test_tiny_total_never_goes_negative(self):
        drafts = build_installments(Decimal("0.05"), 4, "2024-01-01")
        assert all(d.amount >= 0 for d in drafts)
        assert sum(d.amount for d in drafts) == Decimal("0.05")

    def test_rejects_zero_count(self):
        with pytest.raises(ValueError):
            build_installments(100, 0, "2024-01-01")

    @pytest.mark.property
    @given(
        cents=st.integers(min_value=0, max_value=10_000_000),
        count=st.integers(min_value=1, max_value=36),
        start=st.dates(min_value=date(2020, 1, 1), max_value=date(2030, 12, 31)),
    )
    def test_schedule_always_sums_to_total(self, cents, count, start):
        """Property: the schedule sums exactly to the total and due dates increase"""
        total = Decimal(cents) / 100
        drafts = build_installments(total, count, start)

        assert len(drafts) == count
        assert sum(d.amount for d in drafts) == round2(total)
        assert all(d.amount >= 0 for d in drafts)
        assert drafts[0].due_date == start
        assert all(a.due_date < b.due_date for a, b in zip(drafts, drafts[1:]))


class TestIntervals:

    def test_minutes(self):
        assert to_minutes("09:30") == 570
        assert minute_interval("09:00", 3) == (540, 720)

    def test_touching_intervals_do_not_overlap(self):
        assert not intervals_overlap(600, 720, 720, 840)
        assert not intervals_overlap(720, 840, 600, 720)

    def test_partial_and_nested_overlap(self):
        assert intervals_overlap(540, 720, 600, 720)
        assert intervals_overlap(540, 720, 560, 580)
        assert intervals_overlap(560, 580, 540, 720)


class TestCsv:

    def test_bom_crlf_and_quoting(self):
        content = to_csv(["id", "name", "paid"], [
            {"id": 1, "name": "Sala, grande", "paid": True},
            {"id": 2, "name": 'Dice "hola"', "paid": False},
        ])

        assert content.startswith("\ufeff")
        lines = content[1:].split("\r\n")
        assert lines[0] == "id,name,paid"
        assert lines[1] == '1,"Sala, grande",true'
        assert lines[2] == '2,"Dice ""hola""",false'
        assert lines[3] == ""

    def test_none_is_empty_cell(self):
        assert to_csv(["a", "b"], [{"a": None, "b": date(2024, 1, 1)}], bom=False) == "a,b\r\n,2024-01-01\r\n"
