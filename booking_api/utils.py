"""
Utility functions used across the application
Keep these pure functions without side effects

Time arithmetic works on plain calendar dates and 24h wall-clock times.
Dates carry no zone: "2024-01-06" is the same Saturday everywhere, which
is equivalent to evaluating every date in UTC.
"""
import calendar
import csv
import io
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Sequence, Union

from .models import InstallmentDraft

CENT = Decimal("0.01")
WEEKEND_FACTOR = Decimal("1.2")
WEEKDAY_FACTOR = Decimal("1.0")
OPENING_HOUR = 8
CLOSING_HOUR = 22

DateLike = Union[date, str]
TimeLike = Union[time, str]
Number = Union[Decimal, int, float, str]

# ============================================================
# Timestamps & IDs
# ============================================================

def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def generate_request_id() -> str:
    """Generate unique request ID for tracing"""
    return f"req_{uuid.uuid4().hex[:12]}"

# ============================================================
# Parsing
# ============================================================

def parse_date(value: DateLike) -> date:
    """Accept a date or an ISO 'YYYY-MM-DD' string (a datetime keeps only its date)"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def parse_start_time(value: TimeLike) -> time:
    """Accept a time or an 'HH:MM' / 'HH:MM:SS' string"""
    if isinstance(value, time):
        return value
    parts = value.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid start time: {value!r} (expected HH:MM)")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) > 2 else 0
    return time(hour, minute, second)


def format_time(value: time) -> str:
    """HH:MM"""
    return value.strftime("%H:%M")


def to_decimal(value: Number) -> Decimal:
    """Convert without going through binary float artefacts"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def round2(value: Number) -> Decimal:
    """Half-up rounding to 2 decimal places"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)

# ============================================================
# Opening hours & calendar
# ============================================================

def is_within_allowed_hours(
    start_time: TimeLike,
    duration_hours: int,
    opening_hour: int = OPENING_HOUR,
    closing_hour: int = CLOSING_HOUR
) -> bool:
    """
    True iff the booking starts at or after opening and ends by closing.

    Only the start hour is considered; minutes are parsed but not checked,
    so 21:30 + 1h is accepted (21 + 1 <= 22).
    """
    start_hour = parse_start_time(start_time).hour
    return start_hour >= opening_hour and start_hour + duration_hours <= closing_hour


def is_weekend(day: DateLike) -> bool:
    """Saturday or Sunday"""
    return parse_date(day).weekday() >= 5


def add_months(start: date, months: int) -> date:
    """
    Advance by calendar months keeping the day-of-month,
    clamped to the length of the target month (Jan 31 + 1 -> Feb 29/28).
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))

# ============================================================
# Pricing
# ============================================================

def pricing_factor(day: DateLike, weekend_factor: Decimal = WEEKEND_FACTOR) -> Decimal:
    """Multiplier applied to the hourly base for the given day"""
    return weekend_factor if is_weekend(day) else WEEKDAY_FACTOR


def calculate_total_price(
    base_per_hour: Number,
    duration_hours: int,
    day: DateLike,
    weekend_factor: Decimal = WEEKEND_FACTOR
) -> Decimal:
    """
    Total in the primary currency: base * hours * factor, rounded once.

    >>> calculate_total_price(100, 2, "2024-01-06")  # Saturday
    Decimal('240.00')
    >>> calculate_total_price(100, 2, "2024-01-08")  # Monday
    Decimal('200.00')
    """
    factor = pricing_factor(day, weekend_factor)
    return round2(to_decimal(base_per_hour) * duration_hours * factor)


def convert_currency(amount: Number, rate: Number) -> Decimal:
    """Primary -> secondary currency (rate is primary units per 1 secondary unit)"""
    rate = to_decimal(rate)
    if rate <= 0:
        raise ValueError(f"Exchange rate must be positive, got {rate}")
    return round2(to_decimal(amount) / rate)


def build_installments(total: Number, count: int, start_date: DateLike) -> List[InstallmentDraft]:
    """
    Split total into `count` monthly installments starting on start_date.

    Every installment is round2(total / count) except the last one, which
    absorbs the rounding remainder so the schedule always sums to total.

    >>> [str(i.amount) for i in build_installments("333.33", 4, "2024-01-15")]
    ['83.33', '83.33', '83.33', '83.34']
    """
    if count < 1:
        raise ValueError(f"Installment count must be >= 1, got {count}")

    total = round2(total)
    start = parse_date(start_date)
    per_installment = round2(total / count)
    if per_installment * (count - 1) > total:
        # tiny totals: rounding up would leave a negative last installment
        per_installment = (total / count).quantize(CENT, rounding=ROUND_DOWN)
    remainder_amount = total - per_installment * (count - 1)

    drafts = []
    for i in range(count):
        amount = per_installment if i < count - 1 else remainder_amount
        drafts.append(InstallmentDraft(due_date=add_months(start, i), amount=amount))
    return drafts

# ============================================================
# Interval arithmetic
# ============================================================

def to_minutes(start_time: TimeLike) -> int:
    """Minutes since midnight"""
    t = parse_start_time(start_time)
    return t.hour * 60 + t.minute


def minute_interval(start_time: TimeLike, duration_hours: int) -> tuple:
    """Half-open [start, end) in minutes since midnight"""
    start = to_minutes(start_time)
    return start, start + duration_hours * 60


def intervals_overlap(start: int, end: int, other_start: int, other_end: int) -> bool:
    """Strict half-open overlap: touching intervals do not overlap"""
    return start < other_end and end > other_start

# ============================================================
# Export
# ============================================================

def _csv_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def to_csv(headers: Sequence[str], rows: Iterable[Dict[str, Any]], bom: bool = True) -> str:
    """
    Spreadsheet-friendly CSV: UTF-8 BOM, CRLF line endings, quoting only
    where a cell contains a comma, quote or newline.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_csv_cell(row.get(h)) for h in headers])
    body = buffer.getvalue()
    return "\ufeff" + body if bom else body
