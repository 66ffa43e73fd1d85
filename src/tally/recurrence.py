"""Next-due date computation for recurring invoice rules.

Everything here is pure: results depend only on the arguments, never on
the current time.

Day-of-week anchors use 0 = Sunday through 6 = Saturday.
"""

import calendar
from datetime import date, datetime, timedelta

FREQUENCIES = ("weekly", "monthly", "quarterly", "yearly")

_MONTHS_PER_PERIOD = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


def normalize_frequency(frequency: str) -> str:
    """Lower-case and validate a frequency name. Raises ValueError if unknown."""
    value = (frequency or "").strip().lower()
    if value not in FREQUENCIES:
        raise ValueError(
            f"Unknown frequency {frequency!r} (expected one of: {', '.join(FREQUENCIES)})"
        )
    return value


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(value, months: int):
    """Shift a date or datetime by whole months, clamping the day to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def sunday_weekday(value: date) -> int:
    """Weekday with 0 = Sunday, matching the rule anchor convention."""
    return (value.weekday() + 1) % 7


def next_due_date(
    from_date: datetime,
    frequency: str,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
) -> datetime:
    """Compute the next occurrence after from_date.

    Weekly rules move forward 7 days and then forward (never back) to
    day_of_week. Month-based rules move forward 1, 3 or 12 months and then
    land on day_of_month, clamped to the length of the target month.
    """
    frequency = normalize_frequency(frequency)

    if frequency == "weekly":
        next_date = from_date + timedelta(days=7)
        if day_of_week is not None:
            if not 0 <= day_of_week <= 6:
                raise ValueError(f"day_of_week must be 0-6, got {day_of_week}")
            shift = (day_of_week - sunday_weekday(next_date) + 7) % 7
            next_date = next_date + timedelta(days=shift)
        return next_date

    next_date = add_months(from_date, _MONTHS_PER_PERIOD[frequency])
    if day_of_month is not None:
        if not 1 <= day_of_month <= 31:
            raise ValueError(f"day_of_month must be 1-31, got {day_of_month}")
        last_day = days_in_month(next_date.year, next_date.month)
        next_date = next_date.replace(day=min(day_of_month, last_day))
    return next_date


def add_period(value, frequency: str):
    """Add exactly one billing period to a date or datetime, clamping month ends."""
    frequency = normalize_frequency(frequency)
    if frequency == "weekly":
        return value + timedelta(days=7)
    return add_months(value, _MONTHS_PER_PERIOD[frequency])


def billing_period(as_of, frequency: str) -> tuple:
    """The billing period that ends at as_of, as (start, end)."""
    frequency = normalize_frequency(frequency)
    if frequency == "weekly":
        return as_of - timedelta(days=7), as_of
    return add_months(as_of, -_MONTHS_PER_PERIOD[frequency]), as_of


def period_label(as_of: date, frequency: str) -> str:
    """Human label for the period containing as_of, used in invoice notes."""
    frequency = normalize_frequency(frequency)
    if frequency == "weekly":
        day = as_of.date() if isinstance(as_of, datetime) else as_of
        return f"Week of {day.isoformat()}"
    if frequency == "monthly":
        return f"{calendar.month_name[as_of.month]} {as_of.year}"
    if frequency == "quarterly":
        return f"Q{(as_of.month - 1) // 3 + 1} {as_of.year}"
    return str(as_of.year)
