"""Period calendar - maps a billing frequency and a calendar month to a period key and due date"""

from datetime import date
from typing import Optional
from expense_engine.domain.models import Frequency, Period
from expense_engine.domain.exceptions import ConfigurationError
from expense_engine.utils.date_utils import clamped_date

QUARTER_START_MONTHS = (1, 4, 7, 10)


def _coerce_frequency(frequency) -> Frequency:
    try:
        return Frequency(frequency)
    except ValueError as e:
        raise ConfigurationError(f"Unknown frequency: {frequency!r}") from e


def resolve_period(
    frequency: Frequency | str,
    year: int,
    month: int,
    due_day: Optional[int] = None,
    due_month: Optional[int] = None,
) -> Optional[Period]:
    """
    Resolve the effective period for a definition in a given month.

    Rules:
    - MONTHLY: every month, key "YYYY-MM"
    - QUARTERLY: only quarter start months (1, 4, 7, 10), key "YYYY-Qn"
    - ANNUAL: only January, or due_month when configured, key "YYYY"

    The due date is (year, month, due_day) clamped to the last day of the month.

    Returns:
        Period, or None when the frequency does not produce a period this month

    Raises:
        ConfigurationError: Unknown frequency or month out of range
    """
    freq = _coerce_frequency(frequency)
    if not 1 <= month <= 12:
        raise ConfigurationError(f"Month out of range: {month}")

    if freq == Frequency.MONTHLY:
        key = f"{year:04d}-{month:02d}"
    elif freq == Frequency.QUARTERLY:
        if month not in QUARTER_START_MONTHS:
            return None
        key = f"{year:04d}-Q{(month - 1) // 3 + 1}"
    else:
        if month != (due_month or 1):
            return None
        key = f"{year:04d}"

    return Period(key=key, due_date=clamped_date(year, month, due_day or 1))


def period_key_for_date(frequency: Frequency | str, day: date) -> str:
    """Period key that contains the given date (used when a bill arrives from a transaction or email)"""
    freq = _coerce_frequency(frequency)
    if freq == Frequency.MONTHLY:
        return f"{day.year:04d}-{day.month:02d}"
    if freq == Frequency.QUARTERLY:
        return f"{day.year:04d}-Q{(day.month - 1) // 3 + 1}"
    return f"{day.year:04d}"
