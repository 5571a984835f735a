"""Date manipulation utilities"""

import calendar
from datetime import date
from typing import List, Tuple


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamped_date(year: int, month: int, day: int) -> date:
    """Build a date, clamping the day into the valid range for that month"""
    day = max(1, min(day, last_day_of_month(year, month)))
    return date(year, month, day)


def shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    """Move (year, month) by delta months"""
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_window(today: date, months_back: int, months_forward: int) -> List[Tuple[int, int]]:
    """List (year, month) pairs from months_back before today to months_forward after (inclusive)"""
    return [
        shift_month(today.year, today.month, offset)
        for offset in range(-months_back, months_forward + 1)
    ]


def parse_year_month(value: str) -> Tuple[int, int]:
    """
    Parse a "YYYY-MM" string.

    Raises:
        ValueError: If the string is not a valid year-month
    """
    parts = value.strip().split("-")
    if len(parts) != 2 or not parts[0].isdigit() or not parts[1].isdigit():
        raise ValueError(f"Invalid period '{value}', expected YYYY-MM")
    year, month = int(parts[0]), int(parts[1])
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month in period '{value}'")
    return year, month
