"""Date manipulation utilities"""

import calendar
import re
from datetime import date

from chama_engine.domain.exceptions import InvalidInputError

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def add_months(from_date: date, months: int) -> date:
    """Same day-of-month `months` later, clamped to the month's last day (Jan 31 + 1 -> Feb 28/29)"""
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    day = min(from_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def accrual_period(on: date) -> str:
    """Monthly accrual period key, e.g. 2026-10"""
    return f"{on.year:04d}-{on.month:02d}"


def validate_period(period: str) -> str:
    if not isinstance(period, str) or not _PERIOD_RE.match(period):
        raise InvalidInputError(f"Accrual period must look like YYYY-MM, got {period!r}")
    return period
