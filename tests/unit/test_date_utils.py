"""Unit tests for date utilities"""

import pytest
from datetime import date
from chama_engine.domain.exceptions import InvalidInputError
from chama_engine.utils.date_utils import accrual_period, add_months, validate_period


def test_add_months_keeps_day():
    assert add_months(date(2026, 1, 15), 1) == date(2026, 2, 15)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2028, 1, 31), 1) == date(2028, 2, 29)


def test_accrual_period():
    assert accrual_period(date(2026, 3, 9)) == "2026-03"


@pytest.mark.parametrize("period", ["2026-13", "2026-3", "26-03", "", "2026/03"])
def test_validate_period_rejects_malformed(period):
    with pytest.raises(InvalidInputError):
        validate_period(period)
