"""Unit tests for the money kernel"""

import pytest
from decimal import Decimal
from chama_engine.domain.exceptions import InvalidInputError
from chama_engine.domain.money import Money, percent_of, require_cents, round_cents, to_decimal


def test_money_of_converts_major_units_to_cents():
    assert Money.of("1500.50", "kes").amount_cents == 150050
    assert Money.of("1500.50", "kes").currency == "KES"
    assert Money.of(10000, "KES").amount_cents == 1_000_000


def test_money_of_rejects_sub_cent_precision():
    with pytest.raises(InvalidInputError):
        Money.of("10.005", "KES")


def test_money_refuses_floats():
    """Binary floats never enter money arithmetic"""
    with pytest.raises(InvalidInputError):
        Money.of(10.5, "KES")
    with pytest.raises(InvalidInputError):
        Money(1.0, "KES")


def test_money_rejects_bad_currency():
    with pytest.raises(InvalidInputError):
        Money(100, "KSHS")


def test_money_arithmetic_requires_same_currency():
    total = Money(150, "KES") + Money(50, "KES")
    assert total == Money(200, "KES")
    assert Money(50, "KES") < Money(51, "KES")

    with pytest.raises(InvalidInputError):
        Money(100, "KES") + Money(100, "UGX")


def test_money_str_shows_major_units():
    assert str(Money(150050, "KES")) == "KES 1500.50"


def test_round_cents_is_half_up():
    assert round_cents(Decimal("2.5")) == 3
    assert round_cents(Decimal("2.4999")) == 2
    assert round_cents(Decimal("3.5")) == 4


def test_percent_of_is_exact():
    assert percent_of(1_000_000, Decimal("10")) == Decimal("100000")
    assert percent_of(333, Decimal("5")) == Decimal("16.65")


def test_to_decimal_rejects_garbage():
    with pytest.raises(InvalidInputError):
        to_decimal("ten")
    with pytest.raises(InvalidInputError):
        to_decimal("NaN")
    assert to_decimal("12.5") == Decimal("12.5")


def test_require_cents():
    assert require_cents(5, "amount") == 5
    assert require_cents(0, "savings", allow_zero=True) == 0
    with pytest.raises(InvalidInputError):
        require_cents(0, "amount")
    with pytest.raises(InvalidInputError):
        require_cents(-1, "amount", allow_zero=True)
    with pytest.raises(InvalidInputError):
        require_cents(True, "amount")
