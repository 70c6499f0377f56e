"""Fixed-precision money kernel

All monetary values are integers of minor units (cents). Decimal is only used for
intermediate products with rates; results are rounded back to whole cents before
they are stored or compared.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from chama_engine.domain.exceptions import InvalidInputError

CENTS_PER_UNIT = 100

MajorAmount = Union[int, str, Decimal]


def to_decimal(value: MajorAmount) -> Decimal:
    """Convert a rate or major amount to Decimal, refusing binary floats"""
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidInputError(f"Refusing non-decimal numeric value {value!r}")
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidInputError(f"Invalid decimal value {value!r}") from e
    if not result.is_finite():
        raise InvalidInputError(f"Invalid decimal value {value!r}")
    return result


def round_cents(value: Decimal) -> int:
    """Round a Decimal number of cents half-up to an int"""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, rate_percent: Decimal) -> Decimal:
    """Exact (unrounded) rate_percent% of amount_cents"""
    return Decimal(amount_cents) * rate_percent / Decimal(100)


def require_cents(value: int, field: str, allow_zero: bool = False) -> int:
    """Validate an integer minor-unit amount"""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{field} must be an integer number of cents")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidInputError(f"{field} must be positive")
    return value


@dataclass(frozen=True)
class Money:
    """Amount in minor units tagged with an ISO currency code"""

    amount_cents: int
    currency: str

    def __post_init__(self) -> None:
        if isinstance(self.amount_cents, bool) or not isinstance(self.amount_cents, int):
            raise InvalidInputError("Money amount must be an integer number of cents")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise InvalidInputError(f"Invalid currency code {self.currency!r}")
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def of(cls, major: MajorAmount, currency: str) -> "Money":
        """
        Build from a major-unit amount ("1500.50" -> 150050 cents).

        More than two decimal places is rejected rather than rounded.
        """
        value = to_decimal(major) * CENTS_PER_UNIT
        if value != value.to_integral_value():
            raise InvalidInputError(f"Amount {major!r} has sub-cent precision")
        return cls(int(value), currency)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    def _check_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise InvalidInputError(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount_cents + other.amount_cents, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount_cents - other.amount_cents, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_cents < other.amount_cents

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount_cents <= other.amount_cents

    def to_decimal(self) -> Decimal:
        """Major-unit value, e.g. 150050 cents -> Decimal('1500.50')"""
        return (Decimal(self.amount_cents) / CENTS_PER_UNIT).quantize(Decimal("0.01"))

    def __str__(self) -> str:
        return f"{self.currency} {self.to_decimal()}"
