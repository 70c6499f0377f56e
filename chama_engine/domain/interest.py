"""Interest calculation and amortization schedules for chama loans"""

from decimal import Decimal
from typing import List

from chama_engine.domain.exceptions import InvalidInputError
from chama_engine.domain.models import AmortizationSchedule, InterestType, ScheduleLine
from chama_engine.domain.money import percent_of, round_cents, to_decimal


def _validate(principal_cents: int, rate: Decimal, term_months: int) -> Decimal:
    if isinstance(principal_cents, bool) or not isinstance(principal_cents, int) or principal_cents <= 0:
        raise InvalidInputError("principal must be a positive number of cents")
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        raise InvalidInputError("term_months must be a positive integer")
    rate = to_decimal(rate)
    if rate < 0:
        raise InvalidInputError("interest rate must not be negative")
    return rate


def _monthly_share(total_cents: int, term_months: int) -> int:
    share = round_cents(Decimal(total_cents) / term_months)
    # Rounding up every month can overshoot a tiny total; the last month must stay non-negative
    if share * (term_months - 1) > total_cents:
        share = total_cents // term_months
    return share


def calculate_flat(principal_cents: int, rate: Decimal, term_months: int) -> AmortizationSchedule:
    """
    Flat interest: one charge of rate% on the original principal for the whole term.

    Each month carries principal/term and interest/term rounded to whole cents;
    the final month absorbs the remainder so both columns sum exactly.

    Example:
        10,000.00 at 10% over 5 months -> 5 x (2,000.00 + 200.00), total 11,000.00
    """
    rate = _validate(principal_cents, rate, term_months)
    total_interest = round_cents(percent_of(principal_cents, rate))

    monthly_principal = _monthly_share(principal_cents, term_months)
    monthly_interest = _monthly_share(total_interest, term_months)

    lines: List[ScheduleLine] = []
    for sequence in range(1, term_months + 1):
        if sequence == term_months:
            principal_part = principal_cents - monthly_principal * (term_months - 1)
            interest_part = total_interest - monthly_interest * (term_months - 1)
        else:
            principal_part = monthly_principal
            interest_part = monthly_interest
        lines.append(ScheduleLine(sequence, principal_part, interest_part))

    return AmortizationSchedule(
        interest_type=InterestType.FLAT,
        principal_cents=principal_cents,
        total_interest_cents=total_interest,
        lines=lines,
    )


def calculate_reducing(principal_cents: int, rate: Decimal, term_months: int) -> AmortizationSchedule:
    """
    Reducing balance: equal monthly payments, interest charged on the remaining principal.

    payment = P * r * (1+r)^n / ((1+r)^n - 1) with r = rate/100 per month,
    or P / n when the rate is zero. The last month takes whatever principal is left,
    so the balance always closes at exactly zero.
    """
    rate = _validate(principal_cents, rate, term_months)
    monthly_rate = rate / Decimal(100)

    if monthly_rate > 0:
        growth = (1 + monthly_rate) ** term_months
        payment = Decimal(principal_cents) * monthly_rate * growth / (growth - 1)
    else:
        payment = Decimal(principal_cents) / term_months
    payment_cents = round_cents(payment)

    remaining = principal_cents
    total_interest = 0
    lines: List[ScheduleLine] = []
    for sequence in range(1, term_months + 1):
        interest_part = round_cents(Decimal(remaining) * monthly_rate)
        if sequence == term_months:
            principal_part = remaining
        else:
            # Rounding can push the payment below the month's interest on tiny loans
            principal_part = min(max(payment_cents - interest_part, 0), remaining)
        remaining -= principal_part
        total_interest += interest_part
        lines.append(ScheduleLine(sequence, principal_part, interest_part))

    return AmortizationSchedule(
        interest_type=InterestType.REDUCING,
        principal_cents=principal_cents,
        total_interest_cents=total_interest,
        lines=lines,
    )


def calculate_schedule(
    principal_cents: int,
    rate: Decimal,
    term_months: int,
    interest_type: InterestType,
) -> AmortizationSchedule:
    """Dispatch on interest type"""
    if InterestType(interest_type) is InterestType.REDUCING:
        return calculate_reducing(principal_cents, rate, term_months)
    return calculate_flat(principal_cents, rate, term_months)


def calculate_penalty(overdue_principal_cents: int, penalty_rate: Decimal) -> int:
    """Penalty for one accrual period: penalty_rate% of the overdue principal, half-up"""
    if overdue_principal_cents <= 0:
        return 0
    rate = to_decimal(penalty_rate)
    if rate < 0:
        raise InvalidInputError("penalty rate must not be negative")
    return round_cents(percent_of(overdue_principal_cents, rate))


def monthly_payment_cents(schedule: AmortizationSchedule) -> int:
    """Typical (first-month) payment, handy for display"""
    if not schedule.lines:
        return 0
    return schedule.lines[0].total_cents
