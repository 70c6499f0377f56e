"""Unit tests for repayment allocation"""

import pytest
from datetime import date, timedelta
from hypothesis import given, strategies as st
from chama_engine.domain.allocation import allocate_payment, split_current
from chama_engine.domain.exceptions import InvalidInputError, OverpaymentError
from chama_engine.domain.models import InstallmentBalance

FIRST_DUE = date(2026, 2, 15)


def balance(sequence, penalty=0, interest=20_000, principal=200_000):
    return InstallmentBalance(
        installment_id=f"inst-{sequence}",
        sequence=sequence,
        due_date=FIRST_DUE + timedelta(days=30 * (sequence - 1)),
        penalty_cents=penalty,
        interest_cents=interest,
        principal_cents=principal,
    )


def test_scenario_penalty_interest_then_principal():
    """2,500 against penalty 100 / interest 200 / principal 2,000 due -> 100 / 200 / 2,200"""
    installments = [balance(1, penalty=10_000), balance(2), balance(3)]

    result = allocate_payment(installments, 250_000, as_of=date(2026, 2, 20))

    assert result.penalty_cents == 10_000
    assert result.interest_cents == 20_000
    assert result.principal_cents == 220_000
    assert result.total_cents == 250_000
    assert [line.sequence for line in result.lines] == [1, 2]
    assert result.lines[1].interest_cents == 0  # Prepayment reduces principal first


def test_overdue_installments_settled_oldest_first():
    installments = [balance(1, penalty=10_000), balance(2, penalty=10_000), balance(3)]

    result = allocate_payment(installments, 240_000, as_of=date(2026, 3, 20))

    first, second = result.lines
    assert (first.penalty_cents, first.interest_cents, first.principal_cents) == (10_000, 20_000, 200_000)
    assert (second.penalty_cents, second.interest_cents, second.principal_cents) == (10_000, 0, 0)


def test_on_time_payment_settles_next_installment():
    """Before anything is due, the earliest installment is current"""
    installments = [balance(1), balance(2)]

    result = allocate_payment(installments, 220_000, as_of=date(2026, 1, 20))

    assert len(result.lines) == 1
    assert result.lines[0].sequence == 1
    assert result.lines[0].interest_cents == 20_000
    assert result.lines[0].principal_cents == 200_000


def test_settled_installments_are_skipped():
    installments = [balance(1, interest=0, principal=0), balance(2)]
    current, later = split_current(installments, as_of=date(2026, 2, 20))

    assert [inst.sequence for inst in current] == [2]
    assert later == []


def test_overpayment_rejected():
    with pytest.raises(OverpaymentError):
        allocate_payment([balance(1)], 220_001, as_of=FIRST_DUE)


def test_exact_payoff_accepted():
    result = allocate_payment([balance(1), balance(2)], 440_000, as_of=FIRST_DUE)
    assert result.total_cents == 440_000


@pytest.mark.parametrize("amount", [0, -5, True])
def test_non_positive_amount_rejected(amount):
    with pytest.raises(InvalidInputError):
        allocate_payment([balance(1)], amount, as_of=FIRST_DUE)


@given(
    penalties=st.lists(st.integers(min_value=0, max_value=50_000), min_size=1, max_size=6),
    fraction=st.floats(min_value=0.0, max_value=1.0),
)
def test_due_money_follows_penalty_interest_principal(penalties, fraction):
    """While installments are due, a bucket is only touched once earlier buckets are clear"""
    installments = [balance(i + 1, penalty=p) for i, p in enumerate(penalties)]
    outstanding = sum(inst.outstanding_cents for inst in installments)
    amount = max(1, int(outstanding * fraction))
    # Everything is due, so nothing is prepaid
    as_of = installments[-1].due_date

    result = allocate_payment(installments, amount, as_of)

    assert result.total_cents == amount
    by_sequence = {line.sequence: line for line in result.lines}
    for inst in installments:
        line = by_sequence.get(inst.sequence)
        if line is None:
            continue
        if line.interest_cents > 0:
            assert line.penalty_cents == inst.penalty_cents
        if line.principal_cents > 0:
            assert line.interest_cents == inst.interest_cents
    touched = sorted(by_sequence)
    # Oldest first: every installment before the last touched one is fully settled
    for inst in installments:
        if touched and inst.sequence < touched[-1]:
            assert by_sequence[inst.sequence].total_cents == inst.outstanding_cents


@given(
    penalties=st.lists(st.integers(min_value=0, max_value=50_000), min_size=1, max_size=6),
    due_count=st.integers(min_value=0, max_value=6),
    fraction=st.floats(min_value=0.0, max_value=1.0),
)
def test_every_cent_is_applied(penalties, due_count, fraction):
    """Any amount up to the outstanding balance is applied in full, prepayments included"""
    installments = [balance(i + 1, penalty=p) for i, p in enumerate(penalties)]
    outstanding = sum(inst.outstanding_cents for inst in installments)
    amount = max(1, int(outstanding * fraction))
    as_of = FIRST_DUE + timedelta(days=30 * min(due_count, len(installments)) - 1)

    result = allocate_payment(installments, amount, as_of)

    assert result.total_cents == amount
    for line in result.lines:
        inst = installments[line.sequence - 1]
        assert line.total_cents <= inst.outstanding_cents
