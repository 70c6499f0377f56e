"""Unit tests for the loan transition table"""

import pytest
from chama_engine.domain.exceptions import InvalidTransitionError
from chama_engine.domain.models import LoanStatus
from chama_engine.domain.state_machine import (
    TERMINAL_STATUSES,
    can_transition,
    ensure_status,
    ensure_transition,
)


@pytest.mark.parametrize(
    "current,target",
    [
        (LoanStatus.PENDING_GUARANTOR, LoanStatus.PENDING_APPROVAL),
        (LoanStatus.PENDING_GUARANTOR, LoanStatus.CANCELLED),
        (LoanStatus.PENDING_APPROVAL, LoanStatus.ACTIVE),
        (LoanStatus.PENDING_APPROVAL, LoanStatus.CANCELLED),
        (LoanStatus.ACTIVE, LoanStatus.COMPLETED),
        (LoanStatus.ACTIVE, LoanStatus.DEFAULTED),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)
    assert ensure_transition(current, target) is target


@pytest.mark.parametrize(
    "current,target",
    [
        (LoanStatus.PENDING_GUARANTOR, LoanStatus.ACTIVE),
        (LoanStatus.ACTIVE, LoanStatus.CANCELLED),
        (LoanStatus.COMPLETED, LoanStatus.ACTIVE),
        (LoanStatus.CANCELLED, LoanStatus.PENDING_APPROVAL),
    ],
)
def test_forbidden_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        ensure_transition(current, target)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.CANCELLED}


def test_ensure_status_accepts_strings():
    ensure_status("ACTIVE", LoanStatus.ACTIVE, "repay")
    with pytest.raises(InvalidTransitionError, match="repay"):
        ensure_status("PENDING_APPROVAL", LoanStatus.ACTIVE, "repay")
