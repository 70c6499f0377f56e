"""Loan lifecycle transition table"""

from typing import Dict, FrozenSet

from chama_engine.domain.exceptions import InvalidTransitionError
from chama_engine.domain.models import LoanStatus

TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING_GUARANTOR: frozenset({LoanStatus.PENDING_APPROVAL, LoanStatus.CANCELLED}),
    LoanStatus.PENDING_APPROVAL: frozenset({LoanStatus.ACTIVE, LoanStatus.CANCELLED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
    LoanStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return LoanStatus(target) in TRANSITIONS[LoanStatus(current)]


def ensure_transition(current: LoanStatus, target: LoanStatus) -> LoanStatus:
    """Return the target status, or raise if the edge is not in the table"""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Loan cannot move from {LoanStatus(current).value} to {LoanStatus(target).value}"
        )
    return LoanStatus(target)


def ensure_status(current: LoanStatus, expected: LoanStatus, action: str) -> None:
    """Guard for operations that act within a status rather than leave it"""
    if LoanStatus(current) is not LoanStatus(expected):
        raise InvalidTransitionError(
            f"Cannot {action} a loan in status {LoanStatus(current).value}; "
            f"requires {LoanStatus(expected).value}"
        )
