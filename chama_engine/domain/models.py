"""Domain models - pure Python dataclasses and enums representing business entities"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from chama_engine.domain.exceptions import InvalidInputError
from chama_engine.domain.money import Money, to_decimal


class InterestType(str, Enum):
    FLAT = "FLAT"
    REDUCING = "REDUCING"


class LoanStatus(str, Enum):
    PENDING_GUARANTOR = "PENDING_GUARANTOR"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"
    CANCELLED = "CANCELLED"


# Loans whose approved guarantees still count against a guarantor's capacity
LIVE_LOAN_STATUSES = (LoanStatus.PENDING_GUARANTOR, LoanStatus.PENDING_APPROVAL, LoanStatus.ACTIVE)


class InstallmentStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class GuarantorStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class GuarantorDecision(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class SwapStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class PayoutStatus(str, Enum):
    COMPLETED = "COMPLETED"


class Frequency(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class RosterMethod(str, Enum):
    RANDOM = "RANDOM"
    MANUAL = "MANUAL"
    TRUST = "TRUST"


class EventType(str, Enum):
    """Events handed to the notifier after a state change commits"""

    GUARANTOR_REQUESTED = "GUARANTOR_REQUESTED"
    LOAN_PENDING_APPROVAL = "LOAN_PENDING_APPROVAL"
    LOAN_APPROVED = "LOAN_APPROVED"
    LOAN_CANCELLED = "LOAN_CANCELLED"
    LOAN_COMPLETED = "LOAN_COMPLETED"
    LOAN_DEFAULTED = "LOAN_DEFAULTED"
    REPAYMENT_APPLIED = "REPAYMENT_APPLIED"
    PENALTY_ACCRUED = "PENALTY_ACCRUED"
    PAYOUT_PROCESSED = "PAYOUT_PROCESSED"
    SWAP_REQUESTED = "SWAP_REQUESTED"
    SWAP_RESOLVED = "SWAP_RESOLVED"


@dataclass(frozen=True)
class GuarantorPolicy:
    """Guarantor eligibility ratios, snapshotted onto each loan"""

    min_savings_ratio: Decimal
    capacity_multiplier: Decimal


@dataclass(frozen=True)
class LoanConfig:
    """
    Per-chama lending policy, owned and edited by chama officials.

    Passed explicitly into every loan computation; rates are percentages.
    """

    interest_type: InterestType = InterestType.FLAT
    interest_rate: Decimal = Decimal("10")
    loan_multiplier: Decimal = Decimal("3")
    max_repayment_months: int = 6
    max_concurrent_loans_per_member: int = 1
    penalty_rate_per_period: Decimal = Decimal("5")
    default_grace_days: int = 30
    guarantor_min_savings_ratio: Decimal = Decimal("0.5")
    guarantor_capacity_multiplier: Decimal = Decimal("3")

    def __post_init__(self) -> None:
        object.__setattr__(self, "interest_type", InterestType(self.interest_type))
        for name in (
            "interest_rate",
            "loan_multiplier",
            "penalty_rate_per_period",
            "guarantor_min_savings_ratio",
            "guarantor_capacity_multiplier",
        ):
            value = to_decimal(getattr(self, name))
            if value < 0:
                raise InvalidInputError(f"{name} must not be negative")
            object.__setattr__(self, name, value)
        if self.max_repayment_months < 1:
            raise InvalidInputError("max_repayment_months must be at least 1")
        if self.max_concurrent_loans_per_member < 1:
            raise InvalidInputError("max_concurrent_loans_per_member must be at least 1")
        if self.default_grace_days < 0:
            raise InvalidInputError("default_grace_days must not be negative")

    @property
    def guarantor_policy(self) -> GuarantorPolicy:
        return GuarantorPolicy(self.guarantor_min_savings_ratio, self.guarantor_capacity_multiplier)


@dataclass(frozen=True)
class ScheduleLine:
    """One month of an amortization schedule"""

    sequence: int
    principal_cents: int
    interest_cents: int

    @property
    def total_cents(self) -> int:
        return self.principal_cents + self.interest_cents


@dataclass(frozen=True)
class AmortizationSchedule:
    """Output of the interest calculator"""

    interest_type: InterestType
    principal_cents: int
    total_interest_cents: int
    lines: List[ScheduleLine]

    @property
    def total_repayable_cents(self) -> int:
        return self.principal_cents + self.total_interest_cents


@dataclass(frozen=True)
class GuarantorNomination:
    """Guarantee requested from a member; savings are verified by the caller"""

    member_id: str
    amount_cents: int
    savings_cents: int


@dataclass(frozen=True)
class LoanApplication:
    """Input to apply_loan"""

    chama_id: str
    borrower_id: str
    amount: Money
    term_months: int
    borrower_savings_cents: int
    purpose: str = ""
    guarantors: List[GuarantorNomination] = field(default_factory=list)


@dataclass
class InstallmentBalance:
    """Unsettled amounts of one installment, as seen by the allocator"""

    installment_id: str
    sequence: int
    due_date: date
    penalty_cents: int
    interest_cents: int
    principal_cents: int

    @property
    def outstanding_cents(self) -> int:
        return self.penalty_cents + self.interest_cents + self.principal_cents


@dataclass(frozen=True)
class InstallmentAllocation:
    """What one payment applied to one installment"""

    installment_id: str
    sequence: int
    penalty_cents: int = 0
    interest_cents: int = 0
    principal_cents: int = 0

    @property
    def total_cents(self) -> int:
        return self.penalty_cents + self.interest_cents + self.principal_cents


@dataclass(frozen=True)
class AllocationResult:
    """Full breakdown of one payment across installments"""

    lines: List[InstallmentAllocation]

    @property
    def penalty_cents(self) -> int:
        return sum(line.penalty_cents for line in self.lines)

    @property
    def interest_cents(self) -> int:
        return sum(line.interest_cents for line in self.lines)

    @property
    def principal_cents(self) -> int:
        return sum(line.principal_cents for line in self.lines)

    @property
    def total_cents(self) -> int:
        return self.penalty_cents + self.interest_cents + self.principal_cents


@dataclass(frozen=True)
class SlotState:
    """Rotation slot as seen by the scheduler"""

    slot_id: str
    member_id: str
    position: int
    paid: bool


@dataclass(frozen=True)
class PenaltyRunSummary:
    """Outcome of one accrual run"""

    period: str
    loans_scanned: int
    accruals_created: int
    penalty_cents: int
    failed_loan_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScheduledPayout:
    """One row of a cycle's payout calendar"""

    position: int
    member_id: str
    scheduled_date: date
    amount_cents: int
    paid: bool
    payout_date: Optional[date] = None


@dataclass(frozen=True)
class DefaultRunSummary:
    """Outcome of one default-detection run"""

    as_of: date
    loans_scanned: int
    defaulted_loan_ids: List[str] = field(default_factory=list)
    failed_loan_ids: List[str] = field(default_factory=list)
