"""Guarantor eligibility and coverage rules"""

from decimal import Decimal
from typing import Iterable, List, Tuple

from chama_engine.domain.exceptions import GuarantorIneligibleError, InvalidInputError
from chama_engine.domain.models import GuarantorNomination, GuarantorPolicy, GuarantorStatus
from chama_engine.domain.money import round_cents


def approved_coverage(guarantees: Iterable[Tuple[GuarantorStatus, int]]) -> int:
    """Sum of guaranteed amounts whose guarantor has accepted"""
    return sum(amount for status, amount in guarantees if GuarantorStatus(status) is GuarantorStatus.APPROVED)


def coverage_met(coverage_cents: int, total_repayable_cents: int) -> bool:
    return coverage_cents >= total_repayable_cents


def available_capacity(savings_cents: int, committed_cents: int, policy: GuarantorPolicy) -> int:
    """
    How much more a member may guarantee.

    Capacity is a multiple of savings minus guarantees already approved on live loans.
    """
    capacity = round_cents(Decimal(savings_cents) * policy.capacity_multiplier)
    return max(capacity - committed_cents, 0)


def check_nomination(
    nomination: GuarantorNomination,
    borrower_id: str,
    existing_member_ids: Iterable[str],
    committed_cents: int,
    has_defaulted: bool,
    policy: GuarantorPolicy,
) -> None:
    """
    Validate one guarantor nomination against chama rules.

    Raises:
        InvalidInputError: amount or savings malformed
        GuarantorIneligibleError: any eligibility rule fails
    """
    if nomination.amount_cents <= 0:
        raise InvalidInputError("Guaranteed amount must be positive")
    if nomination.savings_cents < 0:
        raise InvalidInputError("Guarantor savings must not be negative")

    if nomination.member_id == borrower_id:
        raise GuarantorIneligibleError("Cannot guarantee your own loan")
    if nomination.member_id in set(existing_member_ids):
        raise GuarantorIneligibleError(f"Member {nomination.member_id} already guarantees this loan")
    if has_defaulted:
        raise GuarantorIneligibleError(f"Member {nomination.member_id} has defaulted loans")

    min_savings = round_cents(Decimal(nomination.amount_cents) * policy.min_savings_ratio)
    if nomination.savings_cents < min_savings:
        raise GuarantorIneligibleError(
            f"Member {nomination.member_id} needs savings of at least {min_savings} cents "
            f"to guarantee {nomination.amount_cents} cents"
        )

    capacity = available_capacity(nomination.savings_cents, committed_cents, policy)
    if nomination.amount_cents > capacity:
        raise GuarantorIneligibleError(
            f"Member {nomination.member_id} has insufficient guarantee capacity: "
            f"available {capacity}, requested {nomination.amount_cents}"
        )


def check_unique_members(nominations: List[GuarantorNomination]) -> None:
    """A member may appear only once in a single application"""
    seen = set()
    for nomination in nominations:
        if nomination.member_id in seen:
            raise GuarantorIneligibleError(f"Member {nomination.member_id} nominated twice")
        seen.add(nomination.member_id)
