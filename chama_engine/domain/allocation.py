"""Repayment allocation across penalty, interest and principal buckets"""

from datetime import date
from typing import List, Sequence, Tuple

from chama_engine.domain.exceptions import InvalidInputError, OverpaymentError
from chama_engine.domain.models import AllocationResult, InstallmentAllocation, InstallmentBalance


def split_current(installments: Sequence[InstallmentBalance], as_of: date) -> Tuple[List[InstallmentBalance], List[InstallmentBalance]]:
    """
    Partition unsettled installments into (current, later), both oldest first.

    Current means due on or before as_of. When nothing is due yet, the earliest
    unsettled installment is current so a normal on-time payment settles it.
    """
    unsettled = sorted(
        (inst for inst in installments if inst.outstanding_cents > 0),
        key=lambda inst: (inst.due_date, inst.sequence),
    )
    current = [inst for inst in unsettled if inst.due_date <= as_of]
    if not current and unsettled:
        current = unsettled[:1]
    current_ids = {inst.installment_id for inst in current}
    later = [inst for inst in unsettled if inst.installment_id not in current_ids]
    return current, later


def _take(remaining: int, owed: int) -> int:
    return min(remaining, owed)


def allocate_payment(
    installments: Sequence[InstallmentBalance],
    amount_cents: int,
    as_of: date,
) -> AllocationResult:
    """
    Allocate one payment, oldest due date first.

    Current installments are settled one at a time, penalty -> interest -> principal.
    Whatever is left prepays later installments oldest first, penalty -> principal ->
    interest, so early money reduces principal before unearned interest.

    Raises:
        InvalidInputError: amount is not positive
        OverpaymentError: amount exceeds everything outstanding
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidInputError("Payment amount must be a positive number of cents")

    outstanding = sum(inst.outstanding_cents for inst in installments)
    if amount_cents > outstanding:
        raise OverpaymentError(
            f"Payment of {amount_cents} cents exceeds outstanding balance of {outstanding} cents"
        )

    current, later = split_current(installments, as_of)
    remaining = amount_cents
    lines: List[InstallmentAllocation] = []

    for inst in current:
        if remaining == 0:
            break
        penalty = _take(remaining, inst.penalty_cents)
        remaining -= penalty
        interest = _take(remaining, inst.interest_cents)
        remaining -= interest
        principal = _take(remaining, inst.principal_cents)
        remaining -= principal
        lines.append(InstallmentAllocation(inst.installment_id, inst.sequence, penalty, interest, principal))

    for inst in later:
        if remaining == 0:
            break
        penalty = _take(remaining, inst.penalty_cents)
        remaining -= penalty
        principal = _take(remaining, inst.principal_cents)
        remaining -= principal
        interest = _take(remaining, inst.interest_cents)
        remaining -= interest
        lines.append(InstallmentAllocation(inst.installment_id, inst.sequence, penalty, interest, principal))

    return AllocationResult(lines=[line for line in lines if line.total_cents > 0])
