"""Data access layer for loan and rotation aggregates"""

import uuid
from datetime import date
from typing import List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from chama_engine.domain.exceptions import InvalidInputError, NotFoundError
from chama_engine.domain.models import (
    GuarantorStatus,
    InstallmentStatus,
    LIVE_LOAN_STATUSES,
    LoanStatus,
    SwapStatus,
)
from chama_engine.infrastructure.database.models import (
    Guarantor,
    Installment,
    Loan,
    Payout,
    PenaltyAccrual,
    Repayment,
    RotationCycle,
    RotationSlot,
    SwapRequest,
)

Identifier = Union[str, uuid.UUID]


def as_uuid(value: Identifier, kind: str = "id") -> uuid.UUID:
    """Parse an identifier coming from the caller"""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise InvalidInputError(f"Invalid {kind} format: {value!r}") from e


class LoanRepository:
    """Repository for loans and their installments"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, loan: Loan) -> Loan:
        self.db.add(loan)
        self.db.flush()  # Assign id and version without committing
        return loan

    def get(self, loan_id: Identifier) -> Loan:
        loan = self.db.get(Loan, as_uuid(loan_id, "loan id"))
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_for_update(self, loan_id: Identifier) -> Loan:
        """Load and row-lock the loan for the rest of the transaction"""
        loan = (
            self.db.query(Loan)
            .filter(Loan.id == as_uuid(loan_id, "loan id"))
            .with_for_update()
            .populate_existing()
            .first()
        )
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_with_details(self, loan_id: Identifier) -> Loan:
        """Loan with installments, guarantors and repayments eagerly loaded"""
        loan = (
            self.db.query(Loan)
            .options(
                selectinload(Loan.installments),
                selectinload(Loan.guarantors),
                selectinload(Loan.repayments),
            )
            .filter(Loan.id == as_uuid(loan_id, "loan id"))
            .first()
        )
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def count_by_status(self, chama_id: str, borrower_id: str, status: LoanStatus) -> int:
        return (
            self.db.query(func.count(Loan.id))
            .filter(
                Loan.chama_id == chama_id,
                Loan.borrower_id == borrower_id,
                Loan.status == LoanStatus(status).value,
            )
            .scalar()
        )

    def has_defaulted(self, chama_id: str, member_id: str) -> bool:
        return self.count_by_status(chama_id, member_id, LoanStatus.DEFAULTED) > 0

    def list_active_ids_with_unsettled_before(self, cutoff: date) -> List[uuid.UUID]:
        """Active loans holding an unsettled installment due before cutoff"""
        rows = (
            self.db.query(Loan.id)
            .join(Installment, Installment.loan_id == Loan.id)
            .filter(
                Loan.status == LoanStatus.ACTIVE.value,
                Installment.status != InstallmentStatus.PAID.value,
                Installment.due_date < cutoff,
            )
            .distinct()
            .all()
        )
        return sorted((row[0] for row in rows), key=str)


class GuarantorRepository:
    """Repository for guarantee commitments"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, guarantor: Guarantor) -> Guarantor:
        self.db.add(guarantor)
        self.db.flush()
        return guarantor

    def get(self, guarantor_id: Identifier) -> Guarantor:
        guarantor = self.db.get(Guarantor, as_uuid(guarantor_id, "guarantor id"))
        if guarantor is None:
            raise NotFoundError(f"Guarantor {guarantor_id} not found")
        return guarantor

    def list_for_loan(self, loan_id: Identifier) -> List[Guarantor]:
        return (
            self.db.query(Guarantor)
            .filter(Guarantor.loan_id == as_uuid(loan_id, "loan id"))
            .order_by(Guarantor.created_at, Guarantor.guarantor_member_id)
            .populate_existing()
            .all()
        )

    def committed_amount(self, chama_id: str, member_id: str) -> int:
        """Approved guarantees by this member on the chama's live loans"""
        total = (
            self.db.query(func.coalesce(func.sum(Guarantor.guaranteed_cents), 0))
            .join(Loan, Guarantor.loan_id == Loan.id)
            .filter(
                Guarantor.guarantor_member_id == member_id,
                Guarantor.status == GuarantorStatus.APPROVED.value,
                Loan.chama_id == chama_id,
                Loan.status.in_([status.value for status in LIVE_LOAN_STATUSES]),
            )
            .scalar()
        )
        return int(total or 0)


class RepaymentRepository:
    """Repository for the append-only repayment trail"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, repayment: Repayment) -> Repayment:
        self.db.add(repayment)
        self.db.flush()
        return repayment

    def get_by_idempotency_key(self, loan_id: Identifier, idempotency_key: str) -> Optional[Repayment]:
        return (
            self.db.query(Repayment)
            .filter(
                Repayment.loan_id == as_uuid(loan_id, "loan id"),
                Repayment.idempotency_key == idempotency_key,
            )
            .first()
        )

    def list_for_loan(self, loan_id: Identifier) -> List[Repayment]:
        return (
            self.db.query(Repayment)
            .filter(Repayment.loan_id == as_uuid(loan_id, "loan id"))
            .order_by(Repayment.applied_at)
            .all()
        )


class PenaltyAccrualRepository:
    """Repository for period-keyed penalty charges"""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, loan_id: uuid.UUID, installment_id: uuid.UUID, period: str) -> bool:
        return (
            self.db.query(PenaltyAccrual.id)
            .filter(
                PenaltyAccrual.loan_id == loan_id,
                PenaltyAccrual.installment_id == installment_id,
                PenaltyAccrual.period == period,
            )
            .first()
            is not None
        )

    def add(self, accrual: PenaltyAccrual) -> PenaltyAccrual:
        self.db.add(accrual)
        self.db.flush()
        return accrual


class RotationRepository:
    """Repository for ROSCA cycles, slots, payouts and swap requests"""

    def __init__(self, db: Session):
        self.db = db

    def add_cycle(self, cycle: RotationCycle) -> RotationCycle:
        self.db.add(cycle)
        self.db.flush()
        return cycle

    def get_cycle(self, cycle_id: Identifier) -> RotationCycle:
        cycle = self.db.get(RotationCycle, as_uuid(cycle_id, "cycle id"))
        if cycle is None:
            raise NotFoundError(f"Rotation cycle {cycle_id} not found")
        return cycle

    def get_cycle_for_update(self, cycle_id: Identifier) -> RotationCycle:
        cycle = (
            self.db.query(RotationCycle)
            .filter(RotationCycle.id == as_uuid(cycle_id, "cycle id"))
            .with_for_update()
            .populate_existing()
            .first()
        )
        if cycle is None:
            raise NotFoundError(f"Rotation cycle {cycle_id} not found")
        return cycle

    def list_slots(self, cycle_id: uuid.UUID) -> List[RotationSlot]:
        """Slots in position order, re-read from the database"""
        return (
            self.db.query(RotationSlot)
            .filter(RotationSlot.cycle_id == cycle_id)
            .order_by(RotationSlot.position)
            .populate_existing()
            .all()
        )

    def paid_slot_ids(self, cycle_id: uuid.UUID) -> set:
        rows = self.db.query(Payout.slot_id).filter(Payout.cycle_id == cycle_id).all()
        return {row[0] for row in rows}

    def get_slot_by_member(self, cycle_id: uuid.UUID, member_id: str) -> Optional[RotationSlot]:
        return (
            self.db.query(RotationSlot)
            .filter(RotationSlot.cycle_id == cycle_id, RotationSlot.member_id == member_id)
            .first()
        )

    def get_slot_by_position(self, cycle_id: uuid.UUID, position: int) -> Optional[RotationSlot]:
        return (
            self.db.query(RotationSlot)
            .filter(RotationSlot.cycle_id == cycle_id, RotationSlot.position == position)
            .first()
        )

    def add_payout(self, payout: Payout) -> Payout:
        self.db.add(payout)
        self.db.flush()
        return payout

    def get_payout_by_idempotency_key(self, cycle_id: uuid.UUID, idempotency_key: str) -> Optional[Payout]:
        return (
            self.db.query(Payout)
            .filter(Payout.cycle_id == cycle_id, Payout.idempotency_key == idempotency_key)
            .first()
        )

    def list_payouts(self, cycle_id: uuid.UUID) -> List[Payout]:
        return self.db.query(Payout).filter(Payout.cycle_id == cycle_id).order_by(Payout.position).all()

    def add_swap(self, swap: SwapRequest) -> SwapRequest:
        self.db.add(swap)
        self.db.flush()
        return swap

    def get_swap(self, swap_id: Identifier) -> SwapRequest:
        swap = self.db.get(SwapRequest, as_uuid(swap_id, "swap request id"))
        if swap is None:
            raise NotFoundError(f"Swap request {swap_id} not found")
        return swap

    def pending_swap_between(self, cycle_id: uuid.UUID, position_a: int, position_b: int) -> Optional[SwapRequest]:
        """Pending request pairing the two positions, in either direction"""
        pair = {position_a, position_b}
        for swap in (
            self.db.query(SwapRequest)
            .filter(SwapRequest.cycle_id == cycle_id, SwapRequest.status == SwapStatus.PENDING.value)
            .all()
        ):
            if {swap.requester_position, swap.target_position} == pair:
                return swap
        return None
