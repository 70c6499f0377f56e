"""SQLAlchemy ORM models for loans, guarantees, repayments and ROSCA rotations"""

import uuid
from sqlalchemy import (
    Column,
    String,
    BigInteger,
    Boolean,
    DateTime,
    Date,
    Integer,
    ForeignKey,
    Numeric,
    Text,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from chama_engine.domain.models import (
    GuarantorStatus,
    InstallmentStatus,
    LoanStatus,
    PayoutStatus,
    SwapStatus,
)

Base = declarative_base()


class Loan(Base):
    """Loan aggregate root; `version` guards concurrent writers"""

    __tablename__ = "loan"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    chama_id = Column(Text, nullable=False, index=True)
    borrower_id = Column(Text, nullable=False, index=True)
    currency = Column(String(3), nullable=False)
    purpose = Column(Text, nullable=False, default="")
    status = Column(Text, nullable=False, default=LoanStatus.PENDING_GUARANTOR.value)

    # Terms frozen from the chama's LoanConfig at application time
    principal_cents = Column(BigInteger, nullable=False)
    interest_type = Column(Text, nullable=False)
    interest_rate = Column(Numeric(9, 4), nullable=False)
    term_months = Column(Integer, nullable=False)
    penalty_rate = Column(Numeric(9, 4), nullable=False)
    default_grace_days = Column(Integer, nullable=False)
    max_concurrent_loans = Column(Integer, nullable=False)
    guarantor_min_savings_ratio = Column(Numeric(9, 4), nullable=False)
    guarantor_capacity_multiplier = Column(Numeric(9, 4), nullable=False)
    schedule = Column(JSON, nullable=False)

    total_interest_cents = Column(BigInteger, nullable=False)
    total_repayable_cents = Column(BigInteger, nullable=False)
    amount_paid_cents = Column(BigInteger, nullable=False, default=0)
    principal_outstanding_cents = Column(BigInteger, nullable=False)
    interest_outstanding_cents = Column(BigInteger, nullable=False)
    penalty_outstanding_cents = Column(BigInteger, nullable=False, default=0)
    guarantor_coverage_cents = Column(BigInteger, nullable=False, default=0)

    due_date = Column(Date, nullable=True)
    approved_by = Column(Text, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    closed_by = Column(Text, nullable=True)
    closed_reason = Column(Text, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    installments = relationship(
        "Installment",
        back_populates="loan",
        order_by="Installment.sequence",
        cascade="all, delete-orphan",
    )
    guarantors = relationship("Guarantor", back_populates="loan", cascade="all, delete-orphan")
    repayments = relationship("Repayment", back_populates="loan", cascade="all, delete-orphan")

    @property
    def total_outstanding_cents(self) -> int:
        return self.principal_outstanding_cents + self.interest_outstanding_cents + self.penalty_outstanding_cents


class Installment(Base):
    """Scheduled repayment unit; due amounts are fixed, paid amounts move"""

    __tablename__ = "loan_installment"
    __table_args__ = (
        UniqueConstraint("loan_id", "sequence", name="uq_installment_loan_sequence"),
        Index("ix_installment_due_status", "due_date", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(UUID(as_uuid=True), ForeignKey("loan.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False)
    principal_cents = Column(BigInteger, nullable=False)
    interest_cents = Column(BigInteger, nullable=False)
    penalty_cents = Column(BigInteger, nullable=False, default=0)
    principal_paid_cents = Column(BigInteger, nullable=False, default=0)
    interest_paid_cents = Column(BigInteger, nullable=False, default=0)
    penalty_paid_cents = Column(BigInteger, nullable=False, default=0)
    status = Column(Text, nullable=False, default=InstallmentStatus.PENDING.value)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    loan = relationship("Loan", back_populates="installments")

    @property
    def amount_paid_cents(self) -> int:
        return self.principal_paid_cents + self.interest_paid_cents + self.penalty_paid_cents

    @property
    def principal_due_cents(self) -> int:
        return self.principal_cents - self.principal_paid_cents

    @property
    def interest_due_cents(self) -> int:
        return self.interest_cents - self.interest_paid_cents

    @property
    def penalty_due_cents(self) -> int:
        return self.penalty_cents - self.penalty_paid_cents

    @property
    def is_settled(self) -> bool:
        return self.principal_due_cents == 0 and self.interest_due_cents == 0 and self.penalty_due_cents == 0


class Guarantor(Base):
    """Guarantee pledged by one member towards one loan"""

    __tablename__ = "loan_guarantor"
    __table_args__ = (UniqueConstraint("loan_id", "guarantor_member_id", name="uq_guarantor_loan_member"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(UUID(as_uuid=True), ForeignKey("loan.id", ondelete="CASCADE"), nullable=False, index=True)
    guarantor_member_id = Column(Text, nullable=False, index=True)
    guaranteed_cents = Column(BigInteger, nullable=False)
    status = Column(Text, nullable=False, default=GuarantorStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    responded_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)

    loan = relationship("Loan", back_populates="guarantors")


class Repayment(Base):
    """Write-once record of one applied payment and its breakdown"""

    __tablename__ = "loan_repayment"
    __table_args__ = (UniqueConstraint("loan_id", "idempotency_key", name="uq_repayment_idempotency"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(UUID(as_uuid=True), ForeignKey("loan.id", ondelete="CASCADE"), nullable=False, index=True)
    idempotency_key = Column(Text, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    penalty_cents = Column(BigInteger, nullable=False)
    interest_cents = Column(BigInteger, nullable=False)
    principal_cents = Column(BigInteger, nullable=False)
    allocation = Column(JSON, nullable=False)  # [{installment_id, sequence, penalty_cents, ...}]
    paid_by = Column(Text, nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=False)

    loan = relationship("Loan", back_populates="repayments")


class PenaltyAccrual(Base):
    """One penalty charge; the unique key makes re-runs for a period no-ops"""

    __tablename__ = "loan_penalty_accrual"
    __table_args__ = (
        UniqueConstraint("loan_id", "installment_id", "period", name="uq_penalty_accrual_period"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(UUID(as_uuid=True), ForeignKey("loan.id", ondelete="CASCADE"), nullable=False)
    installment_id = Column(UUID(as_uuid=True), ForeignKey("loan_installment.id", ondelete="CASCADE"), nullable=False)
    period = Column(String(7), nullable=False)
    overdue_principal_cents = Column(BigInteger, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    accrued_at = Column(DateTime(timezone=True), nullable=False)


class RotationCycle(Base):
    """ROSCA cycle aggregate root"""

    __tablename__ = "rotation_cycle"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    chama_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    currency = Column(String(3), nullable=False)
    amount_per_member_cents = Column(BigInteger, nullable=False)
    frequency = Column(Text, nullable=False)
    start_date = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    slots = relationship(
        "RotationSlot",
        back_populates="cycle",
        order_by="RotationSlot.position",
        cascade="all, delete-orphan",
    )


class RotationSlot(Base):
    """A member's place in the payout order"""

    __tablename__ = "rotation_slot"
    __table_args__ = (
        UniqueConstraint("cycle_id", "member_id", name="uq_slot_cycle_member"),
        UniqueConstraint("cycle_id", "position", name="uq_slot_cycle_position"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(UUID(as_uuid=True), ForeignKey("rotation_cycle.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Text, nullable=False)
    position = Column(Integer, nullable=False)

    cycle = relationship("RotationCycle", back_populates="slots")
    payout = relationship("Payout", back_populates="slot", uselist=False)


class Payout(Base):
    """Collective pot paid to one slot; at most one per slot"""

    __tablename__ = "rotation_payout"
    __table_args__ = (
        UniqueConstraint("slot_id", name="uq_payout_slot"),
        UniqueConstraint("cycle_id", "idempotency_key", name="uq_payout_idempotency"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(UUID(as_uuid=True), ForeignKey("rotation_cycle.id", ondelete="CASCADE"), nullable=False, index=True)
    slot_id = Column(UUID(as_uuid=True), ForeignKey("rotation_slot.id", ondelete="CASCADE"), nullable=False)
    recipient_member_id = Column(Text, nullable=False)
    position = Column(Integer, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    idempotency_key = Column(Text, nullable=False)
    payout_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False, default=PayoutStatus.COMPLETED.value)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    slot = relationship("RotationSlot", back_populates="payout")


class SwapRequest(Base):
    """Request to exchange payout positions with another member"""

    __tablename__ = "rotation_swap_request"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cycle_id = Column(UUID(as_uuid=True), ForeignKey("rotation_cycle.id", ondelete="CASCADE"), nullable=False, index=True)
    requester_id = Column(Text, nullable=False)
    requester_position = Column(Integer, nullable=False)
    target_position = Column(Integer, nullable=False)
    target_member_id = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default=SwapStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    responded_at = Column(DateTime(timezone=True), nullable=True)
