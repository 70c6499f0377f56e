"""Loan lifecycle orchestration: application, guarantees, approval, repayment, penalties"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chama_engine.domain.allocation import allocate_payment
from chama_engine.domain.exceptions import (
    ConcurrentLoanLimitError,
    DomainException,
    IdempotencyKeyReuseError,
    InsufficientCoverageError,
    InvalidInputError,
    InvalidTransitionError,
    LoanLimitExceededError,
    NotificationError,
    NotPermittedError,
)
from chama_engine.domain.guarantors import approved_coverage, check_nomination, check_unique_members, coverage_met
from chama_engine.domain.interest import calculate_penalty, calculate_schedule
from chama_engine.domain.models import (
    AmortizationSchedule,
    DefaultRunSummary,
    EventType,
    GuarantorDecision,
    GuarantorNomination,
    GuarantorPolicy,
    GuarantorStatus,
    InstallmentBalance,
    InstallmentStatus,
    InterestType,
    LoanApplication,
    LoanConfig,
    LoanStatus,
    PenaltyRunSummary,
    ScheduleLine,
)
from chama_engine.domain.money import Money, require_cents, round_cents
from chama_engine.domain.state_machine import ensure_status, ensure_transition
from chama_engine.infrastructure.clients.notifier import LoggingNotifier, Notifier
from chama_engine.infrastructure.database.models import Guarantor, Installment, Loan, PenaltyAccrual, Repayment
from chama_engine.infrastructure.database.repositories import (
    GuarantorRepository,
    LoanRepository,
    PenaltyAccrualRepository,
    RepaymentRepository,
)
from chama_engine.infrastructure.database.transaction import retry_on_conflict, transaction
from chama_engine.infrastructure.observability.logging import log_loan_transition, log_repayment
from chama_engine.infrastructure.observability.metrics import (
    job_failure_counter,
    penalty_accrual_counter,
    record_loan_transition,
    record_repayment,
)
from chama_engine.utils.clock import Clock, SystemClock
from chama_engine.utils.date_utils import accrual_period, add_months, validate_period

logger = logging.getLogger(__name__)

Event = Tuple[EventType, Dict[str, Any]]


def _loan_event(loan: Loan, **extra: Any) -> Dict[str, Any]:
    payload = {
        "loan_id": str(loan.id),
        "chama_id": loan.chama_id,
        "borrower_id": loan.borrower_id,
        "status": loan.status,
        "currency": loan.currency,
        "principal_cents": loan.principal_cents,
        "total_repayable_cents": loan.total_repayable_cents,
    }
    payload.update(extra)
    return payload


def _guarantor_policy(loan: Loan) -> GuarantorPolicy:
    return GuarantorPolicy(
        min_savings_ratio=Decimal(loan.guarantor_min_savings_ratio),
        capacity_multiplier=Decimal(loan.guarantor_capacity_multiplier),
    )


def _require_key(idempotency_key: str) -> str:
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        raise InvalidInputError("idempotency_key is required")
    return idempotency_key


class LoanService:
    """
    Engine operations for chama loans.

    Every state-changing call runs in one transaction against a row-locked,
    versioned Loan; a lost race surfaces as ConflictError and the whole
    operation is retried. Events are published only after commit.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingNotifier()

    def _publish(self, events: List[Event]) -> None:
        for event_type, payload in events:
            try:
                self.notifier.publish(event_type, payload)
            except NotificationError as e:
                logger.error("Event publish failed", extra={"event_type": event_type.value, "error": str(e)})

    def _transition(self, loan: Loan, target: LoanStatus, now: datetime, actor: Optional[str] = None, reason: Optional[str] = None) -> None:
        previous = loan.status
        loan.status = ensure_transition(LoanStatus(previous), target).value
        loan.updated_at = now
        log_loan_transition(str(loan.id), previous, loan.status, actor=actor, reason=reason)
        record_loan_transition(loan.status)

    def _release_guarantors(self, loan: Loan, now: datetime) -> None:
        for guarantor in loan.guarantors:
            if guarantor.released_at is None:
                guarantor.released_at = now

    # ------------------------------------------------------------------
    # Application and guarantees
    # ------------------------------------------------------------------

    @retry_on_conflict("apply_loan")
    def apply_loan(self, application: LoanApplication, config: LoanConfig) -> Loan:
        """
        Create a loan in PENDING_GUARANTOR with its terms frozen from config.

        Raises:
            InvalidInputError: malformed amount, term or savings
            LoanLimitExceededError: amount above multiplier x savings
            ConcurrentLoanLimitError: borrower already at the active-loan limit
            NotPermittedError: borrower has a defaulted loan in this chama
            GuarantorIneligibleError: a nominated guarantor fails eligibility
        """
        amount = application.amount
        require_cents(amount.amount_cents, "amount")
        require_cents(application.borrower_savings_cents, "borrower_savings_cents", allow_zero=True)
        term = application.term_months
        if isinstance(term, bool) or not isinstance(term, int) or term < 1:
            raise InvalidInputError("term_months must be a positive integer")
        if term > config.max_repayment_months:
            raise InvalidInputError(
                f"term_months {term} exceeds the chama maximum of {config.max_repayment_months}"
            )
        if not application.chama_id or not application.borrower_id:
            raise InvalidInputError("chama_id and borrower_id are required")

        max_principal = round_cents(Decimal(application.borrower_savings_cents) * config.loan_multiplier)
        if amount.amount_cents > max_principal:
            raise LoanLimitExceededError(
                f"Requested {amount.amount_cents} cents exceeds the limit of {max_principal} cents "
                f"({config.loan_multiplier} x savings)"
            )
        check_unique_members(application.guarantors)

        schedule = calculate_schedule(amount.amount_cents, config.interest_rate, term, config.interest_type)
        now = self.clock.now()
        events: List[Event] = []

        with transaction(self.session_factory) as db:
            loans = LoanRepository(db)
            guarantors = GuarantorRepository(db)

            # 1. Borrower eligibility
            if loans.has_defaulted(application.chama_id, application.borrower_id):
                raise NotPermittedError(f"Borrower {application.borrower_id} has a defaulted loan in this chama")
            active = loans.count_by_status(application.chama_id, application.borrower_id, LoanStatus.ACTIVE)
            if active >= config.max_concurrent_loans_per_member:
                raise ConcurrentLoanLimitError(
                    f"Borrower {application.borrower_id} already has {active} active loan(s); "
                    f"limit is {config.max_concurrent_loans_per_member}"
                )

            # 2. Guarantor eligibility, each against the members accepted so far
            accepted: List[str] = []
            for nomination in application.guarantors:
                check_nomination(
                    nomination,
                    borrower_id=application.borrower_id,
                    existing_member_ids=accepted,
                    committed_cents=guarantors.committed_amount(application.chama_id, nomination.member_id),
                    has_defaulted=loans.has_defaulted(application.chama_id, nomination.member_id),
                    policy=config.guarantor_policy,
                )
                accepted.append(nomination.member_id)

            # 3. Persist loan with frozen terms, the computed schedule and its guarantee requests
            loan = loans.add(
                Loan(
                    guarantors=[
                        Guarantor(
                            guarantor_member_id=nomination.member_id,
                            guaranteed_cents=nomination.amount_cents,
                            status=GuarantorStatus.PENDING.value,
                            created_at=now,
                        )
                        for nomination in application.guarantors
                    ],
                    chama_id=application.chama_id,
                    borrower_id=application.borrower_id,
                    currency=amount.currency,
                    purpose=application.purpose or "",
                    status=LoanStatus.PENDING_GUARANTOR.value,
                    principal_cents=amount.amount_cents,
                    interest_type=config.interest_type.value,
                    interest_rate=config.interest_rate,
                    term_months=term,
                    penalty_rate=config.penalty_rate_per_period,
                    default_grace_days=config.default_grace_days,
                    max_concurrent_loans=config.max_concurrent_loans_per_member,
                    guarantor_min_savings_ratio=config.guarantor_min_savings_ratio,
                    guarantor_capacity_multiplier=config.guarantor_capacity_multiplier,
                    schedule=[
                        {
                            "sequence": line.sequence,
                            "principal_cents": line.principal_cents,
                            "interest_cents": line.interest_cents,
                        }
                        for line in schedule.lines
                    ],
                    total_interest_cents=schedule.total_interest_cents,
                    total_repayable_cents=schedule.total_repayable_cents,
                    amount_paid_cents=0,
                    principal_outstanding_cents=schedule.principal_cents,
                    interest_outstanding_cents=schedule.total_interest_cents,
                    penalty_outstanding_cents=0,
                    guarantor_coverage_cents=0,
                    created_at=now,
                    updated_at=now,
                )
            )

            for guarantor in loan.guarantors:
                events.append(
                    (
                        EventType.GUARANTOR_REQUESTED,
                        _loan_event(
                            loan,
                            guarantor_id=str(guarantor.id),
                            guarantor_member_id=guarantor.guarantor_member_id,
                            guaranteed_cents=guarantor.guaranteed_cents,
                        ),
                    )
                )

            log_loan_transition(str(loan.id), None, loan.status, actor=loan.borrower_id)
            record_loan_transition(loan.status)

        self._publish(events)
        return loan

    @retry_on_conflict("nominate_guarantor")
    def nominate_guarantor(
        self,
        loan_id: str,
        borrower_id: str,
        nomination: GuarantorNomination,
    ) -> Guarantor:
        """
        Add a guarantor to a loan still collecting guarantees (e.g. to replace a rejection).

        Eligibility uses the guarantor ratios frozen on the loan when it was applied for.
        """
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            loans = LoanRepository(db)
            guarantors = GuarantorRepository(db)

            loan = loans.get_for_update(loan_id)
            if loan.borrower_id != borrower_id:
                raise NotPermittedError("Only the borrower may nominate guarantors")
            ensure_status(LoanStatus(loan.status), LoanStatus.PENDING_GUARANTOR, "nominate a guarantor for")

            existing = guarantors.list_for_loan(loan.id)
            check_nomination(
                nomination,
                borrower_id=loan.borrower_id,
                existing_member_ids=[g.guarantor_member_id for g in existing],
                committed_cents=guarantors.committed_amount(loan.chama_id, nomination.member_id),
                has_defaulted=loans.has_defaulted(loan.chama_id, nomination.member_id),
                policy=_guarantor_policy(loan),
            )

            guarantor = guarantors.add(
                Guarantor(
                    loan_id=loan.id,
                    guarantor_member_id=nomination.member_id,
                    guaranteed_cents=nomination.amount_cents,
                    status=GuarantorStatus.PENDING.value,
                    created_at=now,
                )
            )
            loan.updated_at = now
            event = _loan_event(
                loan,
                guarantor_id=str(guarantor.id),
                guarantor_member_id=guarantor.guarantor_member_id,
                guaranteed_cents=guarantor.guaranteed_cents,
            )

        self._publish([(EventType.GUARANTOR_REQUESTED, event)])
        return guarantor

    @retry_on_conflict("respond_guarantor")
    def respond_guarantor(self, guarantor_id: str, member_id: str, decision: GuarantorDecision) -> Guarantor:
        """
        Record a guarantor's answer and advance the loan once coverage is met.

        The loan row is locked and its version bumped on every response, so two
        guarantors answering at once serialize and the advance happens exactly once.
        A rejection leaves the loan in PENDING_GUARANTOR for a replacement nomination.
        """
        decision = GuarantorDecision(decision)
        now = self.clock.now()
        events: List[Event] = []

        with transaction(self.session_factory) as db:
            loans = LoanRepository(db)
            guarantors = GuarantorRepository(db)

            guarantor = guarantors.get(guarantor_id)
            loan = loans.get_for_update(guarantor.loan_id)
            # Re-read under the loan lock; refreshes `guarantor` in place
            rows = guarantors.list_for_loan(loan.id)

            if guarantor.guarantor_member_id != member_id:
                raise NotPermittedError("Only the nominated member may respond to this guarantee")
            ensure_status(LoanStatus(loan.status), LoanStatus.PENDING_GUARANTOR, "respond to a guarantee on")
            if GuarantorStatus(guarantor.status) is not GuarantorStatus.PENDING:
                raise InvalidTransitionError(f"Guarantee already answered: {guarantor.status}")

            guarantor.status = (
                GuarantorStatus.APPROVED if decision is GuarantorDecision.ACCEPT else GuarantorStatus.REJECTED
            ).value
            guarantor.responded_at = now

            coverage = approved_coverage((g.status, g.guaranteed_cents) for g in rows)
            loan.guarantor_coverage_cents = coverage
            loan.updated_at = now

            logger.info(
                "Guarantor responded",
                extra={
                    "loan_id": str(loan.id),
                    "guarantor_id": str(guarantor.id),
                    "decision": decision.value,
                    "coverage_cents": coverage,
                    "total_repayable_cents": loan.total_repayable_cents,
                },
            )

            if coverage_met(coverage, loan.total_repayable_cents):
                self._transition(loan, LoanStatus.PENDING_APPROVAL, now, actor=member_id)
                events.append((EventType.LOAN_PENDING_APPROVAL, _loan_event(loan, coverage_cents=coverage)))

        self._publish(events)
        return guarantor

    # ------------------------------------------------------------------
    # Official decisions and borrower cancellation
    # ------------------------------------------------------------------

    @retry_on_conflict("approve_loan")
    def approve_loan(self, loan_id: str, official_id: str) -> Loan:
        """
        Activate a loan and materialize its installments from the frozen schedule.

        Installment n falls due n months after the approval date.
        """
        if not official_id:
            raise InvalidInputError("official_id is required")
        now = self.clock.now()
        today = self.clock.today()

        with transaction(self.session_factory) as db:
            loans = LoanRepository(db)
            loan = loans.get_for_update(loan_id)
            ensure_transition(LoanStatus(loan.status), LoanStatus.ACTIVE)

            if official_id == loan.borrower_id:
                raise NotPermittedError("An official cannot approve their own loan")

            coverage = approved_coverage((g.status, g.guaranteed_cents) for g in GuarantorRepository(db).list_for_loan(loan.id))
            if not coverage_met(coverage, loan.total_repayable_cents):
                raise InsufficientCoverageError(
                    f"Approved guarantees of {coverage} cents do not cover {loan.total_repayable_cents} cents"
                )

            active = loans.count_by_status(loan.chama_id, loan.borrower_id, LoanStatus.ACTIVE)
            if active >= loan.max_concurrent_loans:
                raise ConcurrentLoanLimitError(
                    f"Borrower {loan.borrower_id} already has {active} active loan(s)"
                )

            for line in loan.schedule:
                loan.installments.append(
                    Installment(
                        sequence=line["sequence"],
                        due_date=add_months(today, line["sequence"]),
                        principal_cents=line["principal_cents"],
                        interest_cents=line["interest_cents"],
                        penalty_cents=0,
                        principal_paid_cents=0,
                        interest_paid_cents=0,
                        penalty_paid_cents=0,
                        status=InstallmentStatus.PENDING.value,
                    )
                )
            loan.due_date = add_months(today, loan.term_months)
            loan.approved_by = official_id
            loan.approved_at = now
            self._transition(loan, LoanStatus.ACTIVE, now, actor=official_id)
            db.flush()

            event = _loan_event(
                loan,
                approved_by=official_id,
                due_date=loan.due_date.isoformat(),
                installments=len(loan.installments),
            )

        self._publish([(EventType.LOAN_APPROVED, event)])
        return loan

    @retry_on_conflict("reject_loan")
    def reject_loan(self, loan_id: str, official_id: str, reason: str) -> Loan:
        """Official rejection of a loan awaiting approval; guarantees are released"""
        if not official_id:
            raise InvalidInputError("official_id is required")
        if not reason or not reason.strip():
            raise InvalidInputError("A rejection reason is required")
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            loan = LoanRepository(db).get_for_update(loan_id)
            ensure_status(LoanStatus(loan.status), LoanStatus.PENDING_APPROVAL, "reject")
            self._transition(loan, LoanStatus.CANCELLED, now, actor=official_id, reason=reason)
            loan.closed_by = official_id
            loan.closed_reason = reason
            loan.closed_at = now
            self._release_guarantors(loan, now)
            event = _loan_event(loan, closed_by=official_id, reason=reason)

        self._publish([(EventType.LOAN_CANCELLED, event)])
        return loan

    @retry_on_conflict("cancel_loan")
    def cancel_loan(self, loan_id: str, borrower_id: str, reason: Optional[str] = None) -> Loan:
        """Borrower withdraws a loan before it is active"""
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            loan = LoanRepository(db).get_for_update(loan_id)
            if loan.borrower_id != borrower_id:
                raise NotPermittedError("Only the borrower may cancel this loan")
            self._transition(loan, LoanStatus.CANCELLED, now, actor=borrower_id, reason=reason)
            loan.closed_by = borrower_id
            loan.closed_reason = reason or "cancelled by borrower"
            loan.closed_at = now
            self._release_guarantors(loan, now)
            event = _loan_event(loan, closed_by=borrower_id, reason=loan.closed_reason)

        self._publish([(EventType.LOAN_CANCELLED, event)])
        return loan

    # ------------------------------------------------------------------
    # Repayment
    # ------------------------------------------------------------------

    @retry_on_conflict("repay")
    def repay(self, loan_id: str, amount: Money, idempotency_key: str, paid_by: Optional[str] = None) -> Repayment:
        """
        Apply one payment to an active loan.

        A repeated idempotency key returns the original Repayment untouched; the
        same key with a different amount is rejected. Allocation, the Repayment
        record and the loan totals commit together or not at all.

        Raises:
            InvalidInputError: non-positive amount or wrong currency
            IdempotencyKeyReuseError: key already used for another amount
            OverpaymentError: amount exceeds everything outstanding
            InvalidTransitionError: loan is not ACTIVE
        """
        idempotency_key = _require_key(idempotency_key)
        if not isinstance(amount, Money):
            raise InvalidInputError("amount must be Money")
        require_cents(amount.amount_cents, "amount")
        now = self.clock.now()
        today = self.clock.today()
        events: List[Event] = []

        with transaction(self.session_factory) as db:
            loans = LoanRepository(db)
            repayments = RepaymentRepository(db)

            # 1. Lock the aggregate, then check for a replay under the lock
            loan = loans.get_for_update(loan_id)
            previous = repayments.get_by_idempotency_key(loan.id, idempotency_key)
            if previous is not None:
                if previous.amount_cents != amount.amount_cents:
                    raise IdempotencyKeyReuseError(
                        f"Idempotency key {idempotency_key!r} was used for {previous.amount_cents} cents"
                    )
                log_repayment(
                    str(loan.id), idempotency_key, previous.amount_cents,
                    previous.penalty_cents, previous.interest_cents, previous.principal_cents,
                    replayed=True,
                )
                return previous

            if amount.currency != loan.currency:
                raise InvalidInputError(f"Loan is in {loan.currency}, payment is in {amount.currency}")
            ensure_status(LoanStatus(loan.status), LoanStatus.ACTIVE, "repay")

            # 2. Allocate across unsettled installments
            installments = {str(inst.id): inst for inst in loan.installments}
            balances = [
                InstallmentBalance(
                    installment_id=key,
                    sequence=inst.sequence,
                    due_date=inst.due_date,
                    penalty_cents=inst.penalty_due_cents,
                    interest_cents=inst.interest_due_cents,
                    principal_cents=inst.principal_due_cents,
                )
                for key, inst in installments.items()
            ]
            result = allocate_payment(balances, amount.amount_cents, today)

            # 3. Apply to installments and loan totals
            for line in result.lines:
                inst = installments[line.installment_id]
                inst.penalty_paid_cents += line.penalty_cents
                inst.interest_paid_cents += line.interest_cents
                inst.principal_paid_cents += line.principal_cents
                if inst.is_settled:
                    inst.status = InstallmentStatus.PAID.value
                    inst.paid_at = now
                else:
                    inst.status = InstallmentStatus.PARTIALLY_PAID.value

            loan.penalty_outstanding_cents -= result.penalty_cents
            loan.interest_outstanding_cents -= result.interest_cents
            loan.principal_outstanding_cents -= result.principal_cents
            loan.amount_paid_cents += result.total_cents
            loan.updated_at = now

            # 4. Write-once audit record
            repayment = repayments.add(
                Repayment(
                    loan_id=loan.id,
                    idempotency_key=idempotency_key,
                    amount_cents=amount.amount_cents,
                    penalty_cents=result.penalty_cents,
                    interest_cents=result.interest_cents,
                    principal_cents=result.principal_cents,
                    allocation=[
                        {
                            "installment_id": line.installment_id,
                            "sequence": line.sequence,
                            "penalty_cents": line.penalty_cents,
                            "interest_cents": line.interest_cents,
                            "principal_cents": line.principal_cents,
                        }
                        for line in result.lines
                    ],
                    paid_by=paid_by,
                    applied_at=now,
                )
            )
            events.append(
                (
                    EventType.REPAYMENT_APPLIED,
                    _loan_event(
                        loan,
                        repayment_id=str(repayment.id),
                        amount_cents=repayment.amount_cents,
                        penalty_cents=repayment.penalty_cents,
                        interest_cents=repayment.interest_cents,
                        principal_cents=repayment.principal_cents,
                        outstanding_cents=loan.total_outstanding_cents,
                    ),
                )
            )

            # 5. Completion
            if loan.total_outstanding_cents == 0:
                self._transition(loan, LoanStatus.COMPLETED, now, actor=paid_by)
                loan.closed_at = now
                self._release_guarantors(loan, now)
                events.append((EventType.LOAN_COMPLETED, _loan_event(loan)))

        log_repayment(
            str(loan.id), idempotency_key, repayment.amount_cents,
            repayment.penalty_cents, repayment.interest_cents, repayment.principal_cents,
            replayed=False,
        )
        record_repayment(repayment.amount_cents, repayment.penalty_cents, repayment.interest_cents, repayment.principal_cents)
        self._publish(events)
        return repayment

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------

    def accrue_penalties(self, period: Optional[str] = None, as_of: Optional[date] = None) -> PenaltyRunSummary:
        """
        Charge one period's penalty on every overdue installment of active loans.

        Keyed by (loan, installment, period): re-running a period creates nothing new.
        Each loan is its own transaction; a failing loan is logged, counted and left
        for the next run.
        """
        as_of = as_of or self.clock.today()
        period = validate_period(period) if period is not None else accrual_period(as_of)

        with transaction(self.session_factory) as db:
            loan_ids = LoanRepository(db).list_active_ids_with_unsettled_before(as_of)

        created = 0
        charged = 0
        failed: List[str] = []
        for loan_id in loan_ids:
            try:
                count, cents = self._accrue_for_loan(loan_id, period, as_of)
            except (DomainException, SQLAlchemyError) as e:
                failed.append(str(loan_id))
                job_failure_counter.labels(job="accrue_penalties").inc()
                logger.error(
                    "Penalty accrual failed",
                    extra={"loan_id": str(loan_id), "period": period, "error": str(e)},
                )
                continue
            created += count
            charged += cents

        summary = PenaltyRunSummary(
            period=period,
            loans_scanned=len(loan_ids),
            accruals_created=created,
            penalty_cents=charged,
            failed_loan_ids=failed,
        )
        logger.info(
            "Penalty accrual run finished",
            extra={
                "period": period,
                "loans_scanned": summary.loans_scanned,
                "accruals_created": created,
                "penalty_cents": charged,
                "failed": len(failed),
            },
        )
        return summary

    @retry_on_conflict("accrue_penalties")
    def _accrue_for_loan(self, loan_id, period: str, as_of: date) -> Tuple[int, int]:
        now = self.clock.now()
        created = 0
        charged = 0

        with transaction(self.session_factory) as db:
            loan = LoanRepository(db).get_for_update(loan_id)
            if LoanStatus(loan.status) is not LoanStatus.ACTIVE:
                return 0, 0
            accruals = PenaltyAccrualRepository(db)

            for inst in loan.installments:
                if inst.is_settled or inst.due_date >= as_of:
                    continue
                inst.status = InstallmentStatus.OVERDUE.value
                overdue_principal = inst.principal_due_cents
                if overdue_principal <= 0 or accruals.exists(loan.id, inst.id, period):
                    continue
                penalty = calculate_penalty(overdue_principal, loan.penalty_rate)
                if penalty <= 0:
                    continue
                accruals.add(
                    PenaltyAccrual(
                        loan_id=loan.id,
                        installment_id=inst.id,
                        period=period,
                        overdue_principal_cents=overdue_principal,
                        amount_cents=penalty,
                        accrued_at=now,
                    )
                )
                inst.penalty_cents += penalty
                loan.penalty_outstanding_cents += penalty
                created += 1
                charged += penalty

            if created:
                loan.updated_at = now
                event = _loan_event(loan, period=period, penalty_cents=charged, accruals=created)

        if created:
            penalty_accrual_counter.inc(created)
            self._publish([(EventType.PENALTY_ACCRUED, event)])
        return created, charged

    def mark_defaults(self, as_of: Optional[date] = None) -> DefaultRunSummary:
        """Move active loans overdue beyond their grace period to DEFAULTED"""
        as_of = as_of or self.clock.today()

        with transaction(self.session_factory) as db:
            loan_ids = LoanRepository(db).list_active_ids_with_unsettled_before(as_of)

        defaulted: List[str] = []
        failed: List[str] = []
        for loan_id in loan_ids:
            try:
                if self._default_if_overdue(loan_id, as_of):
                    defaulted.append(str(loan_id))
            except (DomainException, SQLAlchemyError) as e:
                failed.append(str(loan_id))
                job_failure_counter.labels(job="mark_defaults").inc()
                logger.error("Default check failed", extra={"loan_id": str(loan_id), "error": str(e)})

        logger.info(
            "Default run finished",
            extra={
                "as_of": as_of.isoformat(),
                "loans_scanned": len(loan_ids),
                "defaulted": len(defaulted),
                "failed": len(failed),
            },
        )
        return DefaultRunSummary(as_of=as_of, loans_scanned=len(loan_ids), defaulted_loan_ids=defaulted, failed_loan_ids=failed)

    @retry_on_conflict("mark_defaults")
    def _default_if_overdue(self, loan_id, as_of: date) -> bool:
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            loan = LoanRepository(db).get_for_update(loan_id)
            if LoanStatus(loan.status) is not LoanStatus.ACTIVE:
                return False
            overdue = [inst for inst in loan.installments if not inst.is_settled and inst.due_date < as_of]
            if not overdue:
                return False
            oldest_due = min(inst.due_date for inst in overdue)
            if as_of - oldest_due <= timedelta(days=loan.default_grace_days):
                return False

            for inst in overdue:
                inst.status = InstallmentStatus.OVERDUE.value
            self._transition(loan, LoanStatus.DEFAULTED, now, reason=f"overdue since {oldest_due.isoformat()}")
            loan.closed_at = now
            loan.closed_reason = f"overdue since {oldest_due.isoformat()}"
            event = _loan_event(loan, overdue_since=oldest_due.isoformat(), outstanding_cents=loan.total_outstanding_cents)

        self._publish([(EventType.LOAN_DEFAULTED, event)])
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Loan:
        with transaction(self.session_factory) as db:
            return LoanRepository(db).get_with_details(loan_id)

    def get_schedule(self, loan_id: str) -> AmortizationSchedule:
        """Amortization schedule frozen at application time"""
        with transaction(self.session_factory) as db:
            loan = LoanRepository(db).get(loan_id)
            return AmortizationSchedule(
                interest_type=InterestType(loan.interest_type),
                principal_cents=loan.principal_cents,
                total_interest_cents=loan.total_interest_cents,
                lines=[
                    ScheduleLine(line["sequence"], line["principal_cents"], line["interest_cents"])
                    for line in loan.schedule
                ],
            )
