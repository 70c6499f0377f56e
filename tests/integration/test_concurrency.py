"""Races between writers on one aggregate, over a file-backed SQLite database

Each test runs a second operation to completion in the middle of the first one's
transaction. The first writer must lose on the version check (or unique key),
retry against fresh state, and leave exactly one outcome behind.
"""

import pytest
from datetime import date
from chama_engine.domain.models import EventType, Frequency, GuarantorDecision, LoanStatus, RosterMethod
from chama_engine.domain.money import Money
from chama_engine.infrastructure.database.models import Base, Payout
from chama_engine.infrastructure.database.repositories import GuarantorRepository, RotationRepository
from chama_engine.infrastructure.database.session import build_engine, build_session_factory
from chama_engine.services.loans import LoanService
from chama_engine.services.rotation import RotationService


@pytest.fixture
def shared_db(tmp_path):
    """Separate connections per session, like two application workers"""
    engine = build_engine(f"sqlite:///{tmp_path / 'chama.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()


def run_once_inside(monkeypatch, owner, method_name, concurrent_call):
    """Patch a repository read so the first caller triggers concurrent_call right after it"""
    original = getattr(owner, method_name)
    fired = []

    def interleaved(self, *args, **kwargs):
        result = original(self, *args, **kwargs)
        if not fired:
            fired.append(True)
            concurrent_call()
        return result

    monkeypatch.setattr(owner, method_name, interleaved)
    return fired


def test_simultaneous_guarantor_acceptances_advance_loan_once(
    monkeypatch, shared_db, clock, notifier, application, loan_config
):
    service = LoanService(shared_db, clock=clock, notifier=notifier)
    loan = service.apply_loan(application, loan_config)
    first, second = sorted(loan.guarantors, key=lambda g: g.guaranteed_cents, reverse=True)

    fired = run_once_inside(
        monkeypatch,
        GuarantorRepository,
        "list_for_loan",
        lambda: service.respond_guarantor(second.id, second.guarantor_member_id, GuarantorDecision.ACCEPT),
    )
    service.respond_guarantor(first.id, first.guarantor_member_id, GuarantorDecision.ACCEPT)

    assert fired == [True]
    stored = service.get_loan(loan.id)
    assert stored.status == LoanStatus.PENDING_APPROVAL.value
    assert stored.guarantor_coverage_cents == 1_100_000
    assert {g.status for g in stored.guarantors} == {"APPROVED"}
    assert len(notifier.of_type(EventType.LOAN_PENDING_APPROVAL)) == 1


def test_racing_payouts_pay_each_slot_once(monkeypatch, shared_db, clock, notifier):
    service = RotationService(shared_db, clock=clock, notifier=notifier)
    cycle = service.create_cycle(
        chama_id="chama_umoja",
        name="2026 merry-go-round",
        amount_per_member=Money.of("1000", "KES"),
        frequency=Frequency.MONTHLY,
        start_date=date(2026, 2, 1),
        member_ids=["m1", "m2", "m3"],
        roster_method=RosterMethod.MANUAL,
        manual_order=["m1", "m2", "m3"],
    )
    concurrent = []

    run_once_inside(
        monkeypatch,
        RotationRepository,
        "paid_slot_ids",
        lambda: concurrent.append(service.process_payout(cycle.id, "teller-b")),
    )
    retried = service.process_payout(cycle.id, "teller-a")

    assert (concurrent[0].recipient_member_id, concurrent[0].position) == ("m1", 1)
    assert (retried.recipient_member_id, retried.position) == ("m2", 2)

    with shared_db() as db:
        payouts = db.query(Payout).filter(Payout.cycle_id == cycle.id).all()
    assert sorted(p.position for p in payouts) == [1, 2]
    assert len({p.slot_id for p in payouts}) == 2
    assert service.get_next_recipient(cycle.id).member_id == "m3"
