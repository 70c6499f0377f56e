"""Integration tests for the scheduled job runner"""

import pytest
from datetime import date
from chama_engine.domain.models import EventType, Frequency, LoanStatus, RosterMethod
from chama_engine.domain.money import Money
from chama_engine.jobs import payout_idempotency_key, run


@pytest.fixture
def cycle_id(rotation_service):
    cycle = rotation_service.create_cycle(
        chama_id="chama_umoja",
        name="weekly table banking",
        amount_per_member=Money.of("250", "KES"),
        frequency=Frequency.WEEKLY,
        start_date=date(2026, 1, 19),
        member_ids=["m1", "m2"],
        roster_method=RosterMethod.MANUAL,
        manual_order=["m1", "m2"],
    )
    return str(cycle.id)


def test_payout_key_is_per_cycle_per_day():
    assert payout_idempotency_key("c1", date(2026, 1, 19)) == "scheduled:c1:2026-01-19"


def test_accrue_penalties_job(session_factory, clock, notifier, loan_service, active_loan):
    code = run(["accrue-penalties", "--as-of", "2026-02-20"], session_factory, clock, notifier)

    assert code == 0
    assert loan_service.get_loan(active_loan.id).penalty_outstanding_cents == 10_000
    assert EventType.PENALTY_ACCRUED in notifier.types()


def test_accrue_penalties_job_rejects_bad_period(session_factory, clock, notifier):
    assert run(["accrue-penalties", "--period", "February"], session_factory, clock, notifier) == 2


def test_mark_defaults_job(session_factory, clock, notifier, loan_service, active_loan):
    assert run(["mark-defaults", "--as-of", "2026-03-01"], session_factory, clock, notifier) == 0
    assert loan_service.get_loan(active_loan.id).status == LoanStatus.ACTIVE.value

    assert run(["mark-defaults", "--as-of", "2026-03-20"], session_factory, clock, notifier) == 0
    assert loan_service.get_loan(active_loan.id).status == LoanStatus.DEFAULTED.value


def test_process_payouts_job_is_idempotent_per_day(session_factory, clock, notifier, rotation_service, cycle_id):
    assert run(["process-payouts", "--cycle", cycle_id], session_factory, clock, notifier) == 0
    assert run(["process-payouts", "--cycle", cycle_id], session_factory, clock, notifier) == 0

    schedule = rotation_service.get_rotation_schedule(cycle_id)
    assert [line.paid for line in schedule] == [True, False]
    assert len(notifier.of_type(EventType.PAYOUT_PROCESSED)) == 1


def test_process_payouts_job_skips_finished_cycles(session_factory, clock, notifier, cycle_id):
    for _ in range(2):
        assert run(["process-payouts", "--cycle", cycle_id], session_factory, clock, notifier) == 0
        clock.advance(7)

    assert run(["process-payouts", "--cycle", cycle_id], session_factory, clock, notifier) == 0


def test_process_payouts_job_reports_failures(session_factory, clock, notifier, cycle_id):
    missing = "00000000-0000-0000-0000-000000000000"
    code = run(["process-payouts", "--cycle", missing, "--cycle", cycle_id], session_factory, clock, notifier)

    assert code == 1
    assert len(notifier.of_type(EventType.PAYOUT_PROCESSED)) == 1


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        run(["rebalance"], session_factory=None)


class ClosingNotifier:
    def __init__(self):
        self.events = []
        self.closed = False

    def publish(self, event_type, payload):
        self.events.append(event_type)

    def close(self):
        self.closed = True


def test_job_closes_the_notifier_it_builds(monkeypatch, session_factory, clock, cycle_id):
    built = ClosingNotifier()
    monkeypatch.setattr("chama_engine.jobs.default_notifier", lambda: built)

    assert run(["process-payouts", "--cycle", cycle_id], session_factory, clock) == 0

    assert built.events == [EventType.PAYOUT_PROCESSED]
    assert built.closed is True


def test_job_leaves_caller_notifier_open(session_factory, clock, cycle_id):
    given = ClosingNotifier()
    run(["process-payouts", "--cycle", cycle_id], session_factory, clock, given)
    assert given.closed is False
