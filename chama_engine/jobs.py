"""Scheduled batch jobs: penalty accrual, default detection, ROSCA payouts

Usage:
    python -m chama_engine.jobs accrue-penalties [--period YYYY-MM]
    python -m chama_engine.jobs mark-defaults [--as-of YYYY-MM-DD]
    python -m chama_engine.jobs process-payouts --cycle ID [--cycle ID ...]

Every job is idempotent; failures are logged, counted and retried by the next run.
"""

import argparse
import logging
import sys
import uuid
from datetime import date
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chama_engine.config import settings
from chama_engine.domain.exceptions import CycleExhaustedError, DomainException
from chama_engine.infrastructure.clients.notifier import Notifier, default_notifier
from chama_engine.infrastructure.database.session import SessionLocal
from chama_engine.infrastructure.observability.logging import request_id_var, setup_logging
from chama_engine.infrastructure.observability.metrics import job_failure_counter
from chama_engine.services.loans import LoanService
from chama_engine.services.rotation import RotationService
from chama_engine.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chama_engine.jobs", description="Chama engine scheduled jobs")
    commands = parser.add_subparsers(dest="command", required=True)

    accrue = commands.add_parser("accrue-penalties", help="charge one period's penalties on overdue installments")
    accrue.add_argument("--period", help="accrual period YYYY-MM (default: current month)")
    accrue.add_argument("--as-of", type=_iso_date, help="treat this date as today")

    defaults = commands.add_parser("mark-defaults", help="default loans overdue beyond their grace period")
    defaults.add_argument("--as-of", type=_iso_date, help="treat this date as today")

    payouts = commands.add_parser("process-payouts", help="pay the next recipient of each cycle")
    payouts.add_argument("--cycle", dest="cycles", action="append", required=True, help="rotation cycle id")

    return parser


def payout_idempotency_key(cycle_id: str, on: date) -> str:
    """One scheduled payout per cycle per day"""
    return f"scheduled:{cycle_id}:{on.isoformat()}"


def run_process_payouts(service: RotationService, cycle_ids: List[str], today: date) -> int:
    failures = 0
    for cycle_id in cycle_ids:
        try:
            service.process_payout(cycle_id, payout_idempotency_key(cycle_id, today))
        except CycleExhaustedError:
            logger.info("Cycle already fully paid", extra={"cycle_id": cycle_id})
        except (DomainException, SQLAlchemyError) as e:
            failures += 1
            job_failure_counter.labels(job="process_payouts").inc()
            logger.error("Scheduled payout failed", extra={"cycle_id": cycle_id, "error": str(e)})
    return failures


def run(
    argv: Optional[List[str]],
    session_factory: Callable[[], Session],
    clock: Optional[Clock] = None,
    notifier: Optional[Notifier] = None,
) -> int:
    """Parse arguments and run one job; returns the process exit code"""
    args = build_parser().parse_args(argv)
    clock = clock or SystemClock()
    owned_notifier = notifier is None
    notifier = notifier or default_notifier()
    token = request_id_var.set(f"job-{uuid.uuid4()}")

    try:
        if args.command == "accrue-penalties":
            summary = LoanService(session_factory, clock, notifier).accrue_penalties(period=args.period, as_of=args.as_of)
            return 1 if summary.failed_loan_ids else 0

        if args.command == "mark-defaults":
            summary = LoanService(session_factory, clock, notifier).mark_defaults(as_of=args.as_of)
            return 1 if summary.failed_loan_ids else 0

        failures = run_process_payouts(RotationService(session_factory, clock, notifier), args.cycles, clock.today())
        return 1 if failures else 0

    except DomainException as e:
        logger.error("Job aborted", extra={"job": args.command, "error": str(e)})
        job_failure_counter.labels(job=args.command.replace("-", "_")).inc()
        return 2
    finally:
        if owned_notifier:
            notifier.close()
        request_id_var.reset(token)


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging(settings.log_level)
    return run(argv, SessionLocal)


if __name__ == "__main__":
    sys.exit(main())
