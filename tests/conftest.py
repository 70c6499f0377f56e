"""Pytest fixtures for testing"""

import pytest
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Generator, List, Tuple
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from chama_engine.api.main import create_app
from chama_engine.domain.models import (
    EventType,
    GuarantorDecision,
    GuarantorNomination,
    LoanApplication,
    LoanConfig,
)
from chama_engine.domain.money import Money
from chama_engine.infrastructure.database.models import Base, Loan
from chama_engine.infrastructure.database.session import build_session_factory
from chama_engine.services.loans import LoanService
from chama_engine.services.rotation import RotationService


# Test database: one shared in-memory SQLite connection
TEST_DATABASE_URL = "sqlite://"
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = build_session_factory(engine)

APPLIED_ON = date(2026, 1, 15)


class FixedClock:
    """Clock pinned to a settable date"""

    def __init__(self, today: date = APPLIED_ON):
        self.current = today

    def now(self) -> datetime:
        return datetime.combine(self.current, time(9, 0), tzinfo=timezone.utc)

    def today(self) -> date:
        return self.current

    def set(self, today: date) -> None:
        self.current = today

    def advance(self, days: int) -> None:
        self.current = self.current + timedelta(days=days)


class RecordingNotifier:
    """Captures published events in memory"""

    def __init__(self):
        self.events: List[Tuple[EventType, Dict[str, Any]]] = []

    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def types(self) -> List[EventType]:
        return [event_type for event_type, _ in self.events]

    def of_type(self, event_type: EventType) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.events if kind is event_type]


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Create test schema and hand out the session factory"""
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def loan_config() -> LoanConfig:
    """Default chama policy: FLAT 10%, 3x savings, 6 months, 5% penalty"""
    return LoanConfig()


@pytest.fixture
def loan_service(session_factory, clock, notifier) -> LoanService:
    return LoanService(session_factory, clock=clock, notifier=notifier)


@pytest.fixture
def rotation_service(session_factory, clock, notifier) -> RotationService:
    return RotationService(session_factory, clock=clock, notifier=notifier)


@pytest.fixture
def application() -> LoanApplication:
    """KES 10,000 over 5 months, guaranteed 6,000 + 5,000"""
    return LoanApplication(
        chama_id="chama_umoja",
        borrower_id="member_wanjiru",
        amount=Money.of("10000", "KES"),
        term_months=5,
        borrower_savings_cents=500_000,
        purpose="school fees",
        guarantors=[
            GuarantorNomination(member_id="member_otieno", amount_cents=600_000, savings_cents=400_000),
            GuarantorNomination(member_id="member_akinyi", amount_cents=500_000, savings_cents=400_000),
        ],
    )


@pytest.fixture
def pending_loan(loan_service: LoanService, application: LoanApplication, loan_config: LoanConfig) -> Loan:
    """Loan waiting on both guarantors"""
    return loan_service.apply_loan(application, loan_config)


@pytest.fixture
def approvable_loan(loan_service: LoanService, pending_loan: Loan) -> Loan:
    """Loan with both guarantees accepted (PENDING_APPROVAL)"""
    for guarantor in pending_loan.guarantors:
        loan_service.respond_guarantor(guarantor.id, guarantor.guarantor_member_id, GuarantorDecision.ACCEPT)
    return loan_service.get_loan(pending_loan.id)


@pytest.fixture
def active_loan(loan_service: LoanService, approvable_loan: Loan) -> Loan:
    """Loan approved on 2026-01-15; installments due on the 15th, February to June"""
    loan_service.approve_loan(approvable_loan.id, "official_treasurer")
    return loan_service.get_loan(approvable_loan.id)


@pytest.fixture
def client() -> TestClient:
    """Create FastAPI test client"""
    return TestClient(create_app())
