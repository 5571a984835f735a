"""Pytest fixtures for testing"""

import uuid
import pytest
from datetime import date, datetime, timezone
from typing import Generator, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from expense_engine.api.main import create_app
from expense_engine.api.dependencies import get_job_runner
from expense_engine.domain.models import (
    AmountType,
    ApprovalStatus,
    Frequency,
    InstanceStatus,
    RuleType,
)
from expense_engine.infrastructure.database.models import (
    Base,
    BillInstance,
    LedgerAccount,
    LedgerTransaction,
    Participant,
    RecurringBill,
    RecurringBillParticipant,
    TransactionSkipRule,
)
from expense_engine.infrastructure.database.session import get_db
from expense_engine.services.scheduler import JobRunner


# In-memory test database; StaticPool lets every session (test, runner, lock) see the same data
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Seed:
    """Builders for test records; each call flushes so ids are available"""

    def __init__(self, db: Session):
        self.db = db

    def _add(self, record):
        self.db.add(record)
        self.db.flush()
        return record

    def participant(self, name: str, splits_expenses: bool = True, active: bool = True, **kwargs) -> Participant:
        return self._add(Participant(name=name, splits_expenses=splits_expenses, active=active, **kwargs))

    def bill(
        self,
        vendor: str = "GitHub",
        amount_cents: Optional[int] = 12000,
        frequency: Frequency = Frequency.MONTHLY,
        amount_type: AmountType = AmountType.FIXED,
        due_day: int = 15,
        participants=(),
        **kwargs,
    ) -> RecurringBill:
        bill = self._add(
            RecurringBill(
                name=kwargs.pop("name", vendor),
                vendor=vendor,
                frequency=frequency,
                amount_type=amount_type,
                fixed_amount_cents=amount_cents,
                due_day=due_day,
                **kwargs,
            )
        )
        for participant in participants:
            self._add(RecurringBillParticipant(recurring_bill_id=bill.id, participant_id=participant.id))
        return bill

    def instance(
        self,
        bill: Optional[RecurringBill],
        period: str,
        amount_cents: int,
        due_date: Optional[date] = None,
        status: InstanceStatus = InstanceStatus.PENDING,
        **kwargs,
    ) -> BillInstance:
        return self._add(
            BillInstance(
                recurring_bill_id=bill.id if bill is not None else None,
                vendor=kwargs.pop("vendor", bill.vendor if bill is not None else "Unknown"),
                amount_cents=amount_cents,
                due_date=due_date,
                period=period,
                status=status,
                **kwargs,
            )
        )

    def account(self, external_account_id: str = "acct_ops", institution_name: str = "Mercury", last4: str = "4321") -> LedgerAccount:
        return self._add(
            LedgerAccount(
                external_account_id=external_account_id,
                institution_name=institution_name,
                account_last4=last4,
            )
        )

    def transaction(
        self,
        account: LedgerAccount,
        amount_cents: int,
        description: str,
        transacted_at: Optional[datetime] = None,
        merchant_name: Optional[str] = None,
        approval_status: ApprovalStatus = ApprovalStatus.PENDING,
        **kwargs,
    ) -> LedgerTransaction:
        return self._add(
            LedgerTransaction(
                ledger_account_id=account.id,
                external_id=kwargs.pop("external_id", f"ext_{uuid.uuid4().hex[:12]}"),
                amount_cents=amount_cents,
                description=description,
                merchant_name=merchant_name,
                transacted_at=transacted_at or datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc),
                approval_status=approval_status,
                **kwargs,
            )
        )

    def rule(self, rule_type: RuleType, created_at: Optional[datetime] = None, **kwargs) -> TransactionSkipRule:
        if created_at is not None:
            kwargs["created_at"] = created_at
        return self._add(
            TransactionSkipRule(
                name=kwargs.pop("name", f"{rule_type.value} rule"),
                rule_type=rule_type,
                hit_count=kwargs.pop("hit_count", 0),
                **kwargs,
            )
        )


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db: Session) -> Seed:
    return Seed(db)


@pytest.fixture
def runner(db: Session) -> JobRunner:
    """Job runner whose sessions share the test database"""
    return JobRunner(session_factory=TestingSessionLocal)


@pytest.fixture
def client(db: Session, runner: JobRunner) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_runner] = lambda: runner
    return TestClient(app)
