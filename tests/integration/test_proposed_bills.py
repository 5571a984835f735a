"""Integration tests for the proposed bill review workflow"""

import uuid
import pytest
from datetime import date
from expense_engine.domain.exceptions import InvalidStateError, NotFoundError
from expense_engine.domain.models import AmountType, Frequency, InstanceStatus, ProposedBillStatus
from expense_engine.infrastructure.database.models import NotificationEvent, RecurringBill
from expense_engine.infrastructure.database.repositories import BillInstanceRepository, RecurringBillRepository
from expense_engine.services.generator import generate_bills
from expense_engine.services.proposed_bills import ProposedBillService


@pytest.fixture
def service(db):
    return ProposedBillService(db)


def _events(db):
    return [e.event_type for e in db.query(NotificationEvent).order_by(NotificationEvent.created_at).all()]


def test_ingest_is_idempotent_per_source_ref(service):
    first, created = service.ingest("gmail", "msg-1", "Comcast", amount_cents=8999, due_date=date(2025, 3, 20))
    again, created_again = service.ingest("gmail", "msg-1", "Comcast", amount_cents=8999)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert first.status == ProposedBillStatus.PENDING


def test_approve_creates_definition_and_instance(db, seed, service):
    """Test an unknown vendor gets a variable monthly definition and a split instance"""
    seed.participant("Ana")
    seed.participant("Ben")
    record, _ = service.ingest("gmail", "msg-1", "Comcast", amount_cents=8999, due_date=date(2025, 3, 20))

    result = service.approve(record.id, reviewed_by="ops")

    assert result["action"] == "created"
    bill = RecurringBillRepository(db).get(result["recurring_bill_id"])
    assert bill.vendor == "Comcast"
    assert bill.frequency == Frequency.MONTHLY
    assert bill.amount_type == AmountType.VARIABLE
    assert bill.due_day == 20

    instance = BillInstanceRepository(db).get(result["bill_instance_id"])
    assert instance.period == "2025-03"
    assert instance.amount_cents == 8999
    assert [s.amount_cents for s in instance.splits] == [4499, 4500]
    assert record.status == ProposedBillStatus.APPROVED
    assert record.bill_instance_id == instance.id
    assert _events(db) == ["new_bill"]


def test_approve_updates_existing_instance(db, seed, service):
    """Test approval reuses the definition matched by vendor and the instance for the period"""
    seed.bill(vendor="GitHub", amount_cents=12000, participants=[seed.participant("Ana"), seed.participant("Ben")])
    generated = generate_bills(db, periods=["2025-03"]).created[0]
    record, _ = service.ingest("gmail", "msg-2", "Git Hub", amount_cents=12500, due_date=date(2025, 3, 15))

    result = service.approve(record.id)

    assert result["action"] == "updated"
    assert result["bill_instance_id"] == generated.bill_instance_id
    instance = BillInstanceRepository(db).get(generated.bill_instance_id)
    assert instance.amount_cents == 12500
    assert [s.amount_cents for s in instance.splits] == [6250, 6250]
    assert db.query(RecurringBill).count() == 1


def test_approve_paid_bill_marks_instance_paid(db, seed, service):
    seed.participant("Ana")
    record, _ = service.ingest(
        "gmail", "msg-3", "Comcast", amount_cents=8999, due_date=date(2025, 3, 20),
        is_paid=True, payment_method="Amex ****1001",
    )

    result = service.approve(record.id)

    assert result["action"] == "marked_paid"
    instance = BillInstanceRepository(db).get(result["bill_instance_id"])
    assert instance.status == InstanceStatus.PAID
    assert instance.paid_via == "Amex ****1001"
    assert all(s.status == InstanceStatus.PAID for s in instance.splits)
    assert _events(db) == ["payment_confirmed"]


def test_approve_with_overrides(db, seed, service):
    ana = seed.participant("Ana")
    seed.participant("Ben")
    record, _ = service.ingest("docs", "invoice-7", "ACME Inc", amount_cents=1000)

    result = service.approve(
        record.id,
        vendor="Acme",
        amount_cents=10000,
        due_date=date(2025, 4, 1),
        split_overrides={str(ana.id): 7000},
    )

    instance = BillInstanceRepository(db).get(result["bill_instance_id"])
    assert instance.vendor == "Acme"
    assert instance.period == "2025-04"
    assert [s.amount_cents for s in instance.splits] == [7000, 3000]


def test_approve_twice(service):
    record, _ = service.ingest("gmail", "msg-4", "Comcast", amount_cents=100, due_date=date(2025, 3, 20))
    service.approve(record.id)

    with pytest.raises(InvalidStateError):
        service.approve(record.id)


def test_approve_unknown(service):
    with pytest.raises(NotFoundError):
        service.approve(uuid.uuid4())


def test_approve_unknown_definition(service):
    record, _ = service.ingest("gmail", "msg-5", "Comcast", amount_cents=100, due_date=date(2025, 3, 20))

    with pytest.raises(NotFoundError):
        service.approve(record.id, recurring_bill_id=uuid.uuid4())


def test_skip_with_rule_rejects_same_vendor(service):
    """Test skipping with a rule also rejects other pending bills from that vendor"""
    target, _ = service.ingest("gmail", "msg-1", "Comcast")
    same_vendor, _ = service.ingest("gmail", "msg-2", "Comcast Business")
    other, _ = service.ingest("gmail", "msg-3", "PG&E")

    result = service.skip(target.id, create_rule=True)

    assert result == {"rule_created": True, "additional_skipped": 1}
    assert target.rejection_reason == "Skipped"
    assert same_vendor.status == ProposedBillStatus.REJECTED
    assert same_vendor.rejection_reason == 'Auto-skipped: matches pattern "Comcast"'
    assert other.status == ProposedBillStatus.PENDING


def test_skip_without_rule(service):
    target, _ = service.ingest("gmail", "msg-1", "Comcast")
    sibling, _ = service.ingest("gmail", "msg-2", "Comcast")

    result = service.skip(target.id, reason="Personal")

    assert result == {"rule_created": False, "additional_skipped": 0}
    assert target.rejection_reason == "Personal"
    assert sibling.status == ProposedBillStatus.PENDING
    with pytest.raises(InvalidStateError):
        service.skip(target.id)
