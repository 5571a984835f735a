"""Integration tests for bill instance generation"""

import uuid
import pytest
from datetime import date
from expense_engine.domain.exceptions import ConfigurationError, NotFoundError
from expense_engine.domain.models import AmountType, Frequency, InstanceStatus
from expense_engine.infrastructure.database.models import BillInstance, NotificationEvent
from expense_engine.infrastructure.database.repositories import BillInstanceRepository, RecurringBillRepository
from expense_engine.services.generator import generate_bills, mark_overdue_instances, recompute_splits


def _instances(db, bill):
    return db.query(BillInstance).filter(BillInstance.recurring_bill_id == bill.id).all()


def test_generate_splits_equally(db, seed):
    """Test $120 definition with three participants produces one instance with $40 splits"""
    people = [seed.participant(name) for name in ("Ana", "Ben", "Cal")]
    bill = seed.bill(vendor="GitHub", amount_cents=12000, participants=people)

    result = generate_bills(db, periods=["2025-03"])

    assert len(result.created) == 1
    created = result.created[0]
    assert created.period == "2025-03"
    assert created.split_count == 3

    instance = BillInstanceRepository(db).get(created.bill_instance_id)
    assert instance.due_date == date(2025, 3, 15)
    assert instance.status == InstanceStatus.PENDING
    assert [s.amount_cents for s in instance.splits] == [4000, 4000, 4000]
    assert {str(s.participant_id) for s in instance.splits} == {str(p.id) for p in people}
    assert len(_instances(db, bill)) == 1


def test_generate_is_idempotent(db, seed):
    """Test rerunning a pass over the same window creates nothing new"""
    bill = seed.bill(participants=[seed.participant("Ana")])

    first = generate_bills(db, periods=["2025-03", "2025-04"])
    second = generate_bills(db, periods=["2025-03", "2025-04"])

    assert len(first.created) == 2
    assert len(second.created) == 0
    assert second.skipped_existing == 2
    assert len(_instances(db, bill)) == 2


def test_generate_enqueues_new_bill_notification(db, seed):
    seed.bill(vendor="Figma", amount_cents=4500, participants=[seed.participant("Ana")])

    generate_bills(db, periods=["2025-03"])

    events = db.query(NotificationEvent).all()
    assert len(events) == 1
    assert events[0].event_type == "new_bill"
    assert events[0].payload["vendor"] == "Figma"
    assert events[0].payload["amount_cents"] == 4500
    assert events[0].payload["due_date"] == "2025-03-15"


def test_quarterly_only_in_quarter_start_months(db, seed):
    seed.bill(vendor="Insurance", amount_cents=90000, frequency=Frequency.QUARTERLY, due_day=5)

    result = generate_bills(db, periods=["2025-01", "2025-02", "2025-03", "2025-04"])

    assert [c.period for c in result.created] == ["2025-Q1", "2025-Q2"]
    assert result.skipped_not_applicable == 2


def test_variable_without_history_is_skipped(db, seed):
    seed.bill(vendor="AWS", amount_cents=None, amount_type=AmountType.VARIABLE)

    result = generate_bills(db, periods=["2025-03"])

    assert result.created == []
    assert result.skipped_no_amount == 1
    assert result.errors == []


def test_variable_uses_latest_paid_amount(db, seed):
    """Test variable definitions estimate from the most recent paid instance"""
    bill = seed.bill(vendor="AWS", amount_cents=None, amount_type=AmountType.VARIABLE)
    seed.instance(bill, "2025-01", 7000, due_date=date(2025, 1, 15), status=InstanceStatus.PAID)
    seed.instance(bill, "2025-02", 8123, due_date=date(2025, 2, 15), status=InstanceStatus.PAID)

    result = generate_bills(db, periods=["2025-03"])

    assert result.created[0].amount_cents == 8123


def test_misconfigured_definition_does_not_stop_the_pass(db, seed):
    """Test a fixed definition without an amount is reported and others still generate"""
    seed.bill(vendor="Broken", amount_cents=None, amount_type=AmountType.FIXED)
    seed.bill(vendor="Slack", amount_cents=2500)

    result = generate_bills(db, periods=["2025-03"])

    assert [c.vendor for c in result.created] == ["Slack"]
    assert len(result.errors) == 1
    assert result.errors[0].item == "Broken 2025-03"
    assert "no amount" in result.errors[0].reason


def test_concurrent_insert_counts_as_existing(db, seed, monkeypatch):
    """Test the unique (definition, period) constraint settles a lost race"""
    bill = seed.bill()
    seed.instance(bill, "2025-03", 12000, due_date=date(2025, 3, 15))
    monkeypatch.setattr(BillInstanceRepository, "exists", lambda self, bill_id, period: False)

    result = generate_bills(db, periods=["2025-03"])

    assert result.created == []
    assert result.skipped_existing == 1
    assert result.errors == []
    assert len(_instances(db, bill)) == 1


def test_default_splitters_fallback(db, seed):
    """Test definitions without participants split across active expense-sharing participants"""
    ana = seed.participant("Ana")
    ben = seed.participant("Ben")
    seed.participant("Contractor", splits_expenses=False)
    seed.participant("Former", active=False)
    seed.bill(vendor="Notion", amount_cents=1001)

    result = generate_bills(db, periods=["2025-03"])

    instance = BillInstanceRepository(db).get(result.created[0].bill_instance_id)
    assert [str(s.participant_id) for s in instance.splits] == [str(ana.id), str(ben.id)]
    assert [s.amount_cents for s in instance.splits] == [500, 501]


def test_no_participants_tracks_instance_unsplit(db, seed):
    seed.bill(vendor="Zoom", amount_cents=1500)

    result = generate_bills(db, periods=["2025-03"])

    assert result.created[0].split_count == 0
    assert result.errors == []


def test_percentage_participants(db, seed):
    ana = seed.participant("Ana")
    ben = seed.participant("Ben")
    bill = seed.bill(vendor="Office", amount_cents=10000)
    bills = RecurringBillRepository(db)
    bills.add_participant(bill, ana.id, split_percent=70.0)
    bills.add_participant(bill, ben.id)

    result = generate_bills(db, periods=["2025-03"])

    instance = BillInstanceRepository(db).get(result.created[0].bill_instance_id)
    assert [s.amount_cents for s in instance.splits] == [7000, 3000]


def test_rolling_window(db, seed):
    seed.bill(vendor="Linear", amount_cents=800)

    result = generate_bills(db, months_back=1, months_forward=1, today=date(2025, 1, 20))

    assert [c.period for c in result.created] == ["2024-12", "2025-01", "2025-02"]


def test_unknown_definition(db, seed):
    seed.bill()

    with pytest.raises(NotFoundError):
        generate_bills(db, recurring_bill_id=uuid.uuid4(), periods=["2025-03"])


def test_restrict_to_one_definition(db, seed):
    target = seed.bill(vendor="GitHub")
    seed.bill(vendor="Slack", amount_cents=2500)

    result = generate_bills(db, recurring_bill_id=str(target.id), periods=["2025-03"])

    assert [c.vendor for c in result.created] == ["GitHub"]


@pytest.mark.parametrize("period", ["2025-13", "March", "2025-3-1"])
def test_malformed_period(db, period):
    with pytest.raises(ConfigurationError):
        generate_bills(db, periods=[period])


def test_inactive_definitions_are_ignored(db, seed):
    seed.bill(vendor="Old", active=False)

    result = generate_bills(db, periods=["2025-03"])

    assert result.created == []


def test_mark_overdue(db, seed):
    bill = seed.bill()
    late = seed.instance(bill, "2025-02", 12000, due_date=date(2025, 2, 15))
    paid = seed.instance(bill, "2025-01", 12000, due_date=date(2025, 1, 15), status=InstanceStatus.PAID)
    upcoming = seed.instance(bill, "2025-03", 12000, due_date=date(2025, 3, 15))

    count = mark_overdue_instances(db, today=date(2025, 3, 1))

    assert count == 1
    assert late.status == InstanceStatus.OVERDUE
    assert paid.status == InstanceStatus.PAID
    assert upcoming.status == InstanceStatus.PENDING


def test_recompute_splits_after_amount_change(db, seed):
    """Test splits are replaced as a set and still add up"""
    people = [seed.participant(name) for name in ("Ana", "Ben", "Cal")]
    seed.bill(amount_cents=12000, participants=people)
    result = generate_bills(db, periods=["2025-03"])
    instance = BillInstanceRepository(db).get(result.created[0].bill_instance_id)

    instance.amount_cents = 10000
    splits = recompute_splits(db, instance)

    assert [s.amount_cents for s in splits] == [3333, 3333, 3334]
    assert [s.amount_cents for s in instance.splits] == [3333, 3333, 3334]
    assert sum(s.amount_cents for s in instance.splits) == instance.amount_cents
