"""Integration tests for duplicate rule and definition consolidation"""

import pytest
from datetime import date, datetime, timezone
from expense_engine.domain.exceptions import ConfigurationError
from expense_engine.domain.models import ApprovalStatus, RuleType
from expense_engine.infrastructure.database.models import BillInstance, LedgerTransaction, TransactionSkipRule
from expense_engine.services.consolidation import ConsolidationService


def _at(month: int) -> datetime:
    return datetime(2025, month, 1, tzinfo=timezone.utc)


@pytest.fixture
def duplicate_rules(seed):
    """Three spellings of the same vendor rule, each with skipped transactions"""
    account = seed.account()
    rules = [
        seed.rule(RuleType.VENDOR, created_at=_at(1), vendor_pattern="starbucks", hit_count=3),
        seed.rule(RuleType.VENDOR, created_at=_at(2), vendor_pattern="Starbucks ", hit_count=2),
        seed.rule(RuleType.VENDOR, created_at=_at(3), vendor_pattern="STARBUCKS", hit_count=1),
    ]
    for rule in rules[1:]:
        seed.transaction(
            account, -600, "STARBUCKS STORE 0234",
            approval_status=ApprovalStatus.SKIPPED, skipped_by_rule_id=rule.id,
        )
    return rules


@pytest.fixture
def duplicate_bills(seed):
    """Two definitions for the same vendor with equal instance counts; the older one is kept"""
    ana = seed.participant("Ana")
    ben = seed.participant("Ben")
    keep = seed.bill(vendor="GitHub", participants=[ana], created_at=_at(1))
    dup = seed.bill(vendor="Git-Hub", name="GitHub (dup)", participants=[ana, ben], created_at=_at(2))
    seed.instance(keep, "2025-01", 12000, due_date=date(2025, 1, 15))
    seed.instance(keep, "2025-02", 12000, due_date=date(2025, 2, 15))
    seed.instance(dup, "2025-02", 12000, due_date=date(2025, 2, 15))
    seed.instance(dup, "2025-03", 12000, due_date=date(2025, 3, 15))
    return keep, dup, ana, ben


def test_preview_does_not_mutate(db, duplicate_rules, duplicate_bills):
    preview = ConsolidationService(db).preview()

    assert preview["summary"] == {"duplicate_rules": 2, "duplicate_bills": 1}
    rule_group = preview["duplicate_rule_groups"][0]
    assert rule_group["keep"]["id"] == str(duplicate_rules[0].id)
    assert len(rule_group["duplicates"]) == 2
    bill_group = preview["duplicate_bill_groups"][0]
    assert bill_group["keep"]["instance_count"] == 2
    assert bill_group["duplicates"][0]["name"] == "GitHub (dup)"

    assert all(rule.active for rule in db.query(TransactionSkipRule).all())
    assert db.query(BillInstance).filter(BillInstance.recurring_bill_id == duplicate_bills[0].id).count() == 2


def test_consolidate_rules(db, duplicate_rules):
    """Test duplicates fold into the oldest rule with hits summed and references re-pointed"""
    keep, *duplicates = duplicate_rules

    result = ConsolidationService(db).consolidate_rules()

    assert result == {"rules_merged": 2, "transactions_repointed": 2}
    assert keep.hit_count == 6
    for rule in duplicates:
        assert rule.active is False
        assert rule.hit_count == 0
        assert rule.merged_into_id == keep.id
        assert rule.deactivation_reason == f"Merged into duplicate rule {keep.id}"

    inactive_ids = [rule.id for rule in duplicates]
    assert db.query(LedgerTransaction).filter(LedgerTransaction.skipped_by_rule_id.in_(inactive_ids)).count() == 0
    assert db.query(LedgerTransaction).filter(LedgerTransaction.skipped_by_rule_id == keep.id).count() == 2


def test_consolidate_rules_twice_merges_nothing(db, duplicate_rules):
    service = ConsolidationService(db)
    service.consolidate_rules()

    assert service.consolidate_rules() == {"rules_merged": 0, "transactions_repointed": 0}


def test_consolidate_bills(db, duplicate_bills):
    """Test instances move unless the kept definition owns the period, participants dedupe"""
    keep, dup, ana, ben = duplicate_bills

    result = ConsolidationService(db).consolidate_bills()

    assert result == {
        "bills_merged": 1,
        "instances_moved": 1,
        "instances_conflicting": 1,
        "participants_moved": 1,
    }
    assert dup.active is False
    assert dup.merged_into_id == keep.id
    assert dup.deactivation_reason == f"Merged into GitHub ({keep.id})"

    kept_periods = sorted(
        i.period for i in db.query(BillInstance).filter(BillInstance.recurring_bill_id == keep.id)
    )
    assert kept_periods == ["2025-01", "2025-02", "2025-03"]
    left_behind = db.query(BillInstance).filter(BillInstance.recurring_bill_id == dup.id).all()
    assert [i.period for i in left_behind] == ["2025-02"]

    db.expire_all()
    assert sorted(str(row.participant_id) for row in keep.participants) == sorted([str(ana.id), str(ben.id)])
    assert dup.participants == []


def test_consolidate_bills_twice_merges_nothing(db, duplicate_bills):
    service = ConsolidationService(db)
    service.consolidate_bills()

    assert service.consolidate_bills()["bills_merged"] == 0


def test_different_categories_are_not_duplicates(db, seed):
    seed.bill(vendor="Google", vendor_category="SOFTWARE")
    seed.bill(vendor="Google", vendor_category="ADVERTISING")

    assert ConsolidationService(db).find_duplicate_bills() == []


def test_apply_all(db, seed, duplicate_rules):
    account = db.query(LedgerTransaction).first().ledger_account
    pending = seed.transaction(account, -450, "STARBUCKS STORE 0099")

    result = ConsolidationService(db).apply("all")

    assert result["action"] == "all"
    assert result["rules_applied"] == {"processed": 1, "skipped": 1}
    assert result["rules_merged"] == 2
    assert result["bills_merged"] == 0
    assert pending.approval_status == ApprovalStatus.SKIPPED
    assert pending.skipped_by_rule_id == duplicate_rules[0].id


def test_apply_unknown_action(db):
    with pytest.raises(ConfigurationError):
        ConsolidationService(db).apply("everything")
