"""Consolidation - merges duplicate skip rules and duplicate recurring-bill definitions"""

import logging
from typing import Any, Dict, List, Tuple
from sqlalchemy.orm import Session

from expense_engine.domain.exceptions import ConfigurationError
from expense_engine.domain.matching import definition_key
from expense_engine.infrastructure.database.models import RecurringBill, TransactionSkipRule, utcnow
from expense_engine.infrastructure.database.repositories import (
    BillInstanceRepository,
    LedgerTransactionRepository,
    RecurringBillRepository,
    SkipRuleRepository,
)
from expense_engine.infrastructure.observability.metrics import consolidation_merges_counter
from expense_engine.services.skip_rules import apply_rules_to_pending, identity_of

CONSOLIDATION_ACTIONS = ("rules", "bills", "apply-rules", "all")

RuleGroup = Tuple[str, TransactionSkipRule, List[TransactionSkipRule]]
BillGroup = Tuple[str, RecurringBill, List[RecurringBill], Dict[Any, int]]


def _rule_summary(rule: TransactionSkipRule) -> Dict[str, Any]:
    return {
        "id": str(rule.id),
        "name": rule.name,
        "rule_type": rule.rule_type.value,
        "hit_count": rule.hit_count or 0,
    }


def _bill_summary(bill: RecurringBill, instance_count: int) -> Dict[str, Any]:
    return {
        "id": str(bill.id),
        "name": bill.name,
        "vendor": bill.vendor,
        "instance_count": instance_count,
    }


class ConsolidationService:
    """
    Duplicate detection and merge for rules and definitions.

    Requirements:
    - Preview never mutates
    - Apply keeps one canonical record per group and deactivates the rest
    - Deactivated records drop out of grouping, so a second run merges nothing
    """

    def __init__(self, db: Session):
        self.db = db
        self.rules = SkipRuleRepository(db)
        self.bills = RecurringBillRepository(db)
        self.instances = BillInstanceRepository(db)
        self.transactions = LedgerTransactionRepository(db)

    def find_duplicate_rules(self) -> List[RuleGroup]:
        """Active rules grouped by identity; the oldest rule of each group is kept"""
        groups: Dict[str, List[TransactionSkipRule]] = {}
        for rule in self.rules.list_active():
            groups.setdefault(identity_of(rule), []).append(rule)
        return [(key, members[0], members[1:]) for key, members in groups.items() if len(members) > 1]

    def find_duplicate_bills(self) -> List[BillGroup]:
        """Active definitions grouped by normalized vendor + category; most instances wins, then oldest"""
        groups: Dict[str, List[RecurringBill]] = {}
        for bill in self.bills.list_active():
            groups.setdefault(definition_key(bill.vendor, bill.vendor_category), []).append(bill)

        duplicates = []
        for key, members in groups.items():
            if len(members) < 2:
                continue
            counts = {bill.id: self.bills.count_instances(bill.id) for bill in members}
            ranked = sorted(members, key=lambda b: (-counts[b.id], b.created_at, str(b.id)))
            duplicates.append((key, ranked[0], ranked[1:], counts))
        return duplicates

    def preview(self) -> Dict[str, Any]:
        rule_groups = self.find_duplicate_rules()
        bill_groups = self.find_duplicate_bills()
        return {
            "duplicate_rule_groups": [
                {
                    "key": key,
                    "keep": _rule_summary(keep),
                    "duplicates": [_rule_summary(rule) for rule in duplicates],
                }
                for key, keep, duplicates in rule_groups
            ],
            "duplicate_bill_groups": [
                {
                    "key": key,
                    "keep": _bill_summary(keep, counts[keep.id]),
                    "duplicates": [_bill_summary(bill, counts[bill.id]) for bill in duplicates],
                }
                for key, keep, duplicates, counts in bill_groups
            ],
            "summary": {
                "duplicate_rules": sum(len(group[2]) for group in rule_groups),
                "duplicate_bills": sum(len(group[2]) for group in bill_groups),
            },
        }

    def consolidate_rules(self) -> Dict[str, int]:
        """
        Merge each duplicate rule group into its oldest rule.

        Hit counts move to the kept rule and every transaction that referenced a
        duplicate is re-pointed, so no reference is left on a deactivated rule.
        """
        merged = repointed = 0
        now = utcnow()
        for key, keep, duplicates in self.find_duplicate_rules():
            keep.hit_count = (keep.hit_count or 0) + sum(rule.hit_count or 0 for rule in duplicates)
            for rule in duplicates:
                repointed += self.transactions.repoint_rule(rule.id, keep.id)
                rule.hit_count = 0
                rule.active = False
                rule.deactivated_at = now
                rule.deactivation_reason = f"Merged into duplicate rule {keep.id}"
                rule.merged_into_id = keep.id
                merged += 1
                consolidation_merges_counter.labels(kind="rule").inc()
            self.db.flush()
            logging.info(
                f"Merged {len(duplicates)} duplicate skip rules into {keep.name}",
                extra={"step": "merge_rules", "key": key, "kept_rule_id": str(keep.id)},
            )
        return {"rules_merged": merged, "transactions_repointed": repointed}

    def consolidate_bills(self) -> Dict[str, int]:
        """
        Merge each duplicate definition group into the kept definition.

        Instances move unless the kept definition already owns that period; those
        conflicting instances stay on the deactivated duplicate. Participant rows
        already present on the kept definition are dropped instead of copied.
        """
        merged = moved = conflicting = participants_moved = 0
        now = utcnow()
        for key, keep, duplicates, _ in self.find_duplicate_bills():
            kept_periods = {instance.period for instance in keep.instances}
            kept_participants = {row.participant_id for row in keep.participants}

            for bill in duplicates:
                movable = []
                for instance in bill.instances:
                    if instance.period in kept_periods:
                        conflicting += 1
                        continue
                    movable.append(instance.id)
                    kept_periods.add(instance.period)
                moved += self.instances.move_to_definition(movable, keep.id)

                for row in list(bill.participants):
                    bill.participants.remove(row)
                    if row.participant_id not in kept_participants:
                        keep.participants.append(row)
                        kept_participants.add(row.participant_id)
                        participants_moved += 1

                bill.active = False
                bill.deactivated_at = now
                bill.deactivation_reason = f"Merged into {keep.name} ({keep.id})"
                bill.merged_into_id = keep.id
                merged += 1
                consolidation_merges_counter.labels(kind="bill").inc()

            self.db.flush()
            logging.info(
                f"Merged {len(duplicates)} duplicate recurring bills into {keep.name}",
                extra={"step": "merge_bills", "key": key, "kept_bill_id": str(keep.id)},
            )
        return {
            "bills_merged": merged,
            "instances_moved": moved,
            "instances_conflicting": conflicting,
            "participants_moved": participants_moved,
        }

    def apply(self, action: str) -> Dict[str, Any]:
        """
        Run one consolidation action: rules | bills | apply-rules | all.

        Raises:
            ConfigurationError: Unknown action
        """
        if action not in CONSOLIDATION_ACTIONS:
            raise ConfigurationError(f"Unknown consolidation action: {action!r}")

        results: Dict[str, Any] = {"action": action}
        if action in ("apply-rules", "all"):
            applied = apply_rules_to_pending(self.db)
            results["rules_applied"] = {"processed": applied.processed, "skipped": applied.skipped}
        if action in ("rules", "all"):
            results.update(self.consolidate_rules())
        if action in ("bills", "all"):
            results.update(self.consolidate_bills())
        return results
