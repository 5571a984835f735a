"""Skip rule application - resolves pending transactions that are not company expenses"""

import logging
from typing import List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from expense_engine.config import settings
from expense_engine.domain.exceptions import ConfigurationError, InvalidStateError, NotFoundError
from expense_engine.domain.models import (
    ApprovalStatus,
    RuleApplicationResult,
    RuleMatch,
    RuleType,
    SkipDecisionResult,
    TransactionFacts,
    TransactionType,
)
from expense_engine.domain.rules import (
    SkipRule,
    build_rule_name,
    classify,
    derive_pattern,
    rule_from_record,
    rule_identity_key,
    rule_predicate_key,
)
from expense_engine.infrastructure.database.models import LedgerTransaction, TransactionSkipRule, utcnow
from expense_engine.infrastructure.database.repositories import (
    LedgerAccountRepository,
    LedgerTransactionRepository,
    SkipRuleRepository,
    as_uuid,
)
from expense_engine.infrastructure.observability.metrics import record_rule_hit


def transaction_facts(txn: LedgerTransaction) -> TransactionFacts:
    return TransactionFacts(
        transaction_id=str(txn.id),
        account_id=str(txn.ledger_account_id) if txn.ledger_account_id else None,
        amount_cents=txn.amount_cents,
        description=txn.description or "",
        merchant_name=txn.merchant_name,
    )


def identity_of(record: TransactionSkipRule) -> str:
    return rule_identity_key(
        record.rule_type,
        account_id=str(record.ledger_account_id) if record.ledger_account_id else None,
        vendor_pattern=record.vendor_pattern,
        description_pattern=record.description_pattern,
        amount_cents=record.amount_cents,
    )


def predicate_of(record: TransactionSkipRule) -> str:
    return rule_predicate_key(
        record.rule_type,
        account_id=str(record.ledger_account_id) if record.ledger_account_id else None,
        transaction_type=record.transaction_type,
        vendor_pattern=record.vendor_pattern,
        description_pattern=record.description_pattern,
        amount_cents=record.amount_cents,
        amount_variance_percent=record.amount_variance_percent,
        amount_min_cents=record.amount_min_cents,
        amount_max_cents=record.amount_max_cents,
    )


def _coerce_rule_type(value) -> RuleType:
    try:
        return RuleType(value)
    except ValueError as e:
        raise ConfigurationError(f"Unknown rule type: {value!r}") from e


class SkipRuleService:
    """Creates skip rules and applies them to pending transactions"""

    def __init__(self, db: Session):
        self.db = db
        self.rules = SkipRuleRepository(db)
        self.transactions = LedgerTransactionRepository(db)
        self.accounts = LedgerAccountRepository(db)

    def load_rules(self) -> List[SkipRule]:
        """Active rules in evaluation order; misconfigured rows are logged and left out"""
        loaded = []
        for record in self.rules.list_active():
            try:
                loaded.append(rule_from_record(record))
            except ConfigurationError as e:
                logging.warning(
                    f"Ignoring invalid skip rule: {e}",
                    extra={"step": "rule_invalid", "rule_id": str(record.id)},
                )
        return loaded

    def _mark_skipped(self, txn: LedgerTransaction, rule_id, resolved_by: Optional[str]) -> None:
        txn.approval_status = ApprovalStatus.SKIPPED
        txn.skipped_by_rule_id = as_uuid(rule_id) if rule_id is not None else None
        txn.resolved_at = utcnow()
        txn.resolved_by = resolved_by
        self.db.flush()

    def apply_to_transaction(self, txn: LedgerTransaction, rules: List[SkipRule]) -> Optional[RuleMatch]:
        """Skip a PENDING transaction when a rule matches; returns the rule that fired"""
        if txn.approval_status != ApprovalStatus.PENDING:
            return None
        match = classify(transaction_facts(txn), rules)
        if match is None:
            return None
        self._mark_skipped(txn, match.rule_id, resolved_by="rule")
        self.rules.increment_hits(match.rule_id)
        record_rule_hit(match.rule_type)
        return match

    def apply_to_pending(self, exclude_id=None) -> RuleApplicationResult:
        """Re-evaluate every PENDING transaction against all active rules"""
        rules = self.load_rules()
        result = RuleApplicationResult()
        for txn in self.transactions.pending(exclude_id):
            result.processed += 1
            if self.apply_to_transaction(txn, rules) is not None:
                result.skipped += 1
        return result

    def find_active_by_predicate(self, key: str) -> Optional[TransactionSkipRule]:
        """Active rule matching exactly the same transactions, if any"""
        for record in self.rules.list_active():
            if predicate_of(record) == key:
                return record
        return None

    def create_rule(
        self,
        rule_type,
        name: Optional[str] = None,
        reason: Optional[str] = None,
        account_id=None,
        transaction_type: Optional[TransactionType] = None,
        vendor_pattern: Optional[str] = None,
        description_pattern: Optional[str] = None,
        amount_cents: Optional[int] = None,
        amount_variance_percent: Optional[float] = None,
        amount_min_cents: Optional[int] = None,
        amount_max_cents: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> Tuple[TransactionSkipRule, bool]:
        """
        Create a rule, or reuse the active rule with the same predicate.

        Returns:
            (rule, created) where created is False when an existing rule was reused

        Raises:
            ConfigurationError: Missing fields for the rule type
            NotFoundError: Scoping account does not exist
        """
        rule_type = _coerce_rule_type(rule_type)
        account = None
        if account_id is not None:
            account = self.accounts.get(account_id)
            if account is None:
                raise NotFoundError(f"Ledger account {account_id} not found")

        if (
            rule_type == RuleType.VENDOR_AMOUNT
            and amount_variance_percent is None
            and amount_min_cents is None
            and amount_max_cents is None
        ):
            amount_variance_percent = settings.default_amount_variance_percent

        record = TransactionSkipRule(
            name=name,
            reason=reason,
            rule_type=rule_type,
            ledger_account_id=account.id if account is not None else None,
            transaction_type=TransactionType(transaction_type) if transaction_type else None,
            vendor_pattern=vendor_pattern.strip() if vendor_pattern else None,
            description_pattern=description_pattern.strip() if description_pattern else None,
            amount_cents=abs(amount_cents) if amount_cents is not None else None,
            amount_variance_percent=amount_variance_percent,
            amount_min_cents=amount_min_cents,
            amount_max_cents=amount_max_cents,
            created_by=created_by,
            hit_count=0,
            active=True,
        )
        rule_from_record(record)

        record.predicate_key = predicate_of(record)
        existing = self.find_active_by_predicate(record.predicate_key)
        if existing is not None:
            return existing, False

        if not record.name:
            record.name = build_rule_name(
                rule_type,
                pattern=record.vendor_pattern or record.description_pattern,
                amount_cents=record.amount_cents,
                account_label=account.label if account is not None else None,
                transaction_type=record.transaction_type,
            )
        try:
            with self.db.begin_nested():
                self.rules.add(record)
        except IntegrityError:
            # A concurrent request created the same rule between the check and the insert
            existing = self.find_active_by_predicate(record.predicate_key)
            if existing is None:
                raise
            return existing, False

        logging.info(
            f"Skip rule created: {record.name}",
            extra={"step": "rule_created", "rule_id": str(record.id), "rule_type": rule_type.value},
        )
        return record, True

    def skip_transaction(
        self,
        transaction_id,
        create_rule: bool = False,
        rule_type=None,
        scope_to_account: bool = False,
        transaction_type: Optional[TransactionType] = None,
        pattern: Optional[str] = None,
        amount_variance_percent: Optional[float] = None,
        resolved_by: Optional[str] = None,
    ) -> SkipDecisionResult:
        """
        Mark a pending transaction as not a company expense.

        With create_rule, a rule is derived from the transaction's own text and
        immediately applied to every other pending transaction.

        Example:
            "STARBUCKS STORE 0234" → VENDOR rule "STARBUCKS", which also skips
            "STARBUCKS STORE 0099" in the same call (hit_count 2)

        Raises:
            NotFoundError: Unknown transaction
            InvalidStateError: Transaction already resolved
            ConfigurationError: No usable pattern could be derived
        """
        txn = self.transactions.get(transaction_id)
        if txn is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if txn.approval_status != ApprovalStatus.PENDING:
            raise InvalidStateError(f"Transaction {transaction_id} is already {txn.approval_status.value}")

        if not create_rule:
            self._mark_skipped(txn, None, resolved_by)
            return SkipDecisionResult(rule_created=False)

        rule_type = _coerce_rule_type(rule_type or RuleType.VENDOR)
        fields = {}
        if rule_type in (RuleType.VENDOR, RuleType.VENDOR_AMOUNT):
            fields["vendor_pattern"] = pattern or derive_pattern(txn.description, txn.merchant_name)
        if rule_type == RuleType.VENDOR_AMOUNT:
            fields["amount_cents"] = abs(txn.amount_cents)
            fields["amount_variance_percent"] = amount_variance_percent
        if rule_type == RuleType.DESCRIPTION_PATTERN:
            fields["description_pattern"] = pattern or derive_pattern(txn.description)

        scoped = scope_to_account or rule_type == RuleType.ACCOUNT
        rule, created = self.create_rule(
            rule_type,
            account_id=txn.ledger_account_id if scoped else None,
            transaction_type=transaction_type,
            created_by=resolved_by,
            **fields,
        )

        self._mark_skipped(txn, rule.id, resolved_by)
        self.rules.increment_hits(rule.id)
        record_rule_hit(rule_type)

        applied = self.apply_to_pending(exclude_id=txn.id)
        return SkipDecisionResult(
            rule_created=created,
            rule_id=str(rule.id),
            additional_skipped=applied.skipped,
        )

    def deactivate_rule(self, rule_id, reason: Optional[str] = None) -> TransactionSkipRule:
        """
        Soft-delete a rule. Transactions it resolved keep their reference.

        Raises:
            NotFoundError: Unknown rule
        """
        rule = self.rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Skip rule {rule_id} not found")
        if rule.active:
            rule.active = False
            rule.deactivated_at = utcnow()
            rule.deactivation_reason = reason or "Deactivated by operator"
            self.db.flush()
        return rule


def apply_rules_to_pending(db: Session) -> RuleApplicationResult:
    result = SkipRuleService(db).apply_to_pending()
    logging.info(
        "Skip rules applied to pending transactions",
        extra={"step": "apply_rules", "processed": result.processed, "skipped": result.skipped},
    )
    return result
