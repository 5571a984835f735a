"""Data access layer for bills, transactions, skip rules and the notification outbox"""

import uuid
from datetime import date, datetime
from typing import Iterable, List, Optional
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from expense_engine.infrastructure.database.models import (
    Participant,
    RecurringBill,
    RecurringBillParticipant,
    BillInstance,
    BillSplit,
    LedgerAccount,
    LedgerTransaction,
    TransactionSkipRule,
    ProposedBill,
    NotificationEvent,
    utcnow,
)
from expense_engine.domain.models import (
    InstanceStatus,
    ApprovalStatus,
    AccountStatus,
    ProposedBillStatus,
    SplitParticipant,
    SplitAmount,
    LedgerEntry,
    NotificationType,
)
from expense_engine.domain.matching import normalize_vendor


def as_uuid(value) -> uuid.UUID:
    """
    Coerce an identifier to UUID.

    Raises:
        ValueError: Not a valid UUID
    """
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class ParticipantRepository:
    """Repository for expense-sharing participants"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, name: str, email: Optional[str] = None, splits_expenses: bool = True) -> Participant:
        participant = Participant(name=name, email=email, splits_expenses=splits_expenses)
        self.db.add(participant)
        self.db.flush()
        return participant

    def default_splitters(self) -> List[SplitParticipant]:
        """All active participants who share expenses, in creation order"""
        rows = (
            self.db.query(Participant)
            .filter(Participant.active.is_(True), Participant.splits_expenses.is_(True))
            .order_by(Participant.created_at, Participant.id)
            .all()
        )
        return [SplitParticipant(participant_id=str(p.id)) for p in rows]


class RecurringBillRepository:
    """Repository for recurring bill definitions"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, bill_id) -> Optional[RecurringBill]:
        return self.db.get(RecurringBill, as_uuid(bill_id))

    def list_active(self, bill_id=None) -> List[RecurringBill]:
        query = self.db.query(RecurringBill).filter(RecurringBill.active.is_(True))
        if bill_id is not None:
            query = query.filter(RecurringBill.id == as_uuid(bill_id))
        return query.order_by(RecurringBill.created_at, RecurringBill.id).all()

    def add_participant(self, bill: RecurringBill, participant_id, split_percent: Optional[float] = None) -> None:
        self.db.add(
            RecurringBillParticipant(
                recurring_bill_id=bill.id,
                participant_id=as_uuid(participant_id),
                split_percent=split_percent,
            )
        )
        self.db.flush()

    def split_participants(self, bill: RecurringBill) -> List[SplitParticipant]:
        """Default participants configured on the definition (may be empty)"""
        return [
            SplitParticipant(participant_id=str(row.participant_id), percent=row.split_percent)
            for row in bill.participants
        ]

    def count_instances(self, bill_id) -> int:
        return (
            self.db.query(func.count(BillInstance.id))
            .filter(BillInstance.recurring_bill_id == as_uuid(bill_id))
            .scalar()
        )

    def latest_paid_amount(self, bill_id) -> Optional[int]:
        """Amount of the most recent PAID instance, used to estimate variable bills"""
        instance = (
            self.db.query(BillInstance)
            .filter(
                BillInstance.recurring_bill_id == as_uuid(bill_id),
                BillInstance.status == InstanceStatus.PAID,
                BillInstance.amount_cents > 0,
            )
            .order_by(BillInstance.due_date.desc(), BillInstance.created_at.desc())
            .first()
        )
        return instance.amount_cents if instance else None

    def find_active_by_vendor(self, vendor: str) -> Optional[RecurringBill]:
        """Oldest active definition whose normalized vendor equals the given vendor"""
        wanted = normalize_vendor(vendor)
        for bill in self.list_active():
            if normalize_vendor(bill.vendor) == wanted:
                return bill
        return None


class BillInstanceRepository:
    """Repository for bill instances and their splits"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, instance_id) -> Optional[BillInstance]:
        return self.db.get(BillInstance, as_uuid(instance_id))

    def find(self, recurring_bill_id, period: str) -> Optional[BillInstance]:
        return (
            self.db.query(BillInstance)
            .filter(
                BillInstance.recurring_bill_id == as_uuid(recurring_bill_id),
                BillInstance.period == period,
            )
            .first()
        )

    def exists(self, recurring_bill_id, period: str) -> bool:
        return self.find(recurring_bill_id, period) is not None

    def create_with_splits(
        self,
        bill: Optional[RecurringBill],
        vendor: str,
        period: str,
        amount_cents: int,
        due_date: Optional[date],
        splits: Iterable[SplitAmount],
        status: InstanceStatus = InstanceStatus.PENDING,
        vendor_category: Optional[str] = None,
    ) -> BillInstance:
        """
        Insert an instance together with its splits.

        Raises:
            IntegrityError: An instance already exists for (definition, period)
        """
        instance = BillInstance(
            recurring_bill_id=bill.id if bill is not None else None,
            vendor=vendor,
            vendor_category=vendor_category or (bill.vendor_category if bill is not None else None),
            amount_cents=amount_cents,
            due_date=due_date,
            period=period,
            status=status,
        )
        self.db.add(instance)
        self.db.flush()
        self.add_splits(instance, splits)
        return instance

    def add_splits(self, instance: BillInstance, splits: Iterable[SplitAmount]) -> None:
        for position, split in enumerate(splits):
            self.db.add(
                BillSplit(
                    bill_instance_id=instance.id,
                    participant_id=as_uuid(split.participant_id),
                    position=position,
                    amount_cents=split.amount_cents,
                    percent=split.percent,
                    status=instance.status if instance.status == InstanceStatus.PAID else InstanceStatus.PENDING,
                    paid_at=instance.paid_at if instance.status == InstanceStatus.PAID else None,
                )
            )
        self.db.flush()

    def delete_splits(self, instance: BillInstance) -> None:
        self.db.query(BillSplit).filter(BillSplit.bill_instance_id == instance.id).delete(synchronize_session="fetch")
        self.db.flush()
        self.db.expire(instance, ["splits"])

    def open_instances(self) -> List[BillInstance]:
        """Instances still awaiting payment"""
        return (
            self.db.query(BillInstance)
            .filter(BillInstance.status.in_([InstanceStatus.PENDING, InstanceStatus.OVERDUE]))
            .order_by(BillInstance.due_date)
            .all()
        )

    def mark_paid(
        self,
        instance: BillInstance,
        paid_at: datetime,
        paid_via: Optional[str] = None,
        settled_by_external_id: Optional[str] = None,
    ) -> None:
        """Settle an instance and cascade PAID to all of its splits"""
        instance.status = InstanceStatus.PAID
        instance.paid_at = paid_at
        instance.paid_via = paid_via
        if settled_by_external_id:
            instance.settled_by_external_id = settled_by_external_id
        for split in instance.splits:
            split.status = InstanceStatus.PAID
            split.paid_at = paid_at
        self.db.flush()

    def mark_overdue(self, today: date) -> int:
        result = self.db.execute(
            update(BillInstance)
            .where(BillInstance.status == InstanceStatus.PENDING, BillInstance.due_date < today)
            .values(status=InstanceStatus.OVERDUE)
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
        return result.rowcount or 0

    def move_to_definition(self, instance_ids: List[uuid.UUID], recurring_bill_id) -> int:
        if not instance_ids:
            return 0
        result = self.db.execute(
            update(BillInstance)
            .where(BillInstance.id.in_(instance_ids))
            .values(recurring_bill_id=as_uuid(recurring_bill_id))
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
        return result.rowcount or 0


class LedgerAccountRepository:
    """Repository for connected ledger accounts"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id) -> Optional[LedgerAccount]:
        return self.db.get(LedgerAccount, as_uuid(account_id))

    def list_active(self, account_id=None) -> List[LedgerAccount]:
        query = self.db.query(LedgerAccount).filter(LedgerAccount.status == AccountStatus.ACTIVE)
        if account_id is not None:
            query = query.filter(LedgerAccount.id == as_uuid(account_id))
        return query.order_by(LedgerAccount.created_at).all()

    def mark_synced(self, account: LedgerAccount) -> None:
        account.last_sync_at = utcnow()
        account.last_sync_error = None
        self.db.flush()

    def mark_sync_failed(self, account: LedgerAccount, error: str) -> None:
        account.last_sync_error = error
        self.db.flush()


class LedgerTransactionRepository:
    """Repository for observed ledger transactions"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, transaction_id) -> Optional[LedgerTransaction]:
        return self.db.get(LedgerTransaction, as_uuid(transaction_id))

    def get_by_external_id(self, external_id: str) -> Optional[LedgerTransaction]:
        return self.db.query(LedgerTransaction).filter(LedgerTransaction.external_id == external_id).first()

    def insert_if_new(self, account: LedgerAccount, entry: LedgerEntry) -> Optional[LedgerTransaction]:
        """
        Upsert by external id: returns the new row, or None when the transaction is already stored.

        The unique constraint on external_id settles races between concurrent syncs.
        """
        if self.get_by_external_id(entry.external_id) is not None:
            return None
        txn = LedgerTransaction(
            ledger_account_id=account.id,
            external_id=entry.external_id,
            amount_cents=entry.amount_cents,
            description=entry.description,
            merchant_name=entry.merchant_name,
            transacted_at=entry.transacted_at,
            posted_at=entry.posted_at,
            source_status=entry.status,
            approval_status=ApprovalStatus.PENDING,
        )
        try:
            with self.db.begin_nested():
                self.db.add(txn)
                self.db.flush()
        except IntegrityError:
            return None
        return txn

    def pending(self, exclude_id=None) -> List[LedgerTransaction]:
        query = self.db.query(LedgerTransaction).filter(LedgerTransaction.approval_status == ApprovalStatus.PENDING)
        if exclude_id is not None:
            query = query.filter(LedgerTransaction.id != as_uuid(exclude_id))
        return query.order_by(LedgerTransaction.transacted_at, LedgerTransaction.id).all()

    def repoint_rule(self, old_rule_id, new_rule_id) -> int:
        result = self.db.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.skipped_by_rule_id == as_uuid(old_rule_id))
            .values(skipped_by_rule_id=as_uuid(new_rule_id))
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
        return result.rowcount or 0


class SkipRuleRepository:
    """Repository for transaction skip rules"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, rule_id) -> Optional[TransactionSkipRule]:
        return self.db.get(TransactionSkipRule, as_uuid(rule_id))

    def list_all(self) -> List[TransactionSkipRule]:
        return (
            self.db.query(TransactionSkipRule)
            .order_by(TransactionSkipRule.created_at.desc())
            .all()
        )

    def list_active(self) -> List[TransactionSkipRule]:
        """Active rules in creation order (evaluation order)"""
        return (
            self.db.query(TransactionSkipRule)
            .filter(TransactionSkipRule.active.is_(True))
            .order_by(TransactionSkipRule.created_at, TransactionSkipRule.id)
            .all()
        )

    def add(self, rule: TransactionSkipRule) -> TransactionSkipRule:
        self.db.add(rule)
        self.db.flush()
        return rule

    def increment_hits(self, rule_id, count: int = 1) -> None:
        """Atomic SQL-side increment; the attribute is expired and reloads on next access"""
        rule = self.get(rule_id)
        if rule is None:
            return
        rule.hit_count = TransactionSkipRule.hit_count + count
        self.db.flush()


class ProposedBillRepository:
    """Repository for proposed bills from the extraction pipeline"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, proposed_id) -> Optional[ProposedBill]:
        return self.db.get(ProposedBill, as_uuid(proposed_id))

    def get_by_source(self, source: str, source_ref: str) -> Optional[ProposedBill]:
        return (
            self.db.query(ProposedBill)
            .filter(ProposedBill.source == source, ProposedBill.source_ref == source_ref)
            .first()
        )

    def pending(self, exclude_id=None) -> List[ProposedBill]:
        query = self.db.query(ProposedBill).filter(ProposedBill.status == ProposedBillStatus.PENDING)
        if exclude_id is not None:
            query = query.filter(ProposedBill.id != as_uuid(exclude_id))
        return query.order_by(ProposedBill.created_at).all()


class NotificationRepository:
    """Outbox of notification events awaiting delivery"""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(
        self,
        event_type: NotificationType,
        vendor: str,
        amount_cents: int,
        due_date: Optional[date] = None,
    ) -> NotificationEvent:
        event = NotificationEvent(
            event_type=event_type.value,
            payload={
                "type": event_type.value,
                "vendor": vendor,
                "amount_cents": amount_cents,
                "due_date": due_date.isoformat() if due_date else None,
            },
        )
        self.db.add(event)
        self.db.flush()
        return event

    def pending(self, max_attempts: int, limit: int = 100) -> List[NotificationEvent]:
        return (
            self.db.query(NotificationEvent)
            .filter(NotificationEvent.status == "pending", NotificationEvent.attempts < max_attempts)
            .order_by(NotificationEvent.created_at)
            .limit(limit)
            .all()
        )
