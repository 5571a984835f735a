"""Proposed bills from the extraction pipeline - ingest, approve into instances, or skip"""

import logging
from datetime import date
from typing import Any, Dict, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from expense_engine.domain.exceptions import InvalidStateError, NotFoundError
from expense_engine.domain.models import (
    AmountType,
    Frequency,
    InstanceStatus,
    NotificationType,
    ProposedBillStatus,
)
from expense_engine.domain.periods import period_key_for_date
from expense_engine.domain.splits import calculate_splits, validate_split_sum
from expense_engine.infrastructure.database.models import ProposedBill, RecurringBill, utcnow
from expense_engine.infrastructure.database.repositories import (
    BillInstanceRepository,
    NotificationRepository,
    ProposedBillRepository,
    RecurringBillRepository,
)
from expense_engine.services.generator import participants_for, recompute_splits


class ProposedBillService:
    """Review workflow for candidate bills extracted from emails and documents"""

    def __init__(self, db: Session):
        self.db = db
        self.proposed = ProposedBillRepository(db)
        self.bills = RecurringBillRepository(db)
        self.instances = BillInstanceRepository(db)
        self.notifications = NotificationRepository(db)

    def ingest(
        self,
        source: str,
        source_ref: str,
        vendor: str,
        amount_cents: Optional[int] = None,
        due_date: Optional[date] = None,
        is_paid: bool = False,
        payment_method: Optional[str] = None,
        vendor_category: Optional[str] = None,
    ) -> Tuple[ProposedBill, bool]:
        """Store a proposed bill once per (source, source_ref); returns (record, created)"""
        existing = self.proposed.get_by_source(source, source_ref)
        if existing is not None:
            return existing, False

        record = ProposedBill(
            source=source,
            source_ref=source_ref,
            vendor=vendor,
            vendor_category=vendor_category,
            amount_cents=amount_cents,
            due_date=due_date,
            is_paid=is_paid,
            payment_method=payment_method,
            status=ProposedBillStatus.PENDING,
        )
        try:
            with self.db.begin_nested():
                self.db.add(record)
                self.db.flush()
        except IntegrityError:
            return self.proposed.get_by_source(source, source_ref), False
        return record, True

    def _pending(self, proposed_id) -> ProposedBill:
        record = self.proposed.get(proposed_id)
        if record is None:
            raise NotFoundError(f"Proposed bill {proposed_id} not found")
        if record.status != ProposedBillStatus.PENDING:
            raise InvalidStateError(f"Proposed bill already {record.status.value.lower()}")
        return record

    def _definition_for(self, vendor: str, vendor_category: Optional[str], due: date, recurring_bill_id=None) -> RecurringBill:
        if recurring_bill_id is not None:
            bill = self.bills.get(recurring_bill_id)
            if bill is None:
                raise NotFoundError(f"Recurring bill {recurring_bill_id} not found")
            return bill

        bill = self.bills.find_active_by_vendor(vendor)
        if bill is not None:
            return bill

        bill = RecurringBill(
            name=vendor,
            vendor=vendor,
            vendor_category=vendor_category or "OTHER",
            frequency=Frequency.MONTHLY,
            amount_type=AmountType.VARIABLE,
            due_day=due.day,
        )
        self.db.add(bill)
        self.db.flush()
        logging.info(
            f"Recurring bill created from proposed bill: {vendor}",
            extra={"step": "definition_created", "recurring_bill_id": str(bill.id)},
        )
        return bill

    def approve(
        self,
        proposed_id,
        vendor: Optional[str] = None,
        vendor_category: Optional[str] = None,
        amount_cents: Optional[int] = None,
        due_date: Optional[date] = None,
        recurring_bill_id=None,
        split_overrides: Optional[Dict[str, int]] = None,
        reviewed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Turn a proposed bill into a BillInstance, the same way a matched payment would.

        Flow:
        1. Resolve the definition (explicit, by normalized vendor, or a new VARIABLE MONTHLY one)
        2. Find the instance for the due date's period, or create it with splits
        3. Settle it when the proposed bill was already paid
        4. Queue new_bill or payment_confirmed

        Raises:
            NotFoundError: Unknown proposed bill or definition
            InvalidStateError: Proposed bill already reviewed
            ConfigurationError: Invalid split overrides
        """
        record = self._pending(proposed_id)
        vendor = vendor or record.vendor
        vendor_category = vendor_category or record.vendor_category
        amount = amount_cents if amount_cents is not None else (record.amount_cents or 0)
        due = due_date or record.due_date or date.today()

        bill = self._definition_for(vendor, vendor_category, due, recurring_bill_id)
        period_key = period_key_for_date(bill.frequency, due)

        instance = self.instances.find(bill.id, period_key)
        action = "updated"
        if instance is None:
            splits = calculate_splits(amount, participants_for(self.db, bill), split_overrides)
            validate_split_sum(amount, splits)
            try:
                with self.db.begin_nested():
                    instance = self.instances.create_with_splits(
                        bill, vendor, period_key, amount, due, splits, vendor_category=vendor_category
                    )
                action = "created"
            except IntegrityError:
                instance = self.instances.find(bill.id, period_key)

        if action == "updated" and instance.status != InstanceStatus.PAID:
            # Existing instance for the period is updated in place, never duplicated
            if amount and (instance.amount_cents != amount or split_overrides):
                instance.amount_cents = amount
                recompute_splits(self.db, instance, overrides=split_overrides)
            if instance.due_date is None:
                instance.due_date = due

        if record.is_paid and instance.status != InstanceStatus.PAID:
            self.instances.mark_paid(instance, paid_at=utcnow(), paid_via=record.payment_method)
            self.notifications.enqueue(
                NotificationType.PAYMENT_CONFIRMED, instance.vendor, instance.amount_cents, instance.due_date
            )
            action = "marked_paid"
        elif action == "created":
            self.notifications.enqueue(NotificationType.NEW_BILL, instance.vendor, instance.amount_cents, instance.due_date)

        record.status = ProposedBillStatus.APPROVED
        record.reviewed_at = utcnow()
        record.recurring_bill_id = bill.id
        record.bill_instance_id = instance.id
        self.db.flush()

        logging.info(
            f"Proposed bill approved: {vendor}",
            extra={"step": "proposed_bill_approved", "action": action, "reviewed_by": reviewed_by},
        )
        return {
            "proposed_bill_id": str(record.id),
            "recurring_bill_id": str(bill.id),
            "bill_instance_id": str(instance.id),
            "action": action,
        }

    def skip(
        self,
        proposed_id,
        reason: Optional[str] = None,
        create_rule: bool = False,
        vendor_pattern: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Reject a proposed bill; with create_rule, also reject other pending ones from the same vendor.

        Raises:
            NotFoundError: Unknown proposed bill
            InvalidStateError: Proposed bill already reviewed
        """
        record = self._pending(proposed_id)
        now = utcnow()
        record.status = ProposedBillStatus.REJECTED
        record.rejection_reason = reason or "Skipped"
        record.reviewed_at = now

        additional = 0
        pattern = (vendor_pattern or record.vendor or "").strip()
        if create_rule and pattern:
            for other in self.proposed.pending(exclude_id=record.id):
                if pattern.lower() in (other.vendor or "").lower():
                    other.status = ProposedBillStatus.REJECTED
                    other.rejection_reason = f"Auto-skipped: matches pattern \"{pattern}\""
                    other.reviewed_at = now
                    additional += 1
        self.db.flush()
        return {"rule_created": create_rule and bool(pattern), "additional_skipped": additional}
