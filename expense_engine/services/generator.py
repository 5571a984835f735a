"""Bill instance generator - projects recurring definitions into per-period instances with splits"""

import time
import logging
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from expense_engine.config import settings
from expense_engine.domain.exceptions import ConfigurationError, DomainException, NotFoundError
from expense_engine.domain.models import (
    AmountType,
    GeneratedInstance,
    GenerationResult,
    ItemError,
    NotificationType,
    SplitAmount,
    SplitParticipant,
)
from expense_engine.domain.periods import resolve_period
from expense_engine.domain.splits import calculate_splits, validate_split_sum
from expense_engine.infrastructure.database.models import BillInstance, RecurringBill
from expense_engine.infrastructure.database.repositories import (
    BillInstanceRepository,
    NotificationRepository,
    ParticipantRepository,
    RecurringBillRepository,
)
from expense_engine.infrastructure.observability.logging import log_generation_pass
from expense_engine.infrastructure.observability.metrics import (
    generation_errors_counter,
    instances_generated_counter,
)
from expense_engine.utils.date_utils import month_window, parse_year_month


def participants_for(db: Session, bill: Optional[RecurringBill]) -> List[SplitParticipant]:
    """Definition's own participants, falling back to every active expense-sharing participant"""
    own = RecurringBillRepository(db).split_participants(bill) if bill is not None else []
    return own or ParticipantRepository(db).default_splitters()


class BillInstanceGenerator:
    """
    Creates at most one BillInstance per (definition, period).

    Every definition/period item is processed independently: a failure is
    recorded in the result and the pass moves on.
    """

    def __init__(self, db: Session):
        self.db = db
        self.bills = RecurringBillRepository(db)
        self.instances = BillInstanceRepository(db)
        self.notifications = NotificationRepository(db)

    def generate(self, definitions: Sequence[RecurringBill], months: Sequence[Tuple[int, int]]) -> GenerationResult:
        result = GenerationResult()
        for bill in definitions:
            for year, month in months:
                try:
                    self._generate_one(bill, year, month, result)
                except (DomainException, SQLAlchemyError) as e:
                    generation_errors_counter.inc()
                    item = f"{bill.vendor} {year:04d}-{month:02d}"
                    result.errors.append(ItemError(item=item, reason=str(e)))
                    logging.warning(
                        f"Generation failed for {item}: {e}",
                        extra={"step": "generation_item_failed", "recurring_bill_id": str(bill.id)},
                    )
        return result

    def resolve_amount(self, bill: RecurringBill) -> Optional[int]:
        """
        Amount for a new instance.

        FIXED definitions use the stored amount. VARIABLE definitions reuse the
        most recent PAID amount, or None when there is nothing to estimate from.

        Raises:
            ConfigurationError: FIXED definition without a stored amount
        """
        if bill.amount_type == AmountType.FIXED:
            if bill.fixed_amount_cents is None:
                raise ConfigurationError(f"Fixed-amount bill '{bill.name}' has no amount configured")
            return bill.fixed_amount_cents
        return self.bills.latest_paid_amount(bill.id)

    def _generate_one(self, bill: RecurringBill, year: int, month: int, result: GenerationResult) -> None:
        period = resolve_period(bill.frequency, year, month, bill.due_day, bill.due_month)
        if period is None:
            result.skipped_not_applicable += 1
            return

        if self.instances.exists(bill.id, period.key):
            result.skipped_existing += 1
            return

        amount_cents = self.resolve_amount(bill)
        if amount_cents is None:
            result.skipped_no_amount += 1
            return

        splits = calculate_splits(amount_cents, participants_for(self.db, bill))
        validate_split_sum(amount_cents, splits)

        # Instance, splits and the notification land together or not at all
        try:
            with self.db.begin_nested():
                instance = self.instances.create_with_splits(
                    bill, bill.vendor, period.key, amount_cents, period.due_date, splits
                )
                self.notifications.enqueue(NotificationType.NEW_BILL, bill.vendor, amount_cents, period.due_date)
        except IntegrityError:
            # A concurrent pass created it between the check and the insert
            result.skipped_existing += 1
            return

        instances_generated_counter.labels(frequency=bill.frequency.value).inc()
        result.created.append(
            GeneratedInstance(
                bill_instance_id=str(instance.id),
                recurring_bill_id=str(bill.id),
                vendor=bill.vendor,
                period=period.key,
                amount_cents=amount_cents,
                split_count=len(splits),
            )
        )


def generate_bills(
    db: Session,
    recurring_bill_id=None,
    periods: Optional[Sequence[str]] = None,
    months_back: Optional[int] = None,
    months_forward: Optional[int] = None,
    today: Optional[date] = None,
) -> GenerationResult:
    """
    Run one generation pass over active definitions.

    Args:
        recurring_bill_id: Restrict the pass to one definition
        periods: Explicit "YYYY-MM" months; overrides the rolling window
        months_back / months_forward: Rolling window around today

    Raises:
        ConfigurationError: Malformed period string
        NotFoundError: recurring_bill_id given but no such active definition
    """
    start_time = time.time()
    today = today or date.today()

    if periods:
        try:
            months = [parse_year_month(p) for p in periods]
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    else:
        months = month_window(
            today,
            settings.generate_months_back if months_back is None else months_back,
            settings.generate_months_forward if months_forward is None else months_forward,
        )

    definitions = RecurringBillRepository(db).list_active(recurring_bill_id)
    if recurring_bill_id is not None and not definitions:
        raise NotFoundError(f"Active recurring bill {recurring_bill_id} not found")

    result = BillInstanceGenerator(db).generate(definitions, months)

    duration_ms = (time.time() - start_time) * 1000
    log_generation_pass(len(result.created), result.skipped_existing, len(result.errors), duration_ms)
    return result


def mark_overdue_instances(db: Session, today: Optional[date] = None) -> int:
    """Move PENDING instances past their due date to OVERDUE"""
    count = BillInstanceRepository(db).mark_overdue(today or date.today())
    if count:
        logging.info(f"Marked {count} bill instances overdue", extra={"step": "mark_overdue", "count": count})
    return count


def recompute_splits(
    db: Session,
    instance: BillInstance,
    participants: Optional[Sequence[SplitParticipant]] = None,
    overrides: Optional[Dict[str, int]] = None,
) -> List[SplitAmount]:
    """
    Replace an instance's splits as a set after its amount or participants changed.

    Raises:
        ConfigurationError: Invalid percentages or overrides
        InvariantViolationError: Computed shares do not add up to the amount
    """
    if participants is None:
        participants = participants_for(db, instance.recurring_bill)
    splits = calculate_splits(instance.amount_cents, participants, overrides)
    validate_split_sum(instance.amount_cents, splits)

    instances = BillInstanceRepository(db)
    instances.delete_splits(instance)
    instances.add_splits(instance, splits)
    return splits
