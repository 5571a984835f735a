"""SQLAlchemy ORM models for recurring bills, ledger transactions and skip rules"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, BigInteger, Boolean, Float, DateTime, Date, Integer, ForeignKey, Text, JSON,
    UniqueConstraint, Index, text, Enum as SAEnum,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from expense_engine.domain.models import (
    Frequency, AmountType, InstanceStatus, ApprovalStatus, RuleType, TransactionType,
    AccountStatus, ProposedBillStatus,
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=32)


class Participant(Base):
    """Team member who may share company expenses"""

    __tablename__ = "participant"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=True)
    splits_expenses = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class RecurringBill(Base):
    """Recurring bill definition (template for per-period instances)"""

    __tablename__ = "recurring_bill"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    vendor = Column(Text, nullable=False)
    vendor_category = Column(Text, nullable=False, default="OTHER")
    frequency = Column(_enum(Frequency), nullable=False, default=Frequency.MONTHLY)
    amount_type = Column(_enum(AmountType), nullable=False, default=AmountType.FIXED)
    fixed_amount_cents = Column(BigInteger, nullable=True)
    due_day = Column(Integer, nullable=False, default=1)
    due_month = Column(Integer, nullable=True)  # ANNUAL only
    active = Column(Boolean, nullable=False, default=True, index=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivation_reason = Column(Text, nullable=True)
    merged_into_id = Column(UUID(as_uuid=True), ForeignKey("recurring_bill.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    participants = relationship(
        "RecurringBillParticipant",
        back_populates="recurring_bill",
        cascade="all, delete-orphan",
        order_by="RecurringBillParticipant.created_at",
    )
    instances = relationship("BillInstance", back_populates="recurring_bill")


class RecurringBillParticipant(Base):
    """Default participant of a definition, with an optional fixed split percentage"""

    __tablename__ = "recurring_bill_participant"
    __table_args__ = (UniqueConstraint("recurring_bill_id", "participant_id", name="uq_recurring_bill_participant"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recurring_bill_id = Column(UUID(as_uuid=True), ForeignKey("recurring_bill.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(UUID(as_uuid=True), ForeignKey("participant.id"), nullable=False)
    split_percent = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    recurring_bill = relationship("RecurringBill", back_populates="participants")


class BillInstance(Base):
    """One concrete obligation for one (definition, period) pair"""

    __tablename__ = "bill_instance"
    __table_args__ = (UniqueConstraint("recurring_bill_id", "period", name="uq_bill_instance_period"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recurring_bill_id = Column(UUID(as_uuid=True), ForeignKey("recurring_bill.id"), nullable=True, index=True)
    vendor = Column(Text, nullable=False)
    vendor_category = Column(Text, nullable=True)
    amount_cents = Column(BigInteger, nullable=False, default=0)
    due_date = Column(Date, nullable=True)
    period = Column(String(16), nullable=False)
    status = Column(_enum(InstanceStatus), nullable=False, default=InstanceStatus.PENDING, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    paid_via = Column(Text, nullable=True)
    settled_by_external_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    recurring_bill = relationship("RecurringBill", back_populates="instances")
    splits = relationship(
        "BillSplit",
        back_populates="bill_instance",
        cascade="all, delete-orphan",
        order_by="BillSplit.position",
    )


class BillSplit(Base):
    """One participant's share of a bill instance"""

    __tablename__ = "bill_split"
    __table_args__ = (UniqueConstraint("bill_instance_id", "participant_id", name="uq_bill_split_participant"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bill_instance_id = Column(UUID(as_uuid=True), ForeignKey("bill_instance.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(UUID(as_uuid=True), ForeignKey("participant.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    amount_cents = Column(BigInteger, nullable=False)
    percent = Column(Float, nullable=True)
    status = Column(_enum(InstanceStatus), nullable=False, default=InstanceStatus.PENDING)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    bill_instance = relationship("BillInstance", back_populates="splits")


class LedgerAccount(Base):
    """Connected bank / processor account"""

    __tablename__ = "ledger_account"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_account_id = Column(Text, nullable=False, unique=True)
    institution_name = Column(Text, nullable=False)
    account_last4 = Column(String(4), nullable=True)
    status = Column(_enum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def label(self) -> str:
        return f"{self.institution_name} ****{self.account_last4 or ''}".strip()


class TransactionSkipRule(Base):
    """Classifier marking matching transactions as not a company expense"""

    __tablename__ = "transaction_skip_rule"
    __table_args__ = (
        # One active rule per predicate; concurrent creators collide here
        Index(
            "uq_skip_rule_active_predicate",
            "predicate_key",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    rule_type = Column(_enum(RuleType), nullable=False)
    ledger_account_id = Column(UUID(as_uuid=True), ForeignKey("ledger_account.id"), nullable=True)
    transaction_type = Column(_enum(TransactionType), nullable=True)
    vendor_pattern = Column(Text, nullable=True)
    description_pattern = Column(Text, nullable=True)
    amount_cents = Column(BigInteger, nullable=True)
    amount_variance_percent = Column(Float, nullable=True)
    amount_min_cents = Column(BigInteger, nullable=True)
    amount_max_cents = Column(BigInteger, nullable=True)
    predicate_key = Column(Text, nullable=True)
    hit_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True, index=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivation_reason = Column(Text, nullable=True)
    merged_into_id = Column(UUID(as_uuid=True), ForeignKey("transaction_skip_rule.id"), nullable=True)
    created_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    ledger_account = relationship("LedgerAccount")


class LedgerTransaction(Base):
    """Observed bank / processor transaction"""

    __tablename__ = "ledger_transaction"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ledger_account_id = Column(UUID(as_uuid=True), ForeignKey("ledger_account.id"), nullable=False, index=True)
    external_id = Column(Text, nullable=False, unique=True)
    amount_cents = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=True)
    merchant_name = Column(Text, nullable=True)
    transacted_at = Column(DateTime(timezone=True), nullable=False)
    posted_at = Column(DateTime(timezone=True), nullable=True)
    source_status = Column(Text, nullable=True)
    approval_status = Column(_enum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING, index=True)
    skipped_by_rule_id = Column(
        UUID(as_uuid=True), ForeignKey("transaction_skip_rule.id", ondelete="SET NULL"), nullable=True, index=True
    )
    matched_bill_instance_id = Column(
        UUID(as_uuid=True), ForeignKey("bill_instance.id", ondelete="SET NULL"), nullable=True
    )
    match_confidence = Column(Integer, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    ledger_account = relationship("LedgerAccount")
    skipped_by_rule = relationship("TransactionSkipRule")
    matched_bill_instance = relationship("BillInstance")


class ProposedBill(Base):
    """Candidate bill extracted from an email or document, awaiting review"""

    __tablename__ = "proposed_bill"
    __table_args__ = (UniqueConstraint("source", "source_ref", name="uq_proposed_bill_source"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source = Column(Text, nullable=False)
    source_ref = Column(Text, nullable=False)
    vendor = Column(Text, nullable=False)
    vendor_category = Column(Text, nullable=True)
    amount_cents = Column(BigInteger, nullable=True)
    due_date = Column(Date, nullable=True)
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_method = Column(Text, nullable=True)
    status = Column(_enum(ProposedBillStatus), nullable=False, default=ProposedBillStatus.PENDING, index=True)
    recurring_bill_id = Column(UUID(as_uuid=True), ForeignKey("recurring_bill.id"), nullable=True)
    bill_instance_id = Column(UUID(as_uuid=True), ForeignKey("bill_instance.id", ondelete="SET NULL"), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class NotificationEvent(Base):
    """Notification outbox with retry tracking"""

    __tablename__ = "notification_event"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(Text, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class JobLock(Base):
    """Cross-process lease guarding batch passes"""

    __tablename__ = "job_lock"

    name = Column(String(64), primary_key=True)
    holder = Column(Text, nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
