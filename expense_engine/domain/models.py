"""Domain models - pure Python dataclasses and enums representing business entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional


class Frequency(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"


class AmountType(str, Enum):
    FIXED = "FIXED"
    VARIABLE = "VARIABLE"


class InstanceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    SKIPPED = "SKIPPED"
    APPROVED = "APPROVED"


class RuleType(str, Enum):
    ACCOUNT = "ACCOUNT"
    VENDOR = "VENDOR"
    VENDOR_AMOUNT = "VENDOR_AMOUNT"
    DESCRIPTION_PATTERN = "DESCRIPTION_PATTERN"


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"


class ProposedBillStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class NotificationType(str, Enum):
    NEW_BILL = "new_bill"
    PAYMENT_CONFIRMED = "payment_confirmed"


@dataclass
class Period:
    """One billing cycle of a definition"""

    key: str  # "YYYY-MM", "YYYY-Qn" or "YYYY"
    due_date: date


@dataclass
class SplitParticipant:
    """Participant taking part in a split, optionally with a fixed percentage"""

    participant_id: str
    percent: Optional[float] = None


@dataclass
class SplitAmount:
    """Computed share owed by one participant"""

    participant_id: str
    amount_cents: int
    percent: Optional[float] = None


@dataclass
class LedgerEntry:
    """Transaction as reported by the external ledger source"""

    external_id: str
    amount_cents: int  # positive = inflow, negative = outflow
    description: str
    transacted_at: datetime
    posted_at: Optional[datetime] = None
    status: str = "posted"
    merchant_name: Optional[str] = None


@dataclass
class TransactionFacts:
    """Fields of a ledger transaction that classification rules look at"""

    transaction_id: str
    account_id: Optional[str]
    amount_cents: int
    description: str = ""
    merchant_name: Optional[str] = None

    @property
    def searchable_text(self) -> str:
        return f"{self.description or ''} {self.merchant_name or ''}".lower()


@dataclass
class RuleMatch:
    """Outcome of classifying a transaction: the first rule that fired"""

    rule_id: str
    rule_type: RuleType
    rule_name: str


@dataclass
class ItemError:
    """Per-item failure recorded in a batch result"""

    item: str
    reason: str


@dataclass
class GeneratedInstance:
    bill_instance_id: str
    recurring_bill_id: str
    vendor: str
    period: str
    amount_cents: int
    split_count: int


@dataclass
class GenerationResult:
    created: List[GeneratedInstance] = field(default_factory=list)
    skipped_existing: int = 0
    skipped_not_applicable: int = 0
    skipped_no_amount: int = 0
    errors: List[ItemError] = field(default_factory=list)


@dataclass
class SyncResult:
    accounts_synced: int = 0
    transactions_added: int = 0
    transactions_skipped: int = 0
    transactions_matched: int = 0
    errors: List[ItemError] = field(default_factory=list)


@dataclass
class SkipDecisionResult:
    rule_created: bool
    rule_id: Optional[str] = None
    additional_skipped: int = 0


@dataclass
class RuleApplicationResult:
    processed: int = 0
    skipped: int = 0
