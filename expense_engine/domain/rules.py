"""Skip rule predicates - one matcher per rule type, evaluated first-match-wins"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional
from expense_engine.domain.models import RuleType, TransactionType, TransactionFacts, RuleMatch
from expense_engine.domain.exceptions import ConfigurationError

DEFAULT_AMOUNT_VARIANCE_PERCENT = 5.0

# Card network / bank channel tokens that prefix merchant text on statements
_PREFIX_RE = re.compile(
    r"^(?:(?:(?:pos|debit|credit|card|purchase|checkcard|visa|mastercard|amex|discover|"
    r"ach|dda|recurring|pmt|payment|online|web|withdrawal)\b"
    r"|(?:sq|tst|pp|paypal|sp|in)\s*\*)\s*[*#:-]?\s*)+",
    re.IGNORECASE,
)
_NOISE_WORDS = {
    "store", "stores", "inc", "llc", "ltd", "co", "corp", "com", "online", "payment", "pmt",
    "purchase", "bill", "autopay", "recurring", "www", "the", "ref", "id", "usa", "us",
}
_MAX_PATTERN_WORDS = 3


@dataclass
class SkipRuleBase:
    """Fields shared by every rule type"""

    id: str
    name: str = ""
    account_id: Optional[str] = None
    transaction_type: Optional[TransactionType] = None
    created_at: Optional[datetime] = None

    rule_type = None  # set by each variant

    def matches(self, txn: TransactionFacts) -> bool:
        if self.transaction_type == TransactionType.INCOME and txn.amount_cents <= 0:
            return False
        if self.transaction_type == TransactionType.EXPENSE and txn.amount_cents >= 0:
            return False
        if self.account_id and self.rule_type != RuleType.ACCOUNT and txn.account_id != self.account_id:
            return False
        return self._predicate(txn)

    def _predicate(self, txn: TransactionFacts) -> bool:
        raise NotImplementedError


@dataclass
class AccountRule(SkipRuleBase):
    rule_type = RuleType.ACCOUNT

    def _predicate(self, txn: TransactionFacts) -> bool:
        return self.account_id is not None and txn.account_id == self.account_id


@dataclass
class VendorRule(SkipRuleBase):
    vendor_pattern: str = ""

    rule_type = RuleType.VENDOR

    def _predicate(self, txn: TransactionFacts) -> bool:
        pattern = self.vendor_pattern.strip().lower()
        return bool(pattern) and pattern in txn.searchable_text


@dataclass
class VendorAmountRule(SkipRuleBase):
    vendor_pattern: str = ""
    amount_cents: Optional[int] = None
    amount_variance_percent: float = DEFAULT_AMOUNT_VARIANCE_PERCENT
    amount_min_cents: Optional[int] = None
    amount_max_cents: Optional[int] = None

    rule_type = RuleType.VENDOR_AMOUNT

    @property
    def has_explicit_range(self) -> bool:
        return self.amount_min_cents is not None or self.amount_max_cents is not None

    def amount_matches(self, amount_cents: int) -> bool:
        """Compare magnitudes so the same rule covers inflows and outflows"""
        magnitude = abs(amount_cents)
        if self.has_explicit_range:
            if self.amount_min_cents is not None and magnitude < abs(self.amount_min_cents):
                return False
            if self.amount_max_cents is not None and magnitude > abs(self.amount_max_cents):
                return False
            return True
        if self.amount_cents is None:
            return False
        expected = abs(self.amount_cents)
        band = expected * self.amount_variance_percent / 100.0
        return expected - band <= magnitude <= expected + band

    def _predicate(self, txn: TransactionFacts) -> bool:
        pattern = self.vendor_pattern.strip().lower()
        return bool(pattern) and pattern in txn.searchable_text and self.amount_matches(txn.amount_cents)


@dataclass
class DescriptionPatternRule(SkipRuleBase):
    description_pattern: str = ""

    rule_type = RuleType.DESCRIPTION_PATTERN

    def _predicate(self, txn: TransactionFacts) -> bool:
        pattern = self.description_pattern.strip().lower()
        return bool(pattern) and pattern in (txn.description or "").lower()


SkipRule = AccountRule | VendorRule | VendorAmountRule | DescriptionPatternRule


def rule_from_record(record) -> SkipRule:
    """
    Build the matcher for a stored rule row.

    Raises:
        ConfigurationError: Unknown rule type or missing required fields
    """
    try:
        rule_type = RuleType(record.rule_type)
    except ValueError as e:
        raise ConfigurationError(f"Unknown rule type: {record.rule_type!r}") from e

    txn_type = TransactionType(record.transaction_type) if record.transaction_type else None
    common = dict(
        id=str(record.id),
        name=record.name or "",
        account_id=str(record.ledger_account_id) if record.ledger_account_id else None,
        transaction_type=txn_type,
        created_at=record.created_at,
    )

    if rule_type == RuleType.ACCOUNT:
        if not record.ledger_account_id:
            raise ConfigurationError("Account rule requires an account")
        return AccountRule(**common)
    if rule_type == RuleType.VENDOR:
        if not record.vendor_pattern:
            raise ConfigurationError("Vendor rule requires a vendor pattern")
        return VendorRule(vendor_pattern=record.vendor_pattern, **common)
    if rule_type == RuleType.VENDOR_AMOUNT:
        if not record.vendor_pattern:
            raise ConfigurationError("Vendor+amount rule requires a vendor pattern")
        if record.amount_cents is None and record.amount_min_cents is None and record.amount_max_cents is None:
            raise ConfigurationError("Vendor+amount rule requires an amount or a range")
        return VendorAmountRule(
            vendor_pattern=record.vendor_pattern,
            amount_cents=record.amount_cents,
            amount_variance_percent=(
                record.amount_variance_percent
                if record.amount_variance_percent is not None
                else DEFAULT_AMOUNT_VARIANCE_PERCENT
            ),
            amount_min_cents=record.amount_min_cents,
            amount_max_cents=record.amount_max_cents,
            **common,
        )
    if not record.description_pattern:
        raise ConfigurationError("Description rule requires a pattern")
    return DescriptionPatternRule(description_pattern=record.description_pattern, **common)


def classify(txn: TransactionFacts, rules: Iterable[SkipRule]) -> Optional[RuleMatch]:
    """
    Return the first rule (in the given order) that matches the transaction.

    Callers pass rules in creation order; there is no priority beyond that order.
    """
    for rule in rules:
        if rule.matches(txn):
            return RuleMatch(rule_id=rule.id, rule_type=rule.rule_type, rule_name=rule.name)
    return None


def derive_pattern(description: Optional[str], merchant_name: Optional[str] = None) -> str:
    """
    Derive a vendor pattern from raw statement text.

    Strips card-network/channel prefixes, drops tokens carrying long digit runs,
    then keeps the leading significant words.

    Example:
        "STARBUCKS STORE 0234" → "STARBUCKS"
        "POS DEBIT SHELL OIL 12345 HOUSTON TX" → "SHELL OIL"

    Raises:
        ConfigurationError: Nothing usable left in the text
    """
    text = (merchant_name or description or "").strip()
    text = _PREFIX_RE.sub("", text).strip()

    words: List[str] = []
    for token in text.split():
        cleaned = token.strip("*#:,.-/")
        lowered = cleaned.lower()
        noisy = (
            len(cleaned) < 2
            or re.search(r"\d{3,}", cleaned) is not None
            or lowered in _NOISE_WORDS
        )
        if noisy:
            if words:
                break
            continue
        words.append(cleaned)
        if len(words) == _MAX_PATTERN_WORDS:
            break

    if words:
        return " ".join(words)

    fallback = re.sub(r"\d{3,}", "", text).strip()[:20].strip()
    if not fallback:
        raise ConfigurationError(f"Cannot derive a pattern from {description!r}")
    return fallback


def build_rule_name(
    rule_type: RuleType,
    pattern: Optional[str] = None,
    amount_cents: Optional[int] = None,
    account_label: Optional[str] = None,
    transaction_type: Optional[TransactionType] = None,
) -> str:
    """Human-readable rule name; display only, never used for matching"""
    if rule_type == RuleType.ACCOUNT:
        name = f"Skip all from {account_label or 'account'}"
    elif rule_type == RuleType.VENDOR_AMOUNT and amount_cents is not None:
        name = f"Skip {pattern} ~${abs(amount_cents) / 100:.2f}"
    elif rule_type == RuleType.DESCRIPTION_PATTERN:
        name = f"Skip matching \"{pattern}\""
    else:
        name = f"Skip {pattern}"

    if transaction_type == TransactionType.INCOME:
        name += " (income)"
    elif transaction_type == TransactionType.EXPENSE:
        name += " (expenses)"
    if account_label and rule_type != RuleType.ACCOUNT:
        name += f" on {account_label}"
    return name


def rule_identity_key(
    rule_type: RuleType | str,
    account_id: Optional[str] = None,
    vendor_pattern: Optional[str] = None,
    description_pattern: Optional[str] = None,
    amount_cents: Optional[int] = None,
) -> str:
    """Identity used to detect duplicate rules"""
    rule_type = RuleType(rule_type)
    if rule_type == RuleType.ACCOUNT:
        return f"account:{account_id}"
    if rule_type == RuleType.VENDOR_AMOUNT:
        return f"vendor_amount:{(vendor_pattern or '').strip().lower()}:{amount_cents}"
    if rule_type == RuleType.VENDOR:
        return f"vendor:{(vendor_pattern or '').strip().lower()}"
    return f"desc:{(description_pattern or '').strip().lower()}"


def rule_predicate_key(
    rule_type: RuleType | str,
    account_id: Optional[str] = None,
    transaction_type: Optional[TransactionType | str] = None,
    vendor_pattern: Optional[str] = None,
    description_pattern: Optional[str] = None,
    amount_cents: Optional[int] = None,
    amount_variance_percent: Optional[float] = None,
    amount_min_cents: Optional[int] = None,
    amount_max_cents: Optional[int] = None,
) -> str:
    """
    Key of everything a rule's predicate depends on.

    Two active rules with the same key match exactly the same transactions,
    so creating one reuses the other. Coarser than rule_identity_key, which
    consolidation uses to group rules regardless of scope and type filter.
    """
    key = rule_identity_key(rule_type, account_id, vendor_pattern, description_pattern, amount_cents)
    parts = [key, f"type={TransactionType(transaction_type).value if transaction_type else '*'}"]
    if RuleType(rule_type) != RuleType.ACCOUNT:
        parts.append(f"account={account_id or '*'}")
    if RuleType(rule_type) == RuleType.VENDOR_AMOUNT:
        if amount_min_cents is not None or amount_max_cents is not None:
            parts.append(f"range={amount_min_cents}..{amount_max_cents}")
        else:
            parts.append(f"variance={float(amount_variance_percent or 0):g}")
    return "|".join(parts)
