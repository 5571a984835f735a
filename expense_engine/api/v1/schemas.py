"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, Field
from datetime import date
from typing import Any, Dict, List, Literal, Optional

from expense_engine.domain.models import RuleType, TransactionType


class ItemErrorSchema(BaseModel):
    """Per-item failure inside a batch result"""

    item: str
    reason: str


class GenerateRequest(BaseModel):
    """Request body for POST /v1/bills/generate"""

    recurring_bill_id: Optional[str] = Field(None, description="Restrict to one definition")
    periods: Optional[List[str]] = Field(None, description="Explicit YYYY-MM months")
    months_back: Optional[int] = Field(None, ge=0, le=36)
    months_forward: Optional[int] = Field(None, ge=0, le=12)


class GeneratedInstanceSchema(BaseModel):
    bill_instance_id: str
    recurring_bill_id: str
    vendor: str
    period: str
    amount_cents: int
    split_count: int


class GenerateResponse(BaseModel):
    """Response for POST /v1/bills/generate"""

    created: int
    skipped_existing: int
    skipped_not_applicable: int = 0
    skipped_no_amount: int = 0
    overdue_marked: int = 0
    results: List[GeneratedInstanceSchema]
    errors: List[ItemErrorSchema]


class SyncRequest(BaseModel):
    """Request body for POST /v1/sync"""

    account_id: Optional[str] = None


class SyncResponse(BaseModel):
    """Response for POST /v1/sync"""

    accounts_synced: int
    transactions_added: int
    transactions_skipped: int = 0
    transactions_matched: int = 0
    errors: List[ItemErrorSchema]


class SkipTransactionRequest(BaseModel):
    """Request body for POST /v1/transactions/{id}/skip"""

    create_rule: bool = False
    rule_type: Optional[RuleType] = None
    scope_to_account: bool = False
    transaction_type: Optional[TransactionType] = None
    pattern: Optional[str] = Field(None, min_length=1)
    amount_variance_percent: Optional[float] = Field(None, ge=0, le=100)
    resolved_by: Optional[str] = None


class SkipTransactionResponse(BaseModel):
    rule_created: bool
    rule_id: Optional[str] = None
    additional_skipped: int


class MatchTransactionRequest(BaseModel):
    """Request body for POST /v1/transactions/{id}/match"""

    bill_instance_id: str
    resolved_by: Optional[str] = None


class ApproveTransactionRequest(BaseModel):
    resolved_by: Optional[str] = None


class TransactionResponse(BaseModel):
    transaction_id: str
    approval_status: str
    matched_bill_instance_id: Optional[str] = None
    skipped_by_rule_id: Optional[str] = None


class SkipRuleCreateRequest(BaseModel):
    """Request body for POST /v1/skip-rules"""

    rule_type: RuleType
    name: Optional[str] = None
    reason: Optional[str] = None
    account_id: Optional[str] = None
    transaction_type: Optional[TransactionType] = None
    vendor_pattern: Optional[str] = None
    description_pattern: Optional[str] = None
    amount_cents: Optional[int] = None
    amount_variance_percent: Optional[float] = Field(None, ge=0, le=100)
    amount_min_cents: Optional[int] = None
    amount_max_cents: Optional[int] = None
    created_by: Optional[str] = None
    apply_to_pending: bool = True


class SkipRuleSchema(BaseModel):
    id: str
    name: str
    rule_type: str
    account_id: Optional[str] = None
    transaction_type: Optional[str] = None
    vendor_pattern: Optional[str] = None
    description_pattern: Optional[str] = None
    amount_cents: Optional[int] = None
    amount_variance_percent: Optional[float] = None
    amount_min_cents: Optional[int] = None
    amount_max_cents: Optional[int] = None
    hit_count: int
    active: bool
    deactivation_reason: Optional[str] = None
    merged_into_id: Optional[str] = None
    created_at: str


class SkipRuleCreateResponse(BaseModel):
    rule: SkipRuleSchema
    created: bool
    additional_skipped: int = 0


class SkipRuleListResponse(BaseModel):
    rules: List[SkipRuleSchema]


class ConsolidationApplyRequest(BaseModel):
    """Request body for POST /v1/consolidation/apply"""

    action: Literal["rules", "bills", "apply-rules", "all"]


class ProposedBillCreateRequest(BaseModel):
    """Request body for POST /v1/proposed-bills"""

    source: str = Field(..., min_length=1, description="Extraction source, e.g. gmail")
    source_ref: str = Field(..., min_length=1, description="Message or document id within the source")
    vendor: str = Field(..., min_length=1)
    vendor_category: Optional[str] = None
    amount_cents: Optional[int] = Field(None, ge=0)
    due_date: Optional[date] = None
    is_paid: bool = False
    payment_method: Optional[str] = None


class ProposedBillResponse(BaseModel):
    id: str
    status: str
    created: bool


class ProposedBillApproveRequest(BaseModel):
    vendor: Optional[str] = None
    vendor_category: Optional[str] = None
    amount_cents: Optional[int] = Field(None, ge=0)
    due_date: Optional[date] = None
    recurring_bill_id: Optional[str] = None
    split_overrides: Optional[Dict[str, int]] = None
    reviewed_by: Optional[str] = None


class ProposedBillApproveResponse(BaseModel):
    proposed_bill_id: str
    recurring_bill_id: str
    bill_instance_id: str
    action: str


class ProposedBillSkipRequest(BaseModel):
    reason: Optional[str] = None
    create_rule: bool = False
    vendor_pattern: Optional[str] = None


class ProposedBillSkipResponse(BaseModel):
    rule_created: bool
    additional_skipped: int


class JobResponse(BaseModel):
    """Response for POST /v1/jobs/{name} and the cron trigger"""

    job: str
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
