"""GET|POST /v1/skip-rules, DELETE /v1/skip-rules/{rule_id} - Skip rule management"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from expense_engine.api.v1.schemas import (
    SkipRuleCreateRequest,
    SkipRuleCreateResponse,
    SkipRuleListResponse,
    SkipRuleSchema,
)
from expense_engine.api.dependencies import get_request_id, http_error, parse_id
from expense_engine.domain.exceptions import DomainException
from expense_engine.infrastructure.database.models import TransactionSkipRule
from expense_engine.infrastructure.database.session import get_db
from expense_engine.services.skip_rules import SkipRuleService

router = APIRouter()


def _rule_schema(rule: TransactionSkipRule) -> SkipRuleSchema:
    return SkipRuleSchema(
        id=str(rule.id),
        name=rule.name,
        rule_type=rule.rule_type.value,
        account_id=str(rule.ledger_account_id) if rule.ledger_account_id else None,
        transaction_type=rule.transaction_type.value if rule.transaction_type else None,
        vendor_pattern=rule.vendor_pattern,
        description_pattern=rule.description_pattern,
        amount_cents=rule.amount_cents,
        amount_variance_percent=rule.amount_variance_percent,
        amount_min_cents=rule.amount_min_cents,
        amount_max_cents=rule.amount_max_cents,
        hit_count=rule.hit_count or 0,
        active=rule.active,
        deactivation_reason=rule.deactivation_reason,
        merged_into_id=str(rule.merged_into_id) if rule.merged_into_id else None,
        created_at=rule.created_at.isoformat(),
    )


@router.get("/skip-rules", response_model=SkipRuleListResponse)
def list_skip_rules(
    include_inactive: bool = Query(False, description="Include deactivated and merged rules"),
    db: Session = Depends(get_db),
):
    """List skip rules, newest first"""
    rules = SkipRuleService(db).rules.list_all()
    if not include_inactive:
        rules = [rule for rule in rules if rule.active]
    return SkipRuleListResponse(rules=[_rule_schema(rule) for rule in rules])


@router.post("/skip-rules", response_model=SkipRuleCreateResponse)
def create_skip_rule(
    request_body: SkipRuleCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Create a skip rule.

    An active rule with the same predicate is reused instead of duplicated.
    New rules are applied to existing pending transactions unless
    apply_to_pending is false.
    """
    request_id = get_request_id(request)
    account_id = parse_id(request_body.account_id, "account ID") if request_body.account_id else None

    service = SkipRuleService(db)
    try:
        rule, created = service.create_rule(
            request_body.rule_type,
            name=request_body.name,
            reason=request_body.reason,
            account_id=account_id,
            transaction_type=request_body.transaction_type,
            vendor_pattern=request_body.vendor_pattern,
            description_pattern=request_body.description_pattern,
            amount_cents=request_body.amount_cents,
            amount_variance_percent=request_body.amount_variance_percent,
            amount_min_cents=request_body.amount_min_cents,
            amount_max_cents=request_body.amount_max_cents,
            created_by=request_body.created_by,
        )
        additional = 0
        if created and request_body.apply_to_pending:
            additional = service.apply_to_pending().skipped
        db.commit()
    except DomainException as e:
        db.rollback()
        raise http_error(e, request_id)

    return SkipRuleCreateResponse(rule=_rule_schema(rule), created=created, additional_skipped=additional)


@router.delete("/skip-rules/{rule_id}", response_model=SkipRuleSchema)
def deactivate_skip_rule(
    rule_id: str,
    request: Request,
    reason: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """Deactivate a rule; transactions it already resolved keep their link"""
    request_id = get_request_id(request)
    rule_id = parse_id(rule_id, "rule ID")

    try:
        rule = SkipRuleService(db).deactivate_rule(rule_id, reason=reason)
        db.commit()
    except DomainException as e:
        db.rollback()
        raise http_error(e, request_id)

    return _rule_schema(rule)
