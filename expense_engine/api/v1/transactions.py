"""POST /v1/transactions/{id}/skip|match|approve - Operator triage of pending transactions"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from expense_engine.api.v1.schemas import (
    ApproveTransactionRequest,
    MatchTransactionRequest,
    SkipTransactionRequest,
    SkipTransactionResponse,
    TransactionResponse,
)
from expense_engine.api.dependencies import get_request_id, http_error, parse_id
from expense_engine.domain.exceptions import DomainException
from expense_engine.infrastructure.database.models import LedgerTransaction
from expense_engine.infrastructure.database.session import get_db
from expense_engine.services.reconciliation import ReconciliationMatcher
from expense_engine.services.skip_rules import SkipRuleService

router = APIRouter()


def _transaction_response(txn: LedgerTransaction) -> TransactionResponse:
    return TransactionResponse(
        transaction_id=str(txn.id),
        approval_status=txn.approval_status.value,
        matched_bill_instance_id=str(txn.matched_bill_instance_id) if txn.matched_bill_instance_id else None,
        skipped_by_rule_id=str(txn.skipped_by_rule_id) if txn.skipped_by_rule_id else None,
    )


@router.post("/transactions/{transaction_id}/skip", response_model=SkipTransactionResponse)
def skip_transaction(
    transaction_id: str,
    request_body: SkipTransactionRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Mark a transaction as not a company expense.

    With create_rule, a skip rule is derived from the transaction and applied
    to all other pending transactions in the same request.
    """
    request_id = get_request_id(request)
    transaction_id = parse_id(transaction_id, "transaction ID")

    try:
        decision = SkipRuleService(db).skip_transaction(
            transaction_id,
            create_rule=request_body.create_rule,
            rule_type=request_body.rule_type,
            scope_to_account=request_body.scope_to_account,
            transaction_type=request_body.transaction_type,
            pattern=request_body.pattern,
            amount_variance_percent=request_body.amount_variance_percent,
            resolved_by=request_body.resolved_by,
        )
        db.commit()
    except DomainException as e:
        db.rollback()
        raise http_error(e, request_id)

    return SkipTransactionResponse(
        rule_created=decision.rule_created,
        rule_id=decision.rule_id,
        additional_skipped=decision.additional_skipped,
    )


@router.post("/transactions/{transaction_id}/match", response_model=TransactionResponse)
def match_transaction(
    transaction_id: str,
    request_body: MatchTransactionRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Attach a pending transaction to a bill instance and mark the instance PAID"""
    request_id = get_request_id(request)
    transaction_id = parse_id(transaction_id, "transaction ID")
    bill_instance_id = parse_id(request_body.bill_instance_id, "bill instance ID")

    matcher = ReconciliationMatcher(db)
    try:
        matcher.match_transaction(transaction_id, bill_instance_id, resolved_by=request_body.resolved_by)
        db.commit()
    except DomainException as e:
        db.rollback()
        raise http_error(e, request_id)

    return _transaction_response(matcher.transactions.get(transaction_id))


@router.post("/transactions/{transaction_id}/approve", response_model=TransactionResponse)
def approve_transaction(
    transaction_id: str,
    request: Request,
    request_body: ApproveTransactionRequest | None = None,
    db: Session = Depends(get_db),
):
    """Confirm a pending transaction as a company expense without a bill"""
    request_id = get_request_id(request)
    transaction_id = parse_id(transaction_id, "transaction ID")
    resolved_by = request_body.resolved_by if request_body else None

    try:
        txn = ReconciliationMatcher(db).approve_transaction(transaction_id, resolved_by=resolved_by)
        db.commit()
    except DomainException as e:
        db.rollback()
        raise http_error(e, request_id)

    return _transaction_response(txn)
