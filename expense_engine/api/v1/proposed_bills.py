"""POST /v1/proposed-bills[/{id}/approve|skip] - Review of extracted bill candidates"""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from expense_engine.api.v1.schemas import (
    ProposedBillApproveRequest,
    ProposedBillApproveResponse,
    ProposedBillCreateRequest,
    ProposedBillResponse,
    ProposedBillSkipRequest,
    ProposedBillSkipResponse,
)
from expense_engine.api.dependencies import get_request_id, http_error, parse_id
from expense_engine.domain.exceptions import DomainException
from expense_engine.infrastructure.database.session import get_db
from expense_engine.services.proposed_bills import ProposedBillService

router = APIRouter()


@router.post("/proposed-bills", response_model=ProposedBillResponse)
def ingest_proposed_bill(
    request_body: ProposedBillCreateRequest,
    response: Response,
    db: Session = Depends(get_db),
):
    """Store a proposed bill; re-sending the same (source, source_ref) returns the stored record"""
    record, created = ProposedBillService(db).ingest(**request_body.model_dump())
    db.commit()
    response.status_code = 201 if created else 200
    return ProposedBillResponse(id=str(record.id), status=record.status.value, created=created)


@router.post("/proposed-bills/{proposed_id}/approve", response_model=ProposedBillApproveResponse)
def approve_proposed_bill(
    proposed_id: str,
    request: Request,
    request_body: ProposedBillApproveRequest | None = None,
    db: Session = Depends(get_db),
):
    """
    Approve a proposed bill into a BillInstance.

    Overrides for vendor, category, amount and due date replace the extracted values.
    """
    request_id = get_request_id(request)
    proposed_id = parse_id(proposed_id, "proposed bill ID")
    overrides = request_body.model_dump(exclude_none=True) if request_body else {}
    if "recurring_bill_id" in overrides:
        overrides["recurring_bill_id"] = parse_id(overrides["recurring_bill_id"], "recurring bill ID")

    try:
        result = ProposedBillService(db).approve(proposed_id, **overrides)
        db.commit()
    except DomainException as e:
        db.rollback()
        raise http_error(e, request_id)

    return ProposedBillApproveResponse(**result)


@router.post("/proposed-bills/{proposed_id}/skip", response_model=ProposedBillSkipResponse)
def skip_proposed_bill(
    proposed_id: str,
    request: Request,
    request_body: ProposedBillSkipRequest | None = None,
    db: Session = Depends(get_db),
):
    """Reject a proposed bill, optionally rejecting other pending ones from the same vendor"""
    request_id = get_request_id(request)
    proposed_id = parse_id(proposed_id, "proposed bill ID")
    body = request_body or ProposedBillSkipRequest()

    try:
        result = ProposedBillService(db).skip(
            proposed_id,
            reason=body.reason,
            create_rule=body.create_rule,
            vendor_pattern=body.vendor_pattern,
        )
        db.commit()
    except DomainException as e:
        db.rollback()
        raise http_error(e, request_id)

    return ProposedBillSkipResponse(**result)
