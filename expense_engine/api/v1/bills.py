"""POST /v1/bills/generate - Project recurring bills into per-period instances"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from expense_engine.api.v1.schemas import GenerateRequest, GenerateResponse
from expense_engine.api.dependencies import get_job_runner, get_request_id, http_error, parse_id
from expense_engine.domain.exceptions import DomainException
from expense_engine.services.scheduler import JobRunner

router = APIRouter()


@router.post("/bills/generate", response_model=GenerateResponse)
def generate_bill_instances(
    request_body: GenerateRequest,
    request: Request,
    runner: JobRunner = Depends(get_job_runner),
):
    """
    Generate bill instances for active definitions.

    Flow:
    1. Take the shared job lock (409 when another pass is running)
    2. Create missing instances for every definition x period in the window
    3. Mark past-due instances overdue
    4. Return created instances and per-item errors
    """
    request_id = get_request_id(request)
    options = request_body.model_dump(exclude_none=True)
    if "recurring_bill_id" in options:
        options["recurring_bill_id"] = parse_id(options["recurring_bill_id"], "recurring bill ID")

    try:
        outcome = runner.run("generate", **options)
    except DomainException as e:
        raise http_error(e, request_id)

    if outcome["status"] == "skipped_busy":
        raise HTTPException(status_code=409, detail="A batch pass is already running")
    if outcome["status"] != "ok":
        logging.error(f"Generation failed: {outcome.get('error')}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Bill generation failed")

    result = outcome["result"]
    return GenerateResponse(
        created=len(result["created"]),
        skipped_existing=result["skipped_existing"],
        skipped_not_applicable=result["skipped_not_applicable"],
        skipped_no_amount=result["skipped_no_amount"],
        overdue_marked=result["overdue_marked"],
        results=result["created"],
        errors=result["errors"],
    )
