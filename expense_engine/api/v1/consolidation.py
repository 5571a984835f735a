"""GET /v1/consolidation/preview, POST /v1/consolidation/apply - Duplicate cleanup"""

import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from expense_engine.api.v1.schemas import ConsolidationApplyRequest
from expense_engine.api.dependencies import get_job_runner, get_request_id, http_error
from expense_engine.domain.exceptions import DomainException
from expense_engine.infrastructure.database.session import get_db
from expense_engine.services.consolidation import ConsolidationService
from expense_engine.services.scheduler import JobRunner

router = APIRouter()


@router.get("/consolidation/preview")
def preview_consolidation(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Dry run: duplicate rule and definition groups that apply would merge.

    Returns:
        {duplicate_rule_groups[], duplicate_bill_groups[], summary}
    """
    return ConsolidationService(db).preview()


@router.post("/consolidation/apply")
def apply_consolidation(
    request_body: ConsolidationApplyRequest,
    request: Request,
    runner: JobRunner = Depends(get_job_runner),
) -> Dict[str, Any]:
    """Merge duplicates (rules | bills), re-apply rules to pending transactions (apply-rules), or all"""
    request_id = get_request_id(request)

    try:
        outcome = runner.run("consolidate", action=request_body.action)
    except DomainException as e:
        raise http_error(e, request_id)

    if outcome["status"] == "skipped_busy":
        raise HTTPException(status_code=409, detail="A batch pass is already running")
    if outcome["status"] != "ok":
        logging.error(f"Consolidation failed: {outcome.get('error')}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Consolidation failed")

    return outcome["result"]
