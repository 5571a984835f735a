"""POST /v1/sync - Pull transactions from connected ledger accounts"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from expense_engine.api.v1.schemas import SyncRequest, SyncResponse
from expense_engine.api.dependencies import get_job_runner, get_request_id, http_error, parse_id
from expense_engine.domain.exceptions import DomainException
from expense_engine.services.scheduler import JobRunner

router = APIRouter()


@router.post("/sync", response_model=SyncResponse)
def sync_transactions(
    request_body: SyncRequest,
    request: Request,
    runner: JobRunner = Depends(get_job_runner),
):
    """
    Sync one account, or every active account.

    Returns:
        Counts of stored, auto-skipped and auto-matched transactions, plus
        per-account errors (a failing account never fails the request)
    """
    request_id = get_request_id(request)
    account_id = parse_id(request_body.account_id, "account ID") if request_body.account_id else None

    try:
        outcome = runner.run("sync", account_id=account_id)
    except DomainException as e:
        raise http_error(e, request_id)

    if outcome["status"] == "skipped_busy":
        raise HTTPException(status_code=409, detail="A batch pass is already running")
    if outcome["status"] != "ok":
        logging.error(f"Sync failed: {outcome.get('error')}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Ledger sync failed")

    result = outcome["result"]
    return SyncResponse(
        accounts_synced=result["accounts_synced"],
        transactions_added=result["transactions_added"],
        transactions_skipped=result["transactions_skipped"],
        transactions_matched=result["transactions_matched"],
        errors=result["errors"],
    )
