"""POST /v1/jobs/{name}, POST /v1/cron/maintenance - Manual and cron triggers for batch passes"""

import hmac
from fastapi import APIRouter, Depends, Header, HTTPException, Request

from expense_engine.api.v1.schemas import JobResponse
from expense_engine.api.dependencies import get_job_runner, get_request_id, http_error
from expense_engine.config import settings
from expense_engine.domain.exceptions import DomainException
from expense_engine.services.scheduler import JobRunner

router = APIRouter()


def _trigger(runner: JobRunner, name: str, request_id: str) -> JobResponse:
    try:
        outcome = runner.run(name)
    except DomainException as e:
        raise http_error(e, request_id)
    return JobResponse(**outcome)


@router.post("/jobs/{name}", response_model=JobResponse)
def trigger_job(name: str, request: Request, runner: JobRunner = Depends(get_job_runner)):
    """
    Run generate | sync | consolidate | maintenance now.

    A trigger that finds a pass already running returns status "skipped_busy".
    """
    return _trigger(runner, name, get_request_id(request))


@router.post("/cron/maintenance", response_model=JobResponse)
def cron_maintenance(
    request: Request,
    authorization: str | None = Header(None),
    runner: JobRunner = Depends(get_job_runner),
):
    """Maintenance pass for an external cron; requires the bearer secret when one is configured"""
    if settings.cron_secret:
        expected = f"Bearer {settings.cron_secret}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")
    return _trigger(runner, "maintenance", get_request_id(request))
