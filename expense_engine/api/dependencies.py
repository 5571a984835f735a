"""Dependency injection for FastAPI endpoints"""

import logging
from fastapi import HTTPException, Request
from expense_engine.domain.exceptions import (
    DomainException,
    InvalidStateError,
    LedgerSourceError,
    NotFoundError,
)
from expense_engine.infrastructure.database.repositories import as_uuid
from expense_engine.services.scheduler import JobRunner


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_job_runner() -> JobRunner:
    """Provide batch job runner bound to the application database"""
    return JobRunner()


def parse_id(value, label: str = "ID") -> str:
    """Validate a UUID path/body parameter; 400 when malformed"""
    try:
        return str(as_uuid(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label} format")


def http_error(e: DomainException, request_id: str) -> HTTPException:
    """Map a domain exception onto the HTTP status the admin surface expects"""
    if isinstance(e, NotFoundError):
        status_code = 404
    elif isinstance(e, InvalidStateError):
        status_code = 409
    elif isinstance(e, LedgerSourceError):
        status_code = 503
    else:
        status_code = 422
    logging.warning(f"{type(e).__name__}: {e}", extra={"request_id": request_id, "status": status_code})
    return HTTPException(status_code=status_code, detail=str(e))
