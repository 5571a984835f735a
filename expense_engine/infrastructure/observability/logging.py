"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from expense_engine.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_generation_pass(created: int, skipped_existing: int, errors: int, duration_ms: float) -> None:
    """Log outcome of a bill generation pass"""
    logging.info(
        "Bill generation completed",
        extra={
            "step": "generation_complete",
            "created": created,
            "skipped_existing": skipped_existing,
            "errors": errors,
            "duration_ms": duration_ms,
        },
    )


def log_sync_pass(accounts_synced: int, transactions_added: int, errors: int, duration_ms: float) -> None:
    """Log outcome of a ledger sync pass"""
    logging.info(
        "Ledger sync completed",
        extra={
            "step": "sync_complete",
            "accounts_synced": accounts_synced,
            "transactions_added": transactions_added,
            "errors": errors,
            "duration_ms": duration_ms,
        },
    )


def log_job_skipped(job: str) -> None:
    """Log a trigger dropped because another pass holds the lock"""
    logging.warning(
        "Batch pass already running, trigger dropped",
        extra={"step": "job_skipped_busy", "job": job},
    )
