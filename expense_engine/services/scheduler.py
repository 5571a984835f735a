"""Batch job runner and interval scheduler guarded by the shared job lock"""

import asyncio
import time
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.orm import Session

from expense_engine.config import settings
from expense_engine.domain.exceptions import ConfigurationError, DomainException
from expense_engine.infrastructure.clients.ledger import LedgerClient
from expense_engine.infrastructure.clients.notifier import NotificationClient, deliver_pending
from expense_engine.infrastructure.database.locks import DatabaseJobLock
from expense_engine.infrastructure.database.session import SessionLocal
from expense_engine.infrastructure.observability.logging import log_job_skipped
from expense_engine.infrastructure.observability.metrics import job_duration_histogram, job_skipped_busy_counter
from expense_engine.services.consolidation import ConsolidationService
from expense_engine.services.generator import generate_bills, mark_overdue_instances
from expense_engine.services.reconciliation import ReconciliationMatcher

JOBS = ("generate", "sync", "consolidate", "maintenance")


class JobRunner:
    """
    Runs one batch pass under the shared lock.

    Requirements:
    - Only one pass at a time across all processes
    - A trigger that finds the lock held is dropped, never queued
    - Each pass uses its own session and commits once at the end
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        ledger_client_factory: Callable[[], LedgerClient] = LedgerClient,
        notification_client_factory: Callable[[], NotificationClient] = NotificationClient,
    ):
        self.session_factory = session_factory
        self.ledger_client_factory = ledger_client_factory
        self.notification_client_factory = notification_client_factory

    def run(self, job: str, **options) -> Dict[str, Any]:
        """
        Execute a job by name.

        Returns:
            {"job", "status": "ok" | "skipped_busy" | "failed", "result" | "error"}

        Raises:
            DomainException: Invalid request (unknown job, bad period, unknown id)
        """
        if job not in JOBS:
            raise ConfigurationError(f"Unknown job: {job!r}")

        lock = DatabaseJobLock(self.session_factory)
        if not lock.acquire():
            job_skipped_busy_counter.labels(job=job).inc()
            log_job_skipped(job)
            return {"job": job, "status": "skipped_busy"}

        start_time = time.time()
        status = "failed"
        try:
            db = self.session_factory()
            try:
                result = getattr(self, f"_run_{job}")(db, **options)
                db.commit()
                status = "ok"
            except DomainException:
                db.rollback()
                raise
            except Exception as e:
                db.rollback()
                logging.error(f"Job {job} failed: {e}", extra={"step": "job_failed", "job": job})
                return {"job": job, "status": "failed", "error": str(e)}
            finally:
                db.close()
        finally:
            job_duration_histogram.labels(job=job, status=status).observe(time.time() - start_time)
            lock.release()

        return {"job": job, "status": status, "result": result}

    def _deliver_notifications(self, db: Session) -> Dict[str, int]:
        # Runs after the pass is committed so delivery never affects it
        db.commit()
        return asyncio.run(deliver_pending(db, self.notification_client_factory()))

    def _run_generate(self, db: Session, **options) -> Dict[str, Any]:
        result = asdict(generate_bills(db, **options))
        result["overdue_marked"] = mark_overdue_instances(db, options.get("today"))
        result["notifications"] = self._deliver_notifications(db)
        return result

    def _run_sync(self, db: Session, account_id=None) -> Dict[str, Any]:
        matcher = ReconciliationMatcher(db, self.ledger_client_factory())
        result = asdict(asyncio.run(matcher.sync(account_id)))
        result["notifications"] = self._deliver_notifications(db)
        return result

    def _run_consolidate(self, db: Session, action: str = "all") -> Dict[str, Any]:
        return ConsolidationService(db).apply(action)

    def _run_maintenance(self, db: Session) -> Dict[str, Any]:
        result = ConsolidationService(db).apply("all")
        result["overdue_marked"] = mark_overdue_instances(db)
        result["notifications"] = self._deliver_notifications(db)
        return result


def run_job(name: str, **options) -> Dict[str, Any]:
    return JobRunner().run(name, **options)


class Scheduler:
    """Runs each job on its interval inside the API process"""

    def __init__(self, runner: JobRunner, intervals: Optional[Dict[str, int]] = None):
        self.runner = runner
        self.intervals = intervals or {
            "sync": settings.sync_interval_seconds,
            "generate": settings.generation_interval_seconds,
            "maintenance": settings.maintenance_interval_seconds,
        }
        self._tasks: List[asyncio.Task] = []

    async def _loop(self, job: str, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                # Worker thread keeps the event loop responsive
                await asyncio.to_thread(self.runner.run, job)
            except Exception as e:
                logging.error(f"Scheduled job {job} failed: {e}", extra={"step": "job_failed", "job": job})

    def start(self) -> None:
        for job, interval in self.intervals.items():
            self._tasks.append(asyncio.create_task(self._loop(job, interval), name=f"job-{job}"))
        logging.info("Scheduler started", extra={"step": "scheduler_start", "jobs": list(self.intervals)})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
