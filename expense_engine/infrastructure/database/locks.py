"""Database-backed job lock shared by every process running batch passes"""

import os
import socket
import uuid
from datetime import timedelta
from typing import Callable, Optional
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from expense_engine.config import settings
from expense_engine.infrastructure.database.models import JobLock, utcnow

JOB_LOCK_NAME = "expense-engine"


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class DatabaseJobLock:
    """
    Lease on a job_lock row, acquired by compare-and-set.

    Requirements:
    - Only one holder at a time across processes
    - Lease expires after ttl_seconds so a crashed holder never wedges the jobs
    - Acquisition never blocks: callers drop the trigger when it fails
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        name: str = JOB_LOCK_NAME,
        ttl_seconds: Optional[int] = None,
        holder: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.name = name
        self.ttl_seconds = ttl_seconds or settings.job_lock_ttl_seconds
        self.holder = holder or default_holder()

    def _ensure_row(self, db: Session) -> None:
        if db.get(JobLock, self.name) is not None:
            return
        try:
            db.add(JobLock(name=self.name))
            db.commit()
        except IntegrityError:
            # Another process created it first
            db.rollback()

    def acquire(self) -> bool:
        db = self.session_factory()
        try:
            self._ensure_row(db)
            now = utcnow()
            result = db.execute(
                update(JobLock)
                .where(
                    JobLock.name == self.name,
                    or_(JobLock.holder.is_(None), JobLock.expires_at < now),
                )
                .values(
                    holder=self.holder,
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=self.ttl_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def release(self) -> None:
        db = self.session_factory()
        try:
            db.execute(
                update(JobLock)
                .where(JobLock.name == self.name, JobLock.holder == self.holder)
                .values(holder=None, expires_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
