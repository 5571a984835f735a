"""Reconciliation matcher - pulls ledger transactions, applies skip rules, settles bill instances"""

import asyncio
import time
import logging
from typing import List, Optional, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from expense_engine.config import settings
from expense_engine.domain.exceptions import InvalidStateError, LedgerSourceError, NotFoundError
from expense_engine.domain.matching import InstanceMatch, best_instance_match
from expense_engine.domain.models import (
    ApprovalStatus,
    InstanceStatus,
    ItemError,
    LedgerEntry,
    NotificationType,
    SyncResult,
)
from expense_engine.infrastructure.clients.ledger import LedgerClient
from expense_engine.infrastructure.database.models import BillInstance, LedgerAccount, LedgerTransaction, utcnow
from expense_engine.infrastructure.database.repositories import (
    BillInstanceRepository,
    LedgerAccountRepository,
    LedgerTransactionRepository,
    NotificationRepository,
)
from expense_engine.infrastructure.observability.logging import log_sync_pass
from expense_engine.infrastructure.observability.metrics import (
    ledger_fetch_failures_counter,
    transactions_ingested_counter,
    transactions_matched_counter,
)
from expense_engine.services.generator import recompute_splits
from expense_engine.services.skip_rules import SkipRuleService

FetchOutcome = Tuple[LedgerAccount, Optional[List[LedgerEntry]], Optional[str]]


class ReconciliationMatcher:
    """
    Syncs ledger accounts into the transaction table.

    Flow per account:
    1. Refresh hint, then list transactions (concurrent, bounded, with timeout)
    2. Upsert by external id (already-stored transactions are ignored)
    3. Apply skip rules to each new transaction
    4. Attach remaining outflows to a matching open bill instance
    """

    def __init__(
        self,
        db: Session,
        ledger_client: Optional[LedgerClient] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.ledger_client = ledger_client or LedgerClient()
        self.concurrency = concurrency or settings.ledger_sync_concurrency
        # Covers the refresh hint plus the listing call
        self.timeout = timeout or settings.http_timeout_seconds * 2
        self.accounts = LedgerAccountRepository(db)
        self.transactions = LedgerTransactionRepository(db)
        self.instances = BillInstanceRepository(db)
        self.notifications = NotificationRepository(db)
        self.skip_rules = SkipRuleService(db)

    async def _fetch_account(self, external_id: str) -> List[LedgerEntry]:
        await self.ledger_client.refresh(external_id)
        return await self.ledger_client.list_transactions(external_id)

    async def _fetch(self, account: LedgerAccount, semaphore: asyncio.Semaphore) -> FetchOutcome:
        async with semaphore:
            try:
                entries = await asyncio.wait_for(
                    self._fetch_account(account.external_account_id), timeout=self.timeout
                )
                return account, entries, None
            except asyncio.TimeoutError:
                ledger_fetch_failures_counter.inc()
                return account, None, f"Ledger source timed out after {self.timeout}s"
            except LedgerSourceError as e:
                ledger_fetch_failures_counter.inc()
                return account, None, str(e)
            except Exception as e:
                # Any other client fault stays scoped to this account
                ledger_fetch_failures_counter.inc()
                logging.error(
                    f"Unexpected ledger fetch failure: {e}",
                    extra={"step": "sync_fetch_failed", "account_id": str(account.id)},
                )
                return account, None, f"Unexpected ledger failure: {type(e).__name__}: {e}"

    async def sync(self, account_id=None) -> SyncResult:
        """
        Sync one account or every ACTIVE account.

        A failing account is recorded in result.errors and never stops the others.

        Raises:
            NotFoundError: account_id given but no such active account
        """
        start_time = time.time()
        accounts = self.accounts.list_active(account_id)
        if account_id is not None and not accounts:
            raise NotFoundError(f"Active ledger account {account_id} not found")

        semaphore = asyncio.Semaphore(self.concurrency)
        fetched = await asyncio.gather(*(self._fetch(account, semaphore) for account in accounts))

        result = SyncResult()
        rules = self.skip_rules.load_rules()
        open_instances = self.instances.open_instances()

        # Writes are serial through the one session
        for account, entries, error in fetched:
            if error is None:
                try:
                    with self.db.begin_nested():
                        added, skipped, matched = self._ingest(account, entries, rules, open_instances)
                    result.accounts_synced += 1
                    result.transactions_added += added
                    result.transactions_skipped += skipped
                    result.transactions_matched += matched
                    continue
                except SQLAlchemyError as e:
                    error = f"Failed to store transactions: {e}"
                    open_instances = self.instances.open_instances()

            self.accounts.mark_sync_failed(account, error)
            result.errors.append(ItemError(item=account.label, reason=error))
            logging.warning(
                f"Ledger sync failed for {account.label}: {error}",
                extra={"step": "sync_account_failed", "account_id": str(account.id)},
            )

        duration_ms = (time.time() - start_time) * 1000
        log_sync_pass(result.accounts_synced, result.transactions_added, len(result.errors), duration_ms)
        return result

    def _ingest(
        self,
        account: LedgerAccount,
        entries: List[LedgerEntry],
        rules,
        open_instances: List[BillInstance],
    ) -> Tuple[int, int, int]:
        added = skipped = matched = 0
        for entry in entries:
            txn = self.transactions.insert_if_new(account, entry)
            if txn is None:
                continue
            added += 1
            transactions_ingested_counter.inc()

            if self.skip_rules.apply_to_transaction(txn, rules) is not None:
                skipped += 1
                continue
            if self.auto_match(txn, account, open_instances) is not None:
                matched += 1

        self.accounts.mark_synced(account)
        return added, skipped, matched

    def auto_match(
        self,
        txn: LedgerTransaction,
        account: LedgerAccount,
        candidates: List[BillInstance],
    ) -> Optional[InstanceMatch]:
        """Attach an outflow to the open instance it most likely pays, if any"""
        if txn.amount_cents >= 0 or txn.approval_status != ApprovalStatus.PENDING:
            return None
        match = best_instance_match(
            txn.amount_cents,
            txn.transacted_at.date(),
            txn.description,
            txn.merchant_name,
            candidates,
            settings.match_amount_tolerance_percent,
            settings.match_date_window_days,
        )
        if match is None:
            return None

        self.attach(txn, match.instance, match.confidence, paid_via=account.label, resolved_by="auto-match")
        candidates.remove(match.instance)
        transactions_matched_counter.inc()
        return match

    def attach(
        self,
        txn: LedgerTransaction,
        instance: BillInstance,
        confidence: int,
        paid_via: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> None:
        """
        Link a transaction to the instance it settles and cascade PAID.

        An instance without a known amount takes the payment amount and is re-split.
        """
        txn.approval_status = ApprovalStatus.APPROVED
        txn.matched_bill_instance_id = instance.id
        txn.match_confidence = confidence
        txn.resolved_at = utcnow()
        txn.resolved_by = resolved_by

        if instance.amount_cents <= 0:
            instance.amount_cents = abs(txn.amount_cents)
            recompute_splits(self.db, instance)

        self.instances.mark_paid(
            instance,
            paid_at=txn.transacted_at,
            paid_via=paid_via,
            settled_by_external_id=txn.external_id,
        )
        self.notifications.enqueue(
            NotificationType.PAYMENT_CONFIRMED, instance.vendor, instance.amount_cents, instance.due_date
        )

    def _pending_transaction(self, transaction_id) -> LedgerTransaction:
        txn = self.transactions.get(transaction_id)
        if txn is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if txn.approval_status != ApprovalStatus.PENDING:
            raise InvalidStateError(f"Transaction {transaction_id} is already {txn.approval_status.value}")
        return txn

    def match_transaction(self, transaction_id, bill_instance_id, resolved_by: Optional[str] = None) -> BillInstance:
        """
        Operator attaches a pending transaction to a specific bill instance.

        Raises:
            NotFoundError: Unknown transaction or instance
            InvalidStateError: Transaction already resolved, or instance already paid
        """
        txn = self._pending_transaction(transaction_id)
        instance = self.instances.get(bill_instance_id)
        if instance is None:
            raise NotFoundError(f"Bill instance {bill_instance_id} not found")
        if instance.status == InstanceStatus.PAID:
            raise InvalidStateError(f"Bill instance {bill_instance_id} is already paid")

        self.attach(txn, instance, 100, paid_via=txn.ledger_account.label, resolved_by=resolved_by or "manual")
        transactions_matched_counter.inc()
        return instance

    def approve_transaction(self, transaction_id, resolved_by: Optional[str] = None) -> LedgerTransaction:
        """Operator confirms a company expense that has no bill instance"""
        txn = self._pending_transaction(transaction_id)
        txn.approval_status = ApprovalStatus.APPROVED
        txn.resolved_at = utcnow()
        txn.resolved_by = resolved_by or "manual"
        self.db.flush()
        return txn
