"""Ledger source HTTP client for refreshing accounts and fetching transactions"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from expense_engine.domain.models import LedgerEntry
from expense_engine.domain.exceptions import LedgerSourceError
from expense_engine.config import settings


def _parse_timestamp(value) -> Optional[datetime]:
    """Accept ISO-8601 strings (with or without 'Z') or unix epoch seconds"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LedgerClient:
    """Client for the external bank-aggregation ledger API"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        token: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.ledger_api_base
        self.timeout = timeout or settings.http_timeout_seconds
        self.token = token or settings.ledger_api_token
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=self.transport,
        )

    async def refresh(self, account_id: str) -> bool:
        """
        Ask the source to refresh an account before listing.

        Best effort: failures are logged and reported as False, never raised.
        """
        async with self._client() as client:
            try:
                response = await client.post(f"/accounts/{account_id}/refresh")
                response.raise_for_status()
                return True
            except httpx.HTTPError as e:
                logging.warning(
                    f"Ledger refresh failed: {e}",
                    extra={"step": "ledger_refresh", "account_id": account_id},
                )
                return False

    async def list_transactions(self, account_id: str) -> List[LedgerEntry]:
        """
        Fetch the transactions the source currently reports for an account.

        Raises:
            LedgerSourceError: On timeout, HTTP errors, or invalid response
        """
        async with self._client() as client:
            try:
                response = await client.get(f"/accounts/{account_id}/transactions")
                response.raise_for_status()
                data = response.json()
                if not isinstance(data, dict) or not isinstance(data.get("transactions", []), list):
                    raise LedgerSourceError("Invalid transaction data from ledger: unexpected payload shape")

                # Parse and validate transaction data
                return [
                    LedgerEntry(
                        external_id=str(txn["external_id"]),
                        amount_cents=int(txn["amount_cents"]),
                        description=txn.get("description") or "",
                        merchant_name=txn.get("merchant_name"),
                        transacted_at=_parse_timestamp(txn["transacted_at"]),
                        posted_at=_parse_timestamp(txn.get("posted_at")),
                        status=txn.get("status") or "posted",
                    )
                    for txn in data.get("transactions", [])
                ]

            except httpx.TimeoutException as e:
                raise LedgerSourceError(f"Ledger API timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise LedgerSourceError(f"Ledger API error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise LedgerSourceError(f"Ledger API unreachable: {e}") from e
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                raise LedgerSourceError(f"Invalid transaction data from ledger: {e}") from e
