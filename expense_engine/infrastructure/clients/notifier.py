"""Notification webhook client with exponential backoff retry logic"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from expense_engine.config import settings
from expense_engine.infrastructure.database.models import utcnow
from expense_engine.infrastructure.database.repositories import NotificationRepository
from expense_engine.infrastructure.observability.metrics import webhook_latency_histogram, webhook_failure_counter


class NotificationClient:
    """Client for delivering bill events to the notification sink"""

    def __init__(
        self,
        webhook_url: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float | None = None,
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base if backoff_base is None else backoff_base
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    async def send_event(self, payload: Dict[str, Any]) -> None:
        """
        Send a notification event with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s, 16s (base^attempt)
        - Retries on 5xx errors and network failures
        - Tracks latency histogram and failure counter

        Args:
            payload: Event data ({type, vendor, amount_cents, due_date})
        """
        attempt = 0
        async with httpx.AsyncClient(transport=self.transport) as client:
            while attempt < self.max_retries:
                try:
                    with webhook_latency_histogram.time():
                        response = await client.post(
                            self.webhook_url,
                            json=payload,
                            timeout=settings.http_timeout_seconds,
                        )
                        response.raise_for_status()
                        return  # Success

                except (httpx.HTTPStatusError, httpx.RequestError):
                    attempt += 1
                    webhook_failure_counter.inc()

                    if attempt >= self.max_retries:
                        # Final failure after all retries
                        raise

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)


async def deliver_pending(db: Session, client: NotificationClient, max_attempts: int = 3) -> Dict[str, int]:
    """
    Deliver queued notification events.

    Events stay queued while no webhook is configured. An event that keeps failing
    is marked failed after max_attempts delivery runs.
    """
    outcome = {"delivered": 0, "failed": 0}
    if not client.configured:
        return outcome

    for event in NotificationRepository(db).pending(max_attempts):
        event.attempts += 1
        event.last_attempt_at = utcnow()
        try:
            await client.send_event(event.payload)
            event.status = "delivered"
            event.last_error = None
            outcome["delivered"] += 1
        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            event.last_error = str(e)
            if event.attempts >= max_attempts:
                event.status = "failed"
            outcome["failed"] += 1
            logging.warning(
                f"Notification delivery failed: {e}",
                extra={"step": "notification_failed", "event_id": str(event.id)},
            )
        db.flush()
    return outcome
