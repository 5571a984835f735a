"""Integration tests for the ledger source and notification webhook clients"""

import httpx
import pytest
from datetime import date, datetime, timezone
from pathlib import Path
from expense_engine.config import settings
from expense_engine.domain.exceptions import LedgerSourceError
from expense_engine.domain.models import NotificationType
from expense_engine.infrastructure.clients.ledger import LedgerClient, _parse_timestamp
from expense_engine.infrastructure.clients.notifier import NotificationClient, deliver_pending
from expense_engine.infrastructure.database.repositories import NotificationRepository
from stubs.ledger_server.main import app as ledger_stub_app

STUB_DIR = Path(__file__).resolve().parents[2] / "ledger_stub"


@pytest.fixture
def stub_ledger(monkeypatch) -> LedgerClient:
    """Ledger client wired to the mock ledger server in-process"""
    monkeypatch.setenv("LEDGER_STUB_DIR", str(STUB_DIR))
    return LedgerClient(base_url="http://ledger.test", transport=httpx.ASGITransport(app=ledger_stub_app))


def _mock_ledger(handler, token=None) -> LedgerClient:
    return LedgerClient(base_url="http://ledger.test", token=token, transport=httpx.MockTransport(handler))


async def test_list_transactions_from_stub(stub_ledger):
    entries = await stub_ledger.list_transactions("acct_ops")

    assert [e.external_id for e in entries] == ["txn_ops_0001", "txn_ops_0002", "txn_ops_0003"]
    assert entries[0].amount_cents == -4217
    assert entries[0].transacted_at == datetime(2025, 3, 3, 15, 12, tzinfo=timezone.utc)
    assert entries[1].merchant_name == "GitHub"
    assert entries[2].posted_at is None
    assert entries[2].status == "pending"


async def test_refresh_from_stub(stub_ledger):
    assert await stub_ledger.refresh("acct_ops") is True
    assert await stub_ledger.refresh("acct_missing") is False


async def test_unknown_account_raises(stub_ledger):
    with pytest.raises(LedgerSourceError, match="404"):
        await stub_ledger.list_transactions("acct_missing")


async def test_malformed_payload_raises():
    client = _mock_ledger(lambda request: httpx.Response(200, json={"transactions": [{"amount_cents": 100}]}))

    with pytest.raises(LedgerSourceError, match="Invalid transaction data"):
        await client.list_transactions("acct_ops")


@pytest.mark.parametrize("payload", [[{"oops": 1}], "ok", {"transactions": {"external_id": "tx_1"}}])
async def test_unexpected_payload_shape_raises(payload):
    client = _mock_ledger(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(LedgerSourceError, match="unexpected payload shape"):
        await client.list_transactions("acct_ops")


async def test_timeout_raises():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(LedgerSourceError, match="timeout"):
        await _mock_ledger(handler).list_transactions("acct_ops")


async def test_bearer_token_sent():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"transactions": []})

    assert await _mock_ledger(handler, token="secret").list_transactions("acct_ops") == []
    assert seen["auth"] == "Bearer secret"


def test_parse_timestamp_formats():
    assert _parse_timestamp("2025-03-03T15:12:00Z") == datetime(2025, 3, 3, 15, 12, tzinfo=timezone.utc)
    assert _parse_timestamp("2025-03-03T15:12:00") == datetime(2025, 3, 3, 15, 12, tzinfo=timezone.utc)
    assert _parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert _parse_timestamp(None) is None


class FlakyWebhook:
    """Fails the first `failures` calls with a 503"""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.calls <= self.failures:
            return httpx.Response(503)
        return httpx.Response(200)


def _notifier(handler) -> NotificationClient:
    return NotificationClient("http://notify.test/hook", transport=httpx.MockTransport(handler), backoff_base=0)


async def test_send_event_retries_until_success():
    webhook = FlakyWebhook(failures=2)

    await _notifier(webhook).send_event({"type": "new_bill"})

    assert webhook.calls == 3


async def test_send_event_gives_up():
    webhook = FlakyWebhook(failures=100)
    client = _notifier(webhook)

    with pytest.raises(httpx.HTTPStatusError):
        await client.send_event({"type": "new_bill"})
    assert webhook.calls == client.max_retries


async def test_deliver_pending_noop_without_webhook(db, monkeypatch):
    monkeypatch.setattr(settings, "notification_webhook_url", None)
    NotificationRepository(db).enqueue(NotificationType.NEW_BILL, "GitHub", 12000, date(2025, 3, 15))

    outcome = await deliver_pending(db, NotificationClient())

    assert outcome == {"delivered": 0, "failed": 0}


async def test_deliver_pending_marks_failed_after_max_attempts(db):
    """Test an event that keeps failing is retried across runs, then marked failed"""
    event = NotificationRepository(db).enqueue(NotificationType.PAYMENT_CONFIRMED, "GitHub", 12000)
    client = _notifier(FlakyWebhook(failures=1000))

    for _ in range(3):
        outcome = await deliver_pending(db, client, max_attempts=3)
        assert outcome == {"delivered": 0, "failed": 1}

    assert event.attempts == 3
    assert event.status == "failed"
    assert "503" in event.last_error
    assert await deliver_pending(db, client, max_attempts=3) == {"delivered": 0, "failed": 0}


async def test_deliver_pending_success(db):
    event = NotificationRepository(db).enqueue(NotificationType.NEW_BILL, "Figma", 4500, date(2025, 3, 15))
    webhook = FlakyWebhook(failures=0)

    outcome = await deliver_pending(db, _notifier(webhook))

    assert outcome == {"delivered": 1, "failed": 0}
    assert event.status == "delivered"
    assert event.attempts == 1
