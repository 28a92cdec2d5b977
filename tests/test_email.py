from datetime import datetime, timezone

import httpx
import pytest
from tenacity import wait_none

from coinsub.crypto import Coin
from coinsub.notifications import EmailMessage, EmailNotifier, NotificationError
from coinsub.subscription.models import Plan, SubscriptionRecord, SubscriptionStatus


def _subscription(**overrides):
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    values = dict(
        id="sub-1",
        email="alice@example.com",
        plan=Plan.monthly,
        fiat_amount=5.0,
        fiat_currency="USD",
        coin=Coin.btc,
        crypto_amount=0.0001,
        conversion_rate=50000.0,
        interval="month",
        status=SubscriptionStatus.active,
        receiving_address="bc1qreceive",
        issuance_info=None,
        start_at=now,
        expiration_at=datetime(2024, 4, 1, tzinfo=timezone.utc),
        last_payment_at=now,
        reminder_sent=False,
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return SubscriptionRecord(**values)


def _notifier(handler, **kwargs):
    options = dict(api_key="key-test", domain="mg.example.com", from_email="billing@example.com", reply_to="help@example.com")
    options.update(kwargs)
    return EmailNotifier(
        http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **options,
    )


async def test_send_posts_to_mailgun():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"message": "Queued"})

    delivered = await _notifier(handler).send_payment_reminder(_subscription(), 3)

    assert delivered is True
    request = seen[0]
    assert str(request.url) == "https://api.mailgun.net/v3/mg.example.com/messages"
    assert request.headers["authorization"].startswith("Basic ")
    body = request.content.decode("utf-8")
    assert "to=alice%40example.com" in body
    assert "h%3AReply-To=help%40example.com" in body
    assert "Expires+in+3+Days" in body


async def test_unconfigured_notifier_skips_delivery():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    notifier = _notifier(handler, api_key="")

    assert notifier.configured is False
    assert await notifier.send(EmailMessage(to="a@example.com", subject="s", text="t", template="test")) is False


async def test_http_error_raises_notification_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Forbidden"})

    with pytest.raises(NotificationError):
        await _notifier(handler).send_subscription_expired(_subscription())


async def test_transport_errors_are_retried(monkeypatch):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"message": "Queued"})

    notifier = _notifier(handler)
    monkeypatch.setattr(EmailNotifier._post.retry, "wait", wait_none())

    assert await notifier.send_subscription_confirmation(_subscription()) is True
    assert len(attempts) == 2


async def test_notify_nowait_logs_failures_instead_of_raising(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="down")

    notifier = _notifier(handler)
    notifier.notify_nowait(notifier.send_subscription_expired(_subscription()))
    await notifier.drain()

    assert any(isinstance(record.msg, dict) and record.msg.get("event") == "email_failed" for record in caplog.records)


async def test_payment_received_mentions_transaction():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content.decode("utf-8"))
        return httpx.Response(200, json={})

    class Payment:
        claimed_amount = 0.0001
        coin = Coin.btc
        txid_in = "abc123"
        paid_at = datetime(2024, 3, 1, tzinfo=timezone.utc)

    await _notifier(handler).send_payment_received(_subscription(), Payment())

    assert "abc123" in seen[0]
    assert "Payment+Received" in seen[0]
