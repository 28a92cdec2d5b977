import json
import urllib.error
from unittest import mock

import pytest

from coinsub.ops.alerts import send_alert


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    monkeypatch.delenv("ALERT_WEBHOOK", raising=False)
    monkeypatch.delenv("SLACK_WEBHOOK", raising=False)
    yield


@pytest.fixture()
def outbox(monkeypatch):
    payloads = []

    def fake_urlopen(request, timeout=0):
        payloads.append(
            {
                "url": request.full_url,
                "data": json.loads(request.data.decode("utf-8")),
                "headers": dict(request.header_items()),
            }
        )
        return mock.MagicMock()

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    return payloads


def test_send_alert_skips_when_no_webhooks(caplog):
    caplog.set_level("INFO")

    delivered = send_alert("guardrail_violation", {"guardrail_id": "payment-review-flag"})

    assert delivered is False
    assert any(
        record.msg == {"event": "alert_skipped", "trigger": "guardrail_violation", "reason": "no_webhook"}
        for record in caplog.records
    )


def test_send_alert_posts_to_configured_webhooks(monkeypatch, outbox, caplog):
    caplog.set_level("INFO")
    monkeypatch.setenv("ALERT_WEBHOOK", "https://alerts.example")

    delivered = send_alert("guardrail_violation", {"subject": "sub-1"})

    assert delivered is True
    assert outbox == [
        {
            "url": "https://alerts.example",
            "data": {"event": "guardrail_violation", "payload": {"subject": "sub-1"}},
            "headers": {"Content-type": "application/json"},
        },
    ]
    assert any(record.msg == {"event": "alert_sent", "trigger": "guardrail_violation"} for record in caplog.records)


def test_slack_webhook_gets_text_body(monkeypatch, outbox):
    monkeypatch.setenv("SLACK_WEBHOOK", "https://hooks.slack.example/T000")

    send_alert("guardrail_violation", {"guardrail_id": "callback-rejected", "subject": "sub-9", "event": None})

    assert outbox[0]["data"] == {
        "text": ":rotating_light: guardrail_violation: guardrail_id=callback-rejected, subject=sub-9"
    }


def test_failed_delivery_is_reported(monkeypatch, caplog):
    caplog.set_level("INFO")
    monkeypatch.setenv("ALERT_WEBHOOK", "https://alerts.example")

    def refuse(request, timeout=0):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr("urllib.request.urlopen", refuse)

    assert send_alert("guardrail_violation", {}) is False
    assert any(
        record.msg == {"event": "alert_skipped", "trigger": "guardrail_violation", "reason": "delivery_failed"}
        for record in caplog.records
    )
