"""Operational alerts for payment guardrail violations."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Dict, Iterable, Tuple

logger = logging.getLogger(__name__)

_WEBHOOK_ENVS = ("ALERT_WEBHOOK", "SLACK_WEBHOOK")


def _iter_configured_webhooks() -> Iterable[Tuple[str, str]]:
    """Yield configured webhook destinations as (name, url) tuples."""

    for env_name in _WEBHOOK_ENVS:
        url = os.getenv(env_name, "").strip()
        if url:
            yield env_name, url


def _body_for(name: str, event: str, payload: Dict[str, object]) -> bytes:
    if name == "SLACK_WEBHOOK":
        details = ", ".join(f"{key}={value}" for key, value in payload.items() if value is not None)
        return json.dumps({"text": f":rotating_light: {event}: {details}"}).encode("utf-8")
    return json.dumps({"event": event, "payload": payload}).encode("utf-8")


def send_alert(event: str, payload: Dict[str, object]) -> bool:
    """Post an alert to every configured webhook.

    Returns ``True`` if at least one webhook accepted the alert.
    """

    webhooks = list(_iter_configured_webhooks())
    if not webhooks:
        logger.info({"event": "alert_skipped", "trigger": event, "reason": "no_webhook"})
        return False

    delivered = False
    for name, url in webhooks:
        request = urllib.request.Request(
            url,
            data=_body_for(name, event, payload),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=5):  # nosec: B310 - trusted config
                delivered = True
        except urllib.error.URLError:
            logger.exception("Failed to send alert", extra={"trigger": event, "webhook": name})

    log_event = {"event": "alert_sent" if delivered else "alert_skipped", "trigger": event}
    if not delivered:
        log_event["reason"] = "delivery_failed"
    logger.info(log_event)
    return delivered
