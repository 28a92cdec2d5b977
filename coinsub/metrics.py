"""Prometheus metric definitions and helpers for the subscription API."""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, Info


SUBSCRIPTIONS_CREATED_TOTAL = Counter(
    "subscriptions_created_total",
    "Total number of subscriptions created partitioned by coin and plan.",
    ["coin", "plan"],
)

SUBSCRIPTION_FIAT_TOTAL_USD = Counter(
    "subscription_fiat_total_usd",
    "Sum of fiat amounts quoted for created subscriptions.",
)

CALLBACKS_TOTAL = Counter(
    "payment_callbacks_total",
    "Payment callbacks received partitioned by kind and outcome.",
    ["kind", "outcome"],
)

CALLBACK_DURATION_SECONDS = Histogram(
    "payment_callback_duration_seconds",
    "Histogram of payment callback reconciliation time in seconds.",
)

VERIFICATIONS_TOTAL = Counter(
    "payment_verifications_total",
    "Balance verifications partitioned by coin and source.",
    ["coin", "source"],
)

PAYMENTS_FLAGGED_TOTAL = Counter(
    "payments_flagged_total",
    "Payments recorded with a review flag partitioned by flag.",
    ["flag"],
)

SWEEP_ACTIONS_TOTAL = Counter(
    "subscription_sweep_actions_total",
    "Subscriptions touched by sweeps partitioned by sweep and outcome.",
    ["sweep", "outcome"],
)

NOTIFICATIONS_TOTAL = Counter(
    "email_notifications_total",
    "Email notifications partitioned by template and outcome.",
    ["template", "outcome"],
)

AUDIT_EVENTS_TOTAL = Counter(
    "audit_events_total",
    "Total number of audit events partitioned by c_unit and severity.",
    ["c_unit", "severity"],
)

GUARDRAIL_VIOLATIONS_TOTAL = Counter(
    "guardrail_violations_total",
    "Total guardrail violations partitioned by guardrail id and severity.",
    ["guardrail_id", "severity"],
)

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests processed by the FastAPI application, partitioned by path.",
    ["path"],
)

ACTIVE_SUBSCRIPTIONS = Gauge(
    "subscriptions_active",
    "Number of subscriptions currently in the active state.",
)

APP_INFO = Info("app_info", "Application build and runtime information.")


def record_subscription_created(coin: str, plan: str, fiat_amount: float) -> None:
    """Increment creation counters for a freshly persisted subscription."""

    SUBSCRIPTIONS_CREATED_TOTAL.labels(coin=coin, plan=plan).inc()
    SUBSCRIPTION_FIAT_TOTAL_USD.inc(fiat_amount)


def record_callback(kind: str, outcome: str, duration_seconds: Optional[float] = None) -> None:
    """Increment callback counters and optionally record reconciliation time."""

    CALLBACKS_TOTAL.labels(kind=kind, outcome=outcome).inc()
    if duration_seconds is not None:
        CALLBACK_DURATION_SECONDS.observe(duration_seconds)


def record_verification(coin: str, source: str) -> None:
    VERIFICATIONS_TOTAL.labels(coin=coin, source=source).inc()


def record_payment_flagged(flag: str) -> None:
    PAYMENTS_FLAGGED_TOTAL.labels(flag=flag).inc()


def record_sweep_action(sweep: str, outcome: str) -> None:
    SWEEP_ACTIONS_TOTAL.labels(sweep=sweep, outcome=outcome).inc()


def record_notification(template: str, outcome: str) -> None:
    NOTIFICATIONS_TOTAL.labels(template=template, outcome=outcome).inc()


def record_audit_event(c_unit: str, severity: str) -> None:
    AUDIT_EVENTS_TOTAL.labels(c_unit=c_unit, severity=severity).inc()


def record_guardrail_violation(guardrail_id: str, severity: str) -> None:
    GUARDRAIL_VIOLATIONS_TOTAL.labels(guardrail_id=guardrail_id, severity=severity).inc()


def record_http_request(path: str) -> None:
    """Record a handled HTTP request for the provided path."""

    HTTP_REQUESTS_TOTAL.labels(path=path).inc()


def set_active_subscriptions(count: int) -> None:
    ACTIVE_SUBSCRIPTIONS.set(count)


def set_app_info(version: str) -> None:
    APP_INFO.info({"service": "coinsub", "version": version})
