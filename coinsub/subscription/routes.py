"""FastAPI routes for crypto subscriptions and payment callbacks."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from coinsub.config import Settings
from coinsub.crypto import RateUnavailable
from coinsub.payments import BalanceVerifier, IssuanceError
from coinsub.security import RateLimiter, RateLimitExceeded

from .lifecycle import SubscriptionLifecycle
from .models import (
    CallbackNotification,
    InvalidRequest,
    SubscriptionCreate,
    SubscriptionCreateResponse,
    SubscriptionStatusQuery,
    SubscriptionStatusResponse,
    SubscriptionView,
    UnknownSubscription,
)
from .reconciler import CallbackReconciler
from .repository import SubscriptionRepository
from .service import query_subscription_status, subscription_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/1", tags=["subscription"])
internal_router = APIRouter(prefix="/internal", tags=["internal"])

CALLBACK_ACK = "*ok*"


def _get_state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} is not configured")
    return value


def _get_repo(request: Request) -> SubscriptionRepository:
    return _get_state(request, "subscription_repo")


def _get_lifecycle(request: Request) -> SubscriptionLifecycle:
    return _get_state(request, "lifecycle")


def _get_reconciler(request: Request) -> CallbackReconciler:
    return _get_state(request, "reconciler")


def _get_verifier(request: Request) -> BalanceVerifier:
    return _get_state(request, "balance_verifier")


def _get_settings(request: Request) -> Settings:
    return _get_state(request, "settings")


def _enforce_rate_limit(request: Request) -> None:
    limiter: Optional[RateLimiter] = getattr(request.app.state, "create_rate_limiter", None)
    if limiter is None:
        return
    client = request.client.host if request.client else "anonymous"
    try:
        limiter.assert_allow(client)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate_limit_exceeded",
            headers={"Retry-After": str(max(1, int(exc.retry_after + 0.999)))},
        ) from exc


def _require_admin(request: Request, settings: Settings = Depends(_get_settings)) -> None:
    if not settings.admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin_token_not_configured")
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_token")
    if not hmac.compare_digest(token.strip(), settings.admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


async def _read_callback_body(request: Request) -> Dict[str, Any]:
    if request.method != "POST":
        return {}
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            logger.warning({"event": "callback_body_unreadable", "content_type": content_type})
            return {}
        return body if isinstance(body, dict) else {}
    if "form" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    return {}


@router.post("/subscription", response_model=SubscriptionCreateResponse)
async def create_subscription(
    request: Request,
    payload: SubscriptionCreate,
    lifecycle: SubscriptionLifecycle = Depends(_get_lifecycle),
) -> SubscriptionCreateResponse:
    _enforce_rate_limit(request)
    try:
        record = await lifecycle.create(payload.email, payload.plan, payload.coin)
    except InvalidRequest as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RateUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="exchange_rate_unavailable") from exc
    except IssuanceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "address_issuance_failed", "subscription_id": exc.subscription_id},
        ) from exc

    return SubscriptionCreateResponse(
        subscription_id=record.id,
        crypto_amount=record.crypto_amount,
        coin=record.coin,
        receiving_address=record.receiving_address or "",
        fiat_amount=record.fiat_amount,
        fiat_currency=record.fiat_currency,
        conversion_rate=record.conversion_rate,
        status=record.status,
        expiration_date=record.expiration_at,
    )


@router.api_route("/payment-callback", methods=["GET", "POST"], response_class=PlainTextResponse)
async def payment_callback(
    request: Request,
    reconciler: CallbackReconciler = Depends(_get_reconciler),
) -> PlainTextResponse:
    """Acknowledge every notification once it has been committed or abandoned.

    The issuance service keeps retrying until it sees the acknowledgment, so a
    notification we cannot use is logged and acknowledged rather than
    bounced back for another delivery.
    """

    body = await _read_callback_body(request)
    query = dict(request.query_params)
    try:
        notification = CallbackNotification.from_payload(body, query)
    except ValueError as exc:
        logger.warning(
            {
                "event": "callback_unparseable",
                "error": str(exc),
                "payload": {**query, **body},
            }
        )
        return PlainTextResponse(CALLBACK_ACK)

    await reconciler.process(notification)
    return PlainTextResponse(CALLBACK_ACK)


@router.post("/subscription-status", response_model=SubscriptionStatusResponse)
async def subscription_status(
    payload: SubscriptionStatusQuery,
    repo: SubscriptionRepository = Depends(_get_repo),
    verifier: BalanceVerifier = Depends(_get_verifier),
) -> SubscriptionStatusResponse:
    try:
        return await query_subscription_status(payload, repo, verifier)
    except InvalidRequest as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionView,
    dependencies=[Depends(_require_admin)],
)
async def cancel_subscription(
    subscription_id: str,
    lifecycle: SubscriptionLifecycle = Depends(_get_lifecycle),
) -> SubscriptionView:
    try:
        record = await lifecycle.cancel(subscription_id)
    except UnknownSubscription as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription_not_found") from exc
    return subscription_view(record, lifecycle.repo.list_payments(record.id), lifecycle.now())


@internal_router.post("/sweep", dependencies=[Depends(_require_admin)])
async def run_sweep(
    lifecycle: SubscriptionLifecycle = Depends(_get_lifecycle),
    settings: Settings = Depends(_get_settings),
) -> dict[str, int]:
    now = lifecycle.now()
    reminders = await lifecycle.sweep_reminders(now, settings.reminder_horizon_days)
    expired = await lifecycle.sweep_expirations(now)
    return {"reminders_sent": reminders, "expired": expired}
