"""Read-side queries over subscriptions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from coinsub.payments import BalanceVerifier, Verified

from .lifecycle import utcnow
from .models import (
    InvalidRequest,
    PaymentRecord,
    PaymentStatus,
    PaymentView,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionStatusQuery,
    SubscriptionStatusResponse,
    SubscriptionView,
    VerificationSource,
)
from .reconciler import AMOUNT_MISMATCH, AMOUNT_TOLERANCE, UNDERPAID
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)


def _payment_view(payment: PaymentRecord) -> PaymentView:
    return PaymentView(
        id=payment.id,
        txid_in=payment.txid_in,
        status=payment.status,
        claimed_amount=payment.claimed_amount,
        verified_amount=payment.verified_amount,
        verification_source=payment.verification_source,
        confirmations=payment.confirmations,
        review_flag=payment.review_flag,
        paid_at=payment.paid_at,
    )


def subscription_view(
    record: SubscriptionRecord,
    payments: list[PaymentRecord],
    now: datetime,
) -> SubscriptionView:
    return SubscriptionView(
        id=record.id,
        email=record.email,
        plan=record.plan,
        status=record.status,
        coin=record.coin,
        crypto_amount=record.crypto_amount,
        fiat_amount=record.fiat_amount,
        fiat_currency=record.fiat_currency,
        conversion_rate=record.conversion_rate,
        interval=record.interval,
        receiving_address=record.receiving_address,
        start_date=record.start_at,
        expiration_date=record.expiration_at,
        last_payment_date=record.last_payment_at,
        is_active=record.status is SubscriptionStatus.active and record.expiration_at >= now,
        payments=[_payment_view(payment) for payment in payments],
    )


def _covers(amount: Optional[float], record: SubscriptionRecord) -> bool:
    return amount is not None and amount >= record.crypto_amount * (1 - AMOUNT_TOLERANCE)


def _settled_by_oracle(payment: PaymentRecord, record: SubscriptionRecord) -> bool:
    """A completed payment whose oracle-observed amount covers the quote and carries no amount flag."""

    if payment.status is not PaymentStatus.completed or payment.verification_source is not VerificationSource.oracle:
        return False
    flags = set((payment.review_flag or "").split(","))
    if flags & {AMOUNT_MISMATCH, UNDERPAID}:
        return False
    return _covers(payment.verified_amount, record)


async def query_subscription_status(
    query: SubscriptionStatusQuery,
    repo: SubscriptionRepository,
    verifier: BalanceVerifier,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionStatusResponse:
    """Look a subscription up by id (preferred) or by email.

    ``payment_verified`` is true when a completed payment was verified by the
    oracle for at least the quoted amount without an amount flag; otherwise an
    on-demand balance check at the receiving address decides. An oracle that
    cannot answer means "not confirmed yet".
    """

    if query.subscription_id:
        record = repo.get_subscription(query.subscription_id)
    elif query.email:
        record = repo.latest_for_email(query.email)
    else:
        raise InvalidRequest("subscription_id or email is required")

    if record is None:
        return SubscriptionStatusResponse(has_subscription=False, payment_verified=False)

    payments = repo.list_payments(record.id)
    payment_verified = any(_settled_by_oracle(payment, record) for payment in payments)
    if not payment_verified and record.receiving_address:
        outcome = await verifier.check(record.coin, record.receiving_address)
        if isinstance(outcome, Verified):
            payment_verified = _covers(outcome.amount, record)
        else:
            logger.info(
                {
                    "event": "status_verification_unavailable",
                    "subscription_id": record.id,
                    "reason": outcome.reason,
                }
            )

    return SubscriptionStatusResponse(
        has_subscription=True,
        payment_verified=payment_verified,
        subscription=subscription_view(record, payments, now or utcnow()),
    )
