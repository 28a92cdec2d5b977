"""Reconcile payment notifications from the issuance service into subscription state.

The issuance service delivers notifications at least once, in any order, and
retries until it receives an acknowledgment. Retrying is its job; ours is to
absorb any number of copies of the same notification idempotently. Every
notification is keyed by ``(subscription_id, txid_in)`` and that key is
backed by a unique constraint in the store, so duplicates and lost races
collapse onto a single payment row.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from coinsub.audit import PAYMENTS_UNIT, SUBSCRIPTION_UNIT, AuditEvent, AuditTrail
from coinsub.crypto import parse_coin
from coinsub.errors import CoinsubError
from coinsub.metrics import record_callback, record_payment_flagged, record_verification
from coinsub.notifications import EmailNotifier
from coinsub.payments import BalanceVerifier, Unavailable, Verified
from coinsub.payments.issuer import verify_parameters

from .lifecycle import Activation, SubscriptionLifecycle, utcnow
from .models import (
    CallbackNotification,
    PaymentRecord,
    PaymentStatus,
    SubscriptionRecord,
    UnknownSubscription,
    VerificationSource,
)
from .repository import PersistenceConflict, SubscriptionRepository

logger = logging.getLogger(__name__)

AMOUNT_MISMATCH = "amount_mismatch"
CLAIM_CHANGED = "claim_changed"
UNDERPAID = "underpaid"
AMOUNT_TOLERANCE = 0.005


class MalformedCallback(CoinsubError):
    """Raised when a notification cannot be tied to a subscription it is allowed to touch."""


@dataclass(frozen=True)
class ReconcileResult:
    """What a single notification did to the store."""

    kind: str
    outcome: str
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    verification_source: Optional[str] = None
    review_flag: Optional[str] = None
    error: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.outcome == "duplicate"


def _below(amount: float, reference: float, tolerance: float) -> bool:
    return amount < reference * (1 - tolerance)


def _differs(first: float, second: float, tolerance: float) -> bool:
    return abs(first - second) > max(abs(first), abs(second)) * tolerance


class CallbackReconciler:
    """Turn pending/confirmed notifications into payment rows and subscription transitions.

    A payment write and the subscription transition it causes commit in one
    store transaction; oracle lookups happen before the transaction opens and
    audit events and emails only after it committed.
    """

    def __init__(
        self,
        repo: SubscriptionRepository,
        lifecycle: SubscriptionLifecycle,
        verifier: BalanceVerifier,
        *,
        secret: str = "",
        notifier: Optional[EmailNotifier] = None,
        audit_trail: Optional[AuditTrail] = None,
        amount_tolerance: float = AMOUNT_TOLERANCE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repo
        self._lifecycle = lifecycle
        self._verifier = verifier
        self._secret = secret
        self._notifier = notifier
        self._audit_trail = audit_trail
        self._tolerance = amount_tolerance
        self._clock = clock

    async def process(self, notification: CallbackNotification) -> ReconcileResult:
        """Reconcile ``notification`` and never raise; failures are logged with full context."""

        started = time.perf_counter()
        subscription_id = notification.parameters.get("subscription_id")
        try:
            result = await self.handle(notification)
        except (MalformedCallback, UnknownSubscription) as exc:
            logger.warning(
                {
                    "event": "callback_rejected",
                    "subscription_id": subscription_id,
                    "txid_in": notification.txid_in,
                    "error": str(exc),
                    "payload": notification.raw,
                }
            )
            result = ReconcileResult(
                kind=self._kind_or_unknown(notification),
                outcome="rejected",
                subscription_id=subscription_id,
                error=str(exc),
            )
            await self._emit(
                "callback.rejected",
                subscription_id or "unknown",
                c_unit=PAYMENTS_UNIT,
                severity="warning",
                payload={"txid_in": notification.txid_in, "error": str(exc)},
            )
        except Exception as exc:
            logger.exception(
                "Payment callback failed",
                extra={
                    "subscription_id": subscription_id,
                    "txid_in": notification.txid_in,
                    "payload": notification.raw,
                },
            )
            result = ReconcileResult(
                kind=self._kind_or_unknown(notification),
                outcome="error",
                subscription_id=subscription_id,
                error=str(exc),
            )
        record_callback(result.kind, result.outcome, time.perf_counter() - started)
        return result

    async def handle(self, notification: CallbackNotification) -> ReconcileResult:
        """Reconcile ``notification``; raises :class:`MalformedCallback` or :class:`UnknownSubscription`."""

        subscription = self._authenticate(notification)
        kind = self._kind(notification)
        txid_in = (notification.txid_in or "").strip()
        if not txid_in:
            raise MalformedCallback("notification has no txid_in")
        if notification.value_coin is None or notification.value_coin < 0:
            raise MalformedCallback("notification has no usable value_coin")

        if kind == "pending":
            return await self._on_pending(subscription, notification, txid_in)
        return await self._on_confirmed(subscription, notification, txid_in)

    def _authenticate(self, notification: CallbackNotification) -> SubscriptionRecord:
        parameters = notification.parameters
        subscription_id = parameters.get("subscription_id")
        email = parameters.get("email")
        if not subscription_id or not email:
            raise MalformedCallback("correlation parameters are missing subscription_id or email")
        if not verify_parameters(parameters, self._secret):
            raise MalformedCallback("correlation signature is missing or invalid")

        subscription = self._repo.get_subscription(subscription_id)
        if subscription is None:
            raise UnknownSubscription(subscription_id)
        if subscription.email != email.strip().lower():
            raise MalformedCallback("correlation email does not match the subscription")
        if notification.coin and parse_coin(notification.coin) is not subscription.coin:
            raise MalformedCallback(f"coin {notification.coin!r} does not match the subscription")
        if (
            notification.address_in
            and subscription.receiving_address
            and notification.address_in != subscription.receiving_address
        ):
            raise MalformedCallback("address_in does not match the issued receiving address")
        return subscription

    @staticmethod
    def _kind(notification: CallbackNotification) -> str:
        if notification.pending is not None:
            return "pending" if notification.pending else "confirmed"
        if notification.status_code is not None:
            return "confirmed" if notification.status_code >= 2 else "pending"
        raise MalformedCallback("notification does not say whether it is pending or confirmed")

    def _kind_or_unknown(self, notification: CallbackNotification) -> str:
        try:
            return self._kind(notification)
        except MalformedCallback:
            return "unknown"

    async def _verify(self, subscription: SubscriptionRecord, claimed: float, txid_in: str) -> Verified:
        """Ask the balance oracle; fall back to the self-reported amount when it cannot answer."""

        address = subscription.receiving_address or ""
        outcome = await self._verifier.check(subscription.coin, address)
        if isinstance(outcome, Unavailable):
            logger.warning(
                {
                    "event": "verification_fallback",
                    "subscription_id": subscription.id,
                    "txid_in": txid_in,
                    "coin": subscription.coin.value,
                    "reason": outcome.reason,
                    "claimed_amount": claimed,
                }
            )
            verified = Verified(amount=claimed, source="fallback")
        else:
            verified = outcome
        record_verification(subscription.coin.value, verified.source)
        return verified

    def _review_flags(
        self,
        subscription: SubscriptionRecord,
        claimed: float,
        verified: Verified,
        earlier_claim: Optional[float] = None,
    ) -> Optional[str]:
        flags: List[str] = []
        if verified.source == "oracle" and _below(verified.amount, claimed, self._tolerance):
            flags.append(AMOUNT_MISMATCH)
        if earlier_claim is not None and _differs(claimed, earlier_claim, self._tolerance):
            flags.append(CLAIM_CHANGED)
        if _below(claimed, subscription.crypto_amount, self._tolerance):
            flags.append(UNDERPAID)
        return ",".join(flags) or None

    async def _on_pending(
        self,
        subscription: SubscriptionRecord,
        notification: CallbackNotification,
        txid_in: str,
    ) -> ReconcileResult:
        existing = self._repo.get_payment(subscription.id, txid_in)
        if existing is not None:
            return await self._duplicate(subscription, existing, "pending")

        claimed = float(notification.value_coin)
        verified = await self._verify(subscription, claimed, txid_in)
        review_flag = self._review_flags(subscription, claimed, verified)
        now = self._clock()
        payment = PaymentRecord(
            id=uuid4().hex,
            subscription_id=subscription.id,
            coin=subscription.coin,
            txid_in=txid_in,
            txid_out=notification.txid_out,
            claimed_amount=claimed,
            confirmed_claimed_amount=None,
            verified_amount=verified.amount,
            forwarded_amount=notification.value_forwarded_coin,
            fee=notification.fee_coin,
            confirmations=notification.confirmations or 0,
            status=PaymentStatus.pending,
            verification_source=VerificationSource(verified.source),
            review_flag=review_flag,
            raw_payload=notification.raw,
            paid_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._repo.transaction():
                self._repo.insert_payment(payment)
                moved = self._lifecycle.mark_pending_payment(subscription.id)
        except PersistenceConflict:
            committed = self._repo.get_payment(subscription.id, txid_in)
            if committed is None:
                raise
            return await self._duplicate(subscription, committed, "pending")

        await self._after_commit(subscription, payment, verified, "pending")
        if moved:
            await self._emit("subscription.pending_payment", subscription.id, payload={"txid_in": txid_in})
        return ReconcileResult(
            kind="pending",
            outcome="recorded",
            subscription_id=subscription.id,
            payment_id=payment.id,
            verification_source=verified.source,
            review_flag=review_flag,
        )

    async def _on_confirmed(
        self,
        subscription: SubscriptionRecord,
        notification: CallbackNotification,
        txid_in: str,
    ) -> ReconcileResult:
        existing = self._repo.get_payment(subscription.id, txid_in)
        if existing is not None and existing.status is PaymentStatus.completed:
            return await self._duplicate(subscription, existing, "confirmed")

        claimed = float(notification.value_coin)
        verified = await self._verify(subscription, claimed, txid_in)

        # One re-evaluation after losing a race against a concurrent copy.
        for attempt in range(2):
            paid_at = self._clock()
            earlier_claim = existing.claimed_amount if existing is not None else None
            review_flag = self._review_flags(subscription, claimed, verified, earlier_claim)
            try:
                with self._repo.transaction():
                    payment = self._store_confirmed(
                        subscription, notification, txid_in, existing, claimed, verified, review_flag, paid_at
                    )
                    activation = self._lifecycle.activate_or_renew(subscription.id, paid_at)
            except PersistenceConflict:
                existing = self._repo.get_payment(subscription.id, txid_in)
                if existing is None or attempt:
                    raise
                if existing.status is PaymentStatus.completed:
                    return await self._duplicate(subscription, existing, "confirmed")
                continue
            break

        await self._after_commit(activation.subscription, payment, verified, "confirmed")
        await self._announce_activation(activation, payment)
        self._lifecycle.refresh_active_gauge()
        if self._notifier is not None:
            self._notifier.notify_nowait(self._notifier.send_payment_received(activation.subscription, payment))
        return ReconcileResult(
            kind="confirmed",
            outcome="completed",
            subscription_id=subscription.id,
            payment_id=payment.id,
            verification_source=verified.source,
            review_flag=review_flag,
        )

    def _store_confirmed(
        self,
        subscription: SubscriptionRecord,
        notification: CallbackNotification,
        txid_in: str,
        existing: Optional[PaymentRecord],
        claimed: float,
        verified: Verified,
        review_flag: Optional[str],
        paid_at: datetime,
    ) -> PaymentRecord:
        confirmations = notification.confirmations or 0
        if existing is None:
            payment = PaymentRecord(
                id=uuid4().hex,
                subscription_id=subscription.id,
                coin=subscription.coin,
                txid_in=txid_in,
                txid_out=notification.txid_out,
                claimed_amount=claimed,
                confirmed_claimed_amount=claimed,
                verified_amount=verified.amount,
                forwarded_amount=notification.value_forwarded_coin,
                fee=notification.fee_coin,
                confirmations=confirmations,
                status=PaymentStatus.completed,
                verification_source=VerificationSource(verified.source),
                review_flag=review_flag,
                raw_payload=notification.raw,
                paid_at=paid_at,
                created_at=paid_at,
                updated_at=paid_at,
            )
            return self._repo.insert_payment(payment)

        self._repo.complete_payment(
            existing.id,
            confirmed_claimed_amount=claimed,
            verified_amount=verified.amount,
            verification_source=VerificationSource(verified.source),
            forwarded_amount=notification.value_forwarded_coin,
            fee=notification.fee_coin,
            txid_out=notification.txid_out,
            confirmations=confirmations,
            review_flag=review_flag,
            raw_payload=notification.raw,
            paid_at=paid_at,
        )
        payment = self._repo.get_payment_by_id(existing.id)
        assert payment is not None
        return payment

    async def _duplicate(self, subscription: SubscriptionRecord, payment: PaymentRecord, kind: str) -> ReconcileResult:
        logger.info(
            {
                "event": "payment_duplicate",
                "subscription_id": subscription.id,
                "txid_in": payment.txid_in,
                "kind": kind,
                "stored_status": payment.status.value,
            }
        )
        await self._emit(
            "payment.duplicate",
            subscription.id,
            c_unit=PAYMENTS_UNIT,
            payload={"txid_in": payment.txid_in, "kind": kind, "stored_status": payment.status.value},
        )
        return ReconcileResult(
            kind=kind,
            outcome="duplicate",
            subscription_id=subscription.id,
            payment_id=payment.id,
            verification_source=payment.verification_source.value,
            review_flag=payment.review_flag,
        )

    async def _after_commit(
        self,
        subscription: SubscriptionRecord,
        payment: PaymentRecord,
        verified: Verified,
        kind: str,
    ) -> None:
        await self._emit(
            "payment.recorded",
            subscription.id,
            c_unit=PAYMENTS_UNIT,
            payload={
                "kind": kind,
                "txid_in": payment.txid_in,
                "claimed_amount": payment.claimed_amount,
                "verified_amount": payment.verified_amount,
                "verification_source": verified.source,
            },
        )
        if verified.source == "fallback":
            await self._emit(
                "payment.verification_fallback",
                subscription.id,
                c_unit=PAYMENTS_UNIT,
                severity="warning",
                payload={"txid_in": payment.txid_in, "reason": "balance oracle unavailable"},
            )
        if payment.review_flag:
            for flag in payment.review_flag.split(","):
                record_payment_flagged(flag)
            await self._emit(
                "payment.flagged",
                subscription.id,
                c_unit=PAYMENTS_UNIT,
                severity="warning",
                payload={
                    "txid_in": payment.txid_in,
                    "review_flag": payment.review_flag,
                    "expected_amount": subscription.crypto_amount,
                    "claimed_amount": payment.claimed_amount,
                    "confirmed_claimed_amount": payment.confirmed_claimed_amount,
                    "verified_amount": payment.verified_amount,
                },
            )

    async def _announce_activation(self, activation: Activation, payment: PaymentRecord) -> None:
        subscription = activation.subscription
        await self._emit(
            "subscription.renewed" if activation.renewed else "subscription.activated",
            subscription.id,
            payload={
                "txid_in": payment.txid_in,
                "previous_status": activation.previous_status.value,
                "previous_expiration": activation.previous_expiration.isoformat(),
                "expiration_at": subscription.expiration_at.isoformat(),
            },
        )

    async def _emit(
        self,
        name: str,
        subject: str,
        *,
        c_unit: str = SUBSCRIPTION_UNIT,
        severity: str = "info",
        payload: Optional[dict] = None,
    ) -> None:
        if self._audit_trail is None:
            return
        await self._audit_trail.emit(
            AuditEvent(
                name=name,
                c_unit=c_unit,
                actor="payment.callback",
                subject=subject,
                severity=severity,
                payload=payload or {},
            )
        )
