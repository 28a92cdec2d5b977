"""Subscription state machine: creation, activation, renewal, reminders and expiry."""

from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional
from uuid import uuid4

from coinsub.audit import OPS_UNIT, SUBSCRIPTION_UNIT, AuditEvent, AuditTrail
from coinsub.crypto import Coin, RateConverter, parse_coin
from coinsub.metrics import record_subscription_created, record_sweep_action, set_active_subscriptions
from coinsub.notifications import EmailNotifier, NotificationError
from coinsub.payments.issuer import AddressIssuer, IssuanceError, correlation_for

from .models import (
    InvalidPlanOrCoin,
    InvalidRequest,
    Plan,
    SubscriptionRecord,
    SubscriptionStatus,
    UnknownSubscription,
)
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)

FIAT_CURRENCY = "USD"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def add_interval(moment: datetime, months: int) -> datetime:
    """Advance ``moment`` by whole calendar months, clamping to the last day of short months."""

    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class Activation:
    """Result of applying one settled payment to a subscription."""

    subscription: SubscriptionRecord
    previous_status: SubscriptionStatus
    previous_expiration: datetime

    @property
    def renewed(self) -> bool:
        return self.previous_status is SubscriptionStatus.active


class SubscriptionLifecycle:
    """Owns every subscription status transition.

    ``mark_pending_payment`` and ``activate_or_renew`` are synchronous and do
    no network I/O so the reconciler can run them inside the same store
    transaction as the payment write. The remaining operations commit on
    their own.
    """

    def __init__(
        self,
        repo: SubscriptionRepository,
        converter: RateConverter,
        issuer: AddressIssuer,
        *,
        wallets: Mapping[Coin, str],
        callback_url: str,
        prices: Mapping[Plan, float],
        notifier: Optional[EmailNotifier] = None,
        audit_trail: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repo
        self._converter = converter
        self._issuer = issuer
        self._wallets = dict(wallets)
        self._callback_url = callback_url
        self._prices = dict(prices)
        for plan, price in self._prices.items():
            if not price > 0:
                raise ValueError(f"price for plan {Plan(plan).value} must be positive, got {price!r}")
        self._notifier = notifier
        self._audit_trail = audit_trail
        self._clock = clock

    @property
    def repo(self) -> SubscriptionRepository:
        return self._repo

    def now(self) -> datetime:
        return self._clock()

    async def create(self, email: Optional[str], plan: Optional[str], coin: Optional[str]) -> SubscriptionRecord:
        """Quote, persist and issue a receiving address for a new subscription.

        The row is written as ``pending`` before the issuance call. When the
        issuance service fails the row stays ``pending`` without an address
        and :class:`IssuanceError` carries its id.
        """

        email = (email or "").strip().lower()
        if not email:
            raise InvalidRequest("email is required")
        if "@" not in email:
            raise InvalidRequest(f"invalid email address: {email}")
        try:
            selected_plan = Plan((plan or "").strip().lower())
        except ValueError as exc:
            raise InvalidPlanOrCoin(f"unsupported plan: {plan!r}") from exc
        selected_coin = parse_coin(coin or "")
        if selected_coin is None:
            raise InvalidPlanOrCoin(f"unsupported coin: {coin!r}")

        fiat_amount = self._prices[selected_plan]
        conversion = await self._converter.convert(fiat_amount, selected_coin)

        now = self._clock()
        record = SubscriptionRecord(
            id=uuid4().hex,
            email=email,
            plan=selected_plan,
            fiat_amount=fiat_amount,
            fiat_currency=FIAT_CURRENCY,
            coin=selected_coin,
            crypto_amount=conversion.crypto_amount,
            conversion_rate=conversion.rate,
            interval=selected_plan.interval,
            status=SubscriptionStatus.pending,
            receiving_address=None,
            issuance_info=None,
            start_at=now,
            expiration_at=add_interval(now, selected_plan.months),
            last_payment_at=None,
            reminder_sent=False,
            created_at=now,
            updated_at=now,
        )
        self._repo.create_subscription(record)
        record_subscription_created(selected_coin.value, selected_plan.value, fiat_amount)

        correlation = correlation_for(
            subscription_id=record.id,
            email=record.email,
            crypto_amount=record.crypto_amount,
            conversion_rate=record.conversion_rate,
        )
        try:
            issued = await self._issuer.issue_address(
                selected_coin,
                self._wallets.get(selected_coin, ""),
                self._callback_url,
                correlation,
            )
        except IssuanceError as exc:
            logger.warning(
                {
                    "event": "address_issuance_failed",
                    "subscription_id": record.id,
                    "coin": selected_coin.value,
                    "error": str(exc),
                }
            )
            await self._emit(
                "subscription.issuance_failed",
                record.id,
                severity="warning",
                payload={"coin": selected_coin.value, "error": str(exc)},
            )
            raise IssuanceError(str(exc), subscription_id=record.id) from exc

        updated = self._repo.set_receiving_address(
            record.id,
            address=issued.address,
            issuance_info={"response": dict(issued.raw), "callback_url": issued.callback_url},
            updated_at=self._clock(),
        )
        record = updated or record
        await self._emit(
            "subscription.created",
            record.id,
            payload={
                "plan": record.plan.value,
                "coin": record.coin.value,
                "fiat_amount": record.fiat_amount,
                "crypto_amount": record.crypto_amount,
                "conversion_rate": record.conversion_rate,
            },
        )
        if self._notifier is not None:
            self._notifier.notify_nowait(self._notifier.send_subscription_confirmation(record))
        return record

    def mark_pending_payment(self, subscription_id: str) -> bool:
        """``pending`` -> ``pending_payment``; any other status is left untouched."""

        return self._repo.transition(
            subscription_id,
            to_status=SubscriptionStatus.pending_payment,
            from_statuses=(SubscriptionStatus.pending,),
            updated_at=self._clock(),
        )

    def activate_or_renew(self, subscription_id: str, paid_at: datetime) -> Activation:
        """Apply one settled payment.

        The first payment runs from ``paid_at``; later payments stack onto the
        current expiration (or ``paid_at`` once it lapsed). Expiration never
        moves backwards. Callers guarantee one call per settled payment.
        """

        subscription = self._repo.get_subscription(subscription_id)
        if subscription is None:
            raise UnknownSubscription(subscription_id)

        if subscription.last_payment_at is None:
            base = paid_at
        else:
            base = max(subscription.expiration_at, paid_at)
        expiration = add_interval(base, subscription.plan.months)
        if subscription.status is SubscriptionStatus.active and expiration < subscription.expiration_at:
            expiration = subscription.expiration_at

        self._repo.apply_payment_period(
            subscription_id,
            expiration_at=expiration,
            last_payment_at=paid_at,
            updated_at=self._clock(),
        )
        updated = self._repo.get_subscription(subscription_id)
        assert updated is not None
        return Activation(
            subscription=updated,
            previous_status=subscription.status,
            previous_expiration=subscription.expiration_at,
        )

    async def cancel(self, subscription_id: str, *, actor: str = "admin") -> SubscriptionRecord:
        """Administratively cancel a subscription; terminal subscriptions are returned unchanged."""

        subscription = self._repo.get_subscription(subscription_id)
        if subscription is None:
            raise UnknownSubscription(subscription_id)
        if subscription.status.terminal:
            return subscription

        changed = self._repo.transition(
            subscription_id,
            to_status=SubscriptionStatus.canceled,
            from_statuses=(
                SubscriptionStatus.pending,
                SubscriptionStatus.pending_payment,
                SubscriptionStatus.active,
            ),
            updated_at=self._clock(),
        )
        if changed:
            await self._emit(
                "subscription.canceled",
                subscription_id,
                actor=actor,
                payload={"previous_status": subscription.status.value},
            )
            self.refresh_active_gauge()
        return self._repo.get_subscription(subscription_id) or subscription

    def has_active_subscription(self, email: str, now: Optional[datetime] = None) -> bool:
        if not email:
            return False
        return self._repo.find_active(email.strip().lower(), now or self._clock()) is not None

    async def sweep_reminders(self, now: Optional[datetime] = None, horizon_days: int = 7) -> int:
        """Remind active subscriptions expiring within the horizon. Returns the number reminded."""

        now = now or self._clock()
        reminded = 0
        for subscription in self._repo.list_expiring(now, now + timedelta(days=horizon_days)):
            days_left = max(1, math.ceil((subscription.expiration_at - now).total_seconds() / 86400))
            try:
                delivered = False
                if self._notifier is not None:
                    delivered = await self._notifier.send_payment_reminder(subscription, days_left)
                if not delivered:
                    record_sweep_action("reminder", "skipped")
                    continue
                if self._repo.mark_reminder_sent(subscription.id, updated_at=self._clock()):
                    reminded += 1
                    record_sweep_action("reminder", "sent")
            except Exception:
                record_sweep_action("reminder", "failed")
                logger.exception(
                    "Reminder failed",
                    extra={"subscription_id": subscription.id, "expiration_at": subscription.expiration_at.isoformat()},
                )
        logger.info({"event": "reminder_sweep_finished", "reminded": reminded, "horizon_days": horizon_days})
        return reminded

    async def sweep_expirations(self, now: Optional[datetime] = None) -> int:
        """Expire lapsed active subscriptions. Returns the number expired by this sweep."""

        now = now or self._clock()
        expired = 0
        for subscription in self._repo.list_lapsed(now):
            try:
                if not self._repo.expire(subscription.id, now=now):
                    record_sweep_action("expiration", "skipped")
                    continue
            except Exception:
                record_sweep_action("expiration", "failed")
                logger.exception("Expiration failed", extra={"subscription_id": subscription.id})
                continue

            expired += 1
            record_sweep_action("expiration", "expired")
            await self._emit(
                "subscription.expired",
                subscription.id,
                actor="subscription.sweep",
                c_unit=OPS_UNIT,
                payload={"expiration_at": subscription.expiration_at.isoformat()},
            )
            if self._notifier is not None:
                try:
                    await self._notifier.send_subscription_expired(subscription)
                except NotificationError:
                    logger.exception("Expiration notice failed", extra={"subscription_id": subscription.id})

        self.refresh_active_gauge()
        logger.info({"event": "expiration_sweep_finished", "expired": expired})
        return expired

    def refresh_active_gauge(self) -> None:
        set_active_subscriptions(self._repo.count_by_status(SubscriptionStatus.active))

    async def _emit(
        self,
        name: str,
        subject: str,
        *,
        actor: str = "subscription.lifecycle",
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
                actor=actor,
                subject=subject,
                severity=severity,
                payload=payload or {},
            )
        )
